"""Error taxonomy shared by the loop, the registry and the bridge."""

from typing import Any, Optional


class HarnessError(Exception):
    """Base class for every error raised by mini_code."""


class RegistrationError(HarnessError):
    """Invalid tool spec/handler pairing, or registry mutation after freeze."""


class ToolValidationError(HarnessError, ValueError):
    """Bad tool arguments or a rejected todo update."""


class BridgeError(HarnessError):
    """Error reported by (or about) the external tool provider."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class IPCError(BridgeError):
    """Provider process died, its stream closed, or a frame could not be written."""


class BridgeTimeoutError(BridgeError, TimeoutError):
    """A single bridge request did not get its response in time."""


class LoopTimeoutError(HarnessError, TimeoutError):
    """Round or wall-clock budget exhausted; keeps the partial conversation."""

    def __init__(self, message: str, conversation: Any = None):
        super().__init__(message)
        self.conversation = conversation


class FatalError(HarnessError):
    """Unrecoverable loop state; keeps the partial conversation."""

    def __init__(self, message: str, conversation: Any = None):
        super().__init__(message)
        self.conversation = conversation


class ModelError(FatalError):
    """The model call itself failed (API, connection, or client error)."""
