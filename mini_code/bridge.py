"""External tool bridge: JSON-RPC over a provider subprocess's stdio.

One ExternalToolBridge owns one provider process. Requests are framed as
one JSON object per line:

    -> {"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": {...}}
    <- {"jsonrpc": "2.0", "id": 7, "result": {...}}     (or "error": {...})

A writer task serializes outgoing frames; a reader task parses incoming
frames and completes whichever caller is waiting on that id, so replies may
arrive in any order. When the provider exits every pending call fails with
IPCError and the next call starts a fresh process.

State machine:

    NOT_STARTED -> STARTING -> READY <-> DEGRADED
                      |          |          |
                      +------> CLOSED <-----+
                                 |
                                 +--> STARTING (next call)
"""

import asyncio
import itertools
import json
import logging
import os
import re
import shlex
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from mini_code.errors import BridgeError, BridgeTimeoutError, IPCError
from mini_code.registry import WRITER_ROLES, AgentRole, BridgeHandler, ToolSpec

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mini-code", "version": "0.1.0"}
MAX_FRAME_BYTES = 16 * 1024 * 1024
METHOD_NOT_FOUND = -32601


class BridgeState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass
class BridgeConfig:
    """Launch and timeout settings for one external tool provider."""

    command: List[str]
    env: Dict[str, str] = field(default_factory = dict)
    name: str = "external"
    call_timeout: float = 60.0
    startup_timeout: float = 30.0
    tool_prefix: str = "mcp_"

    @classmethod
    def from_command_line(cls, command_line: str, **kwargs) -> "BridgeConfig":
        """Build a config from a shell-style command string."""
        command = shlex.split(command_line)
        if not command:
            raise ValueError("Bridge command must not be empty.")
        kwargs.setdefault("name", os.path.basename(command[0]))
        return cls(command = command, **kwargs)


def resolve_env(overrides: Dict[str, str]) -> Dict[str, str]:
    """Expand ${NAME} references from the host environment."""
    resolved = {}
    for key, value in overrides.items():
        if value.startswith("${") and value.endswith("}"):
            resolved[key] = os.environ.get(value[2:-1], "")
        else:
            resolved[key] = value
    return resolved


class ExternalToolBridge:
    """
    Request/response access to one out-of-process tool provider.

    Safe to share between the main loop and any number of subagent loops
    running on the same event loop: only one provider process exists at a
    time, and cancelling or timing out one call never affects the others.
    """

    def __init__(self, config: BridgeConfig):
        self.config = config
        self.state = BridgeState.NOT_STARTED
        self.server_info: Dict[str, Any] = {}
        self.restarts = 0

        self._process: Optional[asyncio.subprocess.Process] = None
        self._outgoing: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._start_lock: Optional[asyncio.Lock] = None
        self._closed = False

        # Ids come from one counter for the bridge lifetime, so they are
        # never reused, not even across restarts.
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._pending_lock = threading.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    async def __aenter__(self) -> "ExternalToolBridge":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """
        Send one request and wait for its matching response.

        Parameters:
            method: JSON-RPC method name.
            params: Method parameters.
            timeout: Seconds to wait for this call only (default: config.call_timeout).
        """
        await self._ensure_ready()
        return await self._request(method, params, timeout)

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self.call("tools/list", {})
        tools = (result or {}).get("tools") if isinstance(result, dict) else None
        return list(tools or [])

    async def call_tool(self, name: str, arguments: Dict[str, Any], timeout: Optional[float] = None) -> str:
        """Invoke a provider tool and return its text content."""
        result = await self.call(
            "tools/call",
            {"name": name, "arguments": arguments},
            timeout = timeout,
        )
        text = extract_result_text(result)
        if isinstance(result, dict) and result.get("isError"):
            raise BridgeError(text or f"Tool '{name}' failed on {self.config.name}.")
        return text

    async def close(self) -> None:
        """Stop the provider for good; later calls fail with IPCError."""
        self._closed = True
        await self._teardown(IPCError(f"Bridge '{self.config.name}' was closed."))
        self.state = BridgeState.CLOSED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _is_live(self) -> bool:
        return (
            self.state in {BridgeState.READY, BridgeState.DEGRADED}
            and self._process is not None
            and self._process.returncode is None
        )

    async def _ensure_ready(self) -> None:
        if self._closed:
            raise IPCError(f"Bridge '{self.config.name}' was closed.")
        if self._is_live():
            return

        if self._start_lock is None:
            self._start_lock = asyncio.Lock()

        async with self._start_lock:
            if self._is_live():
                return
            if self.state is not BridgeState.NOT_STARTED:
                self.restarts += 1
                logger.info(f"Restarting external tool provider '{self.config.name}' (restart #{self.restarts})")
                await self._teardown(IPCError(f"Provider '{self.config.name}' is restarting."))
            await self._start()

    async def _start(self) -> None:
        self.state = BridgeState.STARTING
        env = os.environ.copy()
        env.update(resolve_env(self.config.env))

        logger.info(f"Starting external tool provider '{self.config.name}': {' '.join(self.config.command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.config.command,
                stdin = asyncio.subprocess.PIPE,
                stdout = asyncio.subprocess.PIPE,
                stderr = asyncio.subprocess.PIPE,
                env = env,
                limit = MAX_FRAME_BYTES,
            )
        except OSError as exc:
            self.state = BridgeState.CLOSED
            raise IPCError(f"Failed to start provider '{self.config.name}': {exc}") from exc

        self._process = process
        self._outgoing = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._read_loop(process)),
            asyncio.create_task(self._write_loop(process, self._outgoing)),
            asyncio.create_task(self._drain_stderr(process)),
        ]

        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                timeout = self.config.startup_timeout,
            )
            self._notify("notifications/initialized")
        except asyncio.CancelledError:
            await self._teardown(IPCError(f"Startup of '{self.config.name}' was cancelled."))
            self.state = BridgeState.CLOSED
            raise
        except BridgeError as exc:
            await self._teardown(IPCError(f"Handshake with '{self.config.name}' failed: {exc}"))
            self.state = BridgeState.CLOSED
            raise IPCError(f"Handshake with provider '{self.config.name}' failed: {exc}") from exc

        if isinstance(result, dict):
            self.server_info = result.get("serverInfo") or {}
        self.state = BridgeState.READY
        logger.info(f"External tool provider '{self.config.name}' ready (pid {process.pid})")

    async def _teardown(self, reason: IPCError) -> None:
        process = self._process
        self._process = None
        self._fail_all(reason)

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions = True)

        if process is None or process.returncode is not None:
            return

        try:
            if process.stdin is not None:
                process.stdin.close()
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout = 5)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        logger.info(f"External tool provider '{self.config.name}' stopped")

    # ------------------------------------------------------------------
    # Requests and the pending table
    # ------------------------------------------------------------------

    async def _request(self, method: str, params: Optional[Dict[str, Any]], timeout: Optional[float]) -> Any:
        if self._outgoing is None:
            raise IPCError(f"Provider '{self.config.name}' is not running.")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        with self._pending_lock:
            self._pending[request_id] = future

        frame: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            frame["params"] = params
        self._outgoing.put_nowait((request_id, encode_frame(frame)))

        wait_for = self.config.call_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout = wait_for)
        except asyncio.TimeoutError:
            if self.state is BridgeState.READY:
                self.state = BridgeState.DEGRADED
            logger.warning(f"Bridge call {method} (id {request_id}) timed out after {wait_for}s")
            raise BridgeTimeoutError(
                f"Call '{method}' to '{self.config.name}' timed out after {wait_for}s."
            ) from None
        finally:
            self._forget(request_id)

    def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        frame: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            frame["params"] = params
        if self._outgoing is not None:
            self._outgoing.put_nowait((None, encode_frame(frame)))

    def _forget(self, request_id: int) -> Optional[asyncio.Future]:
        with self._pending_lock:
            return self._pending.pop(request_id, None)

    def _fail(self, request_id: Optional[int], error: BridgeError) -> None:
        if request_id is None:
            return
        future = self._forget(request_id)
        if future is not None and not future.done():
            future.set_exception(error)

    def _fail_all(self, error: IPCError) -> None:
        with self._pending_lock:
            pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(IPCError(str(error)))
        if pending:
            logger.warning(f"Failed {len(pending)} pending bridge call(s): {error}")

    # ------------------------------------------------------------------
    # Stream tasks
    # ------------------------------------------------------------------

    async def _write_loop(self, process: asyncio.subprocess.Process, queue: asyncio.Queue) -> None:
        while True:
            request_id, data = await queue.get()
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                logger.warning(f"Write to provider '{self.config.name}' failed: {exc}")
                self._fail(request_id, IPCError(f"Write to provider '{self.config.name}' failed: {exc}"))

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as exc:
                # Oversized frame; the stream has already skipped past it.
                logger.warning(f"Dropping oversized frame from '{self.config.name}': {exc}")
                self._degrade()
                continue
            if not line:
                break
            self._handle_frame(line)

        self._on_disconnect(process)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug(f"[{self.config.name}] {line.decode('utf-8', errors = 'replace').rstrip()}")

    def _on_disconnect(self, process: asyncio.subprocess.Process) -> None:
        if process is not self._process:
            return
        self.state = BridgeState.CLOSED
        self._outgoing = None
        self._fail_all(IPCError(f"Provider '{self.config.name}' exited (pid {process.pid})."))
        logger.warning(f"External tool provider '{self.config.name}' closed its output stream")

    def _degrade(self) -> None:
        if self.state is BridgeState.READY:
            self.state = BridgeState.DEGRADED

    def _handle_frame(self, line: bytes) -> None:
        text = line.decode("utf-8", errors = "replace").strip()
        if not text:
            return

        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Dropping unparseable frame from '{self.config.name}': {_shorten(text)}")
            self._degrade()
            return

        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            logger.warning(f"Dropping non JSON-RPC frame from '{self.config.name}': {_shorten(text)}")
            self._degrade()
            return

        if "method" in message:
            self._handle_provider_message(message)
            return

        has_result = "result" in message
        has_error = "error" in message
        if not has_result and not has_error:
            logger.warning(f"Dropping response without result or error: {_shorten(text)}")
            self._degrade()
            return

        request_id = message.get("id")
        future = self._forget(request_id) if isinstance(request_id, int) else None
        if future is None:
            logger.warning(f"Dropping response for unknown id {request_id!r} from '{self.config.name}'")
            return

        if self.state is BridgeState.DEGRADED:
            self.state = BridgeState.READY
        if future.done():
            return

        if has_error:
            future.set_exception(_error_from_payload(message.get("error")))
        else:
            future.set_result(message.get("result"))

    def _handle_provider_message(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        if "id" not in message:
            logger.debug(f"Notification from '{self.config.name}': {method}")
            return

        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": JSONRPC_VERSION,
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }
        if self._outgoing is not None:
            self._outgoing.put_nowait((None, encode_frame(reply)))


def encode_frame(frame: Dict[str, Any]) -> bytes:
    """Serialize one message as a single UTF-8 line."""
    return (json.dumps(frame, ensure_ascii = False) + "\n").encode("utf-8")


def extract_result_text(result: Any) -> str:
    """Join the text parts of a tools/call result."""
    if not isinstance(result, dict):
        return "" if result is None else json.dumps(result, ensure_ascii = False)

    parts = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("text"), str):
            parts.append(item["text"])
        elif item.get("type") in {"image", "audio"}:
            parts.append(f"[{item['type']}: {item.get('mimeType', 'unknown')}]")

    if parts:
        return "\n".join(parts)
    return "Operation completed"


def bridge_tool_specs(
    bridge: ExternalToolBridge,
    tools: List[Dict[str, Any]],
    allowed_roles: FrozenSet[AgentRole] = WRITER_ROLES,
) -> List[ToolSpec]:
    """
    Turn a tools/list payload into bridge-routed ToolSpecs.

    Parameters:
        bridge: Bridge the specs dispatch through.
        tools: Provider tool descriptors (name, description, inputSchema).
        allowed_roles: Roles allowed to see the provider tools.
    """
    specs = []
    seen = set()
    for tool in tools:
        remote_name = str(tool.get("name") or "").strip()
        if not remote_name:
            logger.warning(f"Skipping nameless tool from '{bridge.config.name}'")
            continue

        local_name = _local_tool_name(bridge.config.tool_prefix, remote_name)
        if local_name in seen:
            logger.warning(f"Skipping duplicate tool name {local_name}")
            continue
        seen.add(local_name)

        schema = tool.get("inputSchema") or {}
        if schema.get("type") != "object":
            schema = {"type": "object", "properties": {}}
        schema.setdefault("properties", {})

        specs.append(
            ToolSpec(
                name = local_name,
                description = tool.get("description") or f"{remote_name} ({bridge.config.name})",
                input_schema = schema,
                handler = BridgeHandler(bridge = bridge, remote_name = remote_name),
                allowed_roles = allowed_roles,
            )
        )
    return specs


def _local_tool_name(prefix: str, remote_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", f"{prefix}{remote_name}")[:64]


def _error_from_payload(payload: Any) -> BridgeError:
    if isinstance(payload, dict):
        return BridgeError(
            str(payload.get("message") or "Provider returned an error."),
            code = payload.get("code"),
            data = payload.get("data"),
        )
    return BridgeError(str(payload))


def _shorten(text: str, max_chars: int = 200) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."
