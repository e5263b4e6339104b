"""Shared runtime utilities: options, model calls, trace and session logging."""

from .runtime_config import RuntimeOptions, add_runtime_args, runtime_options_from_args
from .llm_call import ChatModel, LLMCallResult, call_chat_completion
from .trace_logger import TraceLogger
from .session_store import SessionStore

__all__ = [
    "RuntimeOptions",
    "add_runtime_args",
    "runtime_options_from_args",
    "ChatModel",
    "LLMCallResult",
    "call_chat_completion",
    "TraceLogger",
    "SessionStore",
]
