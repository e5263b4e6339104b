"""Chat completion wrapper and the awaitable model adapter used by the loop."""

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class LLMCallResult:
    """Normalized result of one model call."""

    assistant_content: str
    tool_calls: List[Dict[str, Any]] = field(default_factory = list)
    finish_reason: Optional[str] = None
    assistant_reasoning: str = ""
    raw_metadata: Dict[str, Any] = field(default_factory = dict)

    @property
    def truncated(self) -> bool:
        """True when the model stopped at its output token ceiling."""
        return self.finish_reason in {"length", "max_tokens"}


class ChatModel:
    """
    Awaitable adapter over a synchronous OpenAI-compatible client.

    The blocking HTTP call runs on a worker thread, so the event loop keeps
    serving bridge traffic and a wall-clock budget can stop waiting for it.
    A cancelled wait sets a flag that makes a streaming worker stop reading
    chunks and stop calling on_content_chunk; a non-stream request still
    runs to completion in the background and its result is dropped.
    """

    def __init__(
        self,
        client: Any,
        model: str,
        max_tokens: int = 8192,
        stream: bool = False,
        on_content_chunk: Optional[Callable[[str], None]] = None,
    ):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.stream = stream
        self.on_content_chunk = on_content_chunk

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMCallResult:
        cancel_event = threading.Event()
        try:
            return await asyncio.to_thread(
                call_chat_completion,
                client = self.client,
                model = self.model,
                messages = messages,
                tools = tools,
                max_tokens = max_tokens or self.max_tokens,
                stream = self.stream,
                on_content_chunk = self.on_content_chunk,
                cancel_event = cancel_event,
            )
        except asyncio.CancelledError:
            cancel_event.set()
            raise


def call_chat_completion(
    client: Any,
    model: str,
    messages: List[Dict[str, Any]],
    tools: Optional[List[Dict[str, Any]]] = None,
    max_tokens: int = 8192,
    stream: bool = False,
    on_content_chunk: Optional[Callable[[str], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> LLMCallResult:
    """Call chat completions once, in stream or non-stream mode."""
    request: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if tools:
        request["tools"] = tools

    if stream:
        request["stream"] = True
        return _invoke_stream(
            client = client,
            request = request,
            on_content_chunk = on_content_chunk,
            cancel_event = cancel_event,
        )

    response = client.chat.completions.create(**request)
    choice = response.choices[0]
    message = choice.message

    return LLMCallResult(
        assistant_content = _coerce_text(getattr(message, "content", "")),
        tool_calls = _normalize_tool_calls(getattr(message, "tool_calls", None)),
        finish_reason = getattr(choice, "finish_reason", None),
        assistant_reasoning = _extract_reasoning(message),
        raw_metadata = {
            "stream": False,
            "response_id": getattr(response, "id", None),
            "model": getattr(response, "model", None),
            "usage": _safe_model_dump(getattr(response, "usage", None)),
        },
    )


def _invoke_stream(
    client: Any,
    request: Dict[str, Any],
    on_content_chunk: Optional[Callable[[str], None]],
    cancel_event: Optional[threading.Event] = None,
) -> LLMCallResult:
    """Streaming path: concatenate content and assemble tool calls by index."""
    content_parts: List[str] = []
    reasoning_parts: List[str] = []
    tool_buffers: Dict[int, Dict[str, Any]] = {}
    finish_reason = None
    last_id = None
    chunk_count = 0
    cancelled = False

    response_stream = client.chat.completions.create(**request)
    for chunk in response_stream:
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            close = getattr(response_stream, "close", None)
            if callable(close):
                close()
            break
        chunk_count += 1
        last_id = getattr(chunk, "id", last_id)

        choices = getattr(chunk, "choices", None) or []
        if not choices:
            continue
        finish_reason = getattr(choices[0], "finish_reason", None) or finish_reason

        delta = getattr(choices[0], "delta", None)
        if delta is None:
            continue

        piece = _coerce_text(getattr(delta, "content", None))
        if piece:
            content_parts.append(piece)
            if on_content_chunk:
                on_content_chunk(piece)

        reasoning = _extract_reasoning(delta)
        if reasoning:
            reasoning_parts.append(reasoning)

        for delta_tool_call in getattr(delta, "tool_calls", None) or []:
            _merge_stream_tool_call(tool_buffers, delta_tool_call)

    return LLMCallResult(
        assistant_content = "".join(content_parts),
        tool_calls = [tool_buffers[index] for index in sorted(tool_buffers)],
        finish_reason = finish_reason,
        assistant_reasoning = "".join(reasoning_parts),
        raw_metadata = {
            "stream": True,
            "chunk_count": chunk_count,
            "response_id": last_id,
            "cancelled": cancelled,
        },
    )


def _extract_reasoning(payload: Any) -> str:
    """Collect provider-specific reasoning fields."""
    segments = []
    for attr_name in ["reasoning", "reasoning_content", "thinking"]:
        raw = _read_obj(payload, attr_name)
        if raw:
            segments.append(_coerce_text(raw))
    return "".join(segments)


def _normalize_tool_calls(tool_calls: Any) -> List[Dict[str, Any]]:
    """Normalize SDK tool call objects to plain dicts."""
    normalized = []
    for index, tool_call in enumerate(tool_calls or []):
        function_payload = _read_obj(tool_call, "function") or {}
        normalized.append(
            {
                "id": _read_obj(tool_call, "id") or f"call_{index}",
                "type": "function",
                "function": {
                    "name": _read_obj(function_payload, "name") or "",
                    "arguments": _read_obj(function_payload, "arguments") or "{}",
                },
            }
        )
    return normalized


def _merge_stream_tool_call(tool_buffers: Dict[int, Dict[str, Any]], delta_tool_call: Any) -> None:
    raw_index = _read_obj(delta_tool_call, "index")
    index = int(raw_index) if raw_index is not None else len(tool_buffers)

    buffer = tool_buffers.setdefault(
        index,
        {
            "id": f"call_{index}",
            "type": "function",
            "function": {"name": "", "arguments": ""},
        },
    )

    tool_id = _read_obj(delta_tool_call, "id")
    if tool_id:
        buffer["id"] = tool_id

    function_payload = _read_obj(delta_tool_call, "function")
    if not function_payload:
        return

    name_piece = _read_obj(function_payload, "name")
    if name_piece and not buffer["function"]["name"].endswith(name_piece):
        buffer["function"]["name"] += name_piece

    args_piece = _read_obj(function_payload, "arguments")
    if args_piece:
        buffer["function"]["arguments"] += args_piece


def _coerce_text(value: Any) -> str:
    """Flatten content (str, list of parts, dict) to text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(
            _coerce_text(part)
            for part in value
            if _read_obj(part, "type") not in {"reasoning", "thinking"}
        )
    text = _read_obj(value, "text")
    if text is None:
        text = _read_obj(value, "content")
    if text is not None:
        return _coerce_text(text)
    return "" if isinstance(value, dict) else str(value)


def _read_obj(obj: Any, key: str) -> Any:
    """Read key from object or dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _safe_model_dump(obj: Any) -> Any:
    if obj is None or isinstance(obj, dict):
        return obj
    model_dump = getattr(obj, "model_dump", None)
    if callable(model_dump):
        return model_dump()
    return str(obj)
