"""Trace logging of model replies and tool results, one compact line each.

Lines are tagged with the acting loop so nested subagent traffic can be
told apart from the main conversation:

    [LLM:main] assistant: Looking at the tests first.
    [LLM:main] tool_calls: task({"role": "explore", ...})
    [TOOL:subagent:explore] read_file: def main()...
    [TOOL:main] bash [error, truncated]: ...
"""

import json
import logging
from typing import Any, Dict, Optional

PREVIEW_CHARS = 200
CONTENT_PREVIEW_CHARS = 400
ARGS_PREVIEW_CHARS = 160


class TraceLogger:
    """Emit trace lines only when enabled (--show-llm-response)."""

    def __init__(self, enabled: bool, logger: Optional[logging.Logger] = None):
        self.enabled = bool(enabled)
        self.logger = logger or logging.getLogger("mini_code.trace")

    def log_reply(self, actor: str, result: Any) -> None:
        """
        Log one model reply.

        Parameters:
            actor: Loop tag (main, subagent:<role>).
            result: LLMCallResult of the round.
        """
        if not self.enabled:
            return

        self._emit("LLM", actor, f"assistant: {_preview(result.assistant_content, CONTENT_PREVIEW_CHARS) or '(empty)'}")
        if result.tool_calls:
            calls = "; ".join(_describe_call(call) for call in result.tool_calls)
            self._emit("LLM", actor, f"tool_calls: {calls}")
        if result.assistant_reasoning:
            self._emit("LLM", actor, f"reasoning: {_preview(result.assistant_reasoning, PREVIEW_CHARS)}")
        if result.truncated:
            self._emit("LLM", actor, f"reply cut off (finish_reason={result.finish_reason})")

    def log_tool_result(
        self,
        actor: str,
        tool_name: str,
        content: str,
        is_error: bool = False,
        truncated: bool = False,
    ) -> None:
        if not self.enabled:
            return

        flags = [name for name, flag in (("error", is_error), ("truncated", truncated)) if flag]
        status = f" [{', '.join(flags)}]" if flags else ""
        self._emit("TOOL", actor, f"{tool_name}{status}: {_preview(content, PREVIEW_CHARS) or '(empty)'}")

    def _emit(self, kind: str, actor: str, text: str) -> None:
        self.logger.info(f"[{kind}:{actor}] {text}")


def _describe_call(tool_call: Dict[str, Any]) -> str:
    """name(args) with arguments re-serialized on one line when they parse."""
    function = tool_call.get("function") or {}
    raw = function.get("arguments") or "{}"
    try:
        arguments = json.dumps(json.loads(raw), ensure_ascii = False)
    except (TypeError, ValueError):
        arguments = str(raw)
    return f"{function.get('name') or 'unknown'}({_preview(arguments, ARGS_PREVIEW_CHARS)})"


def _preview(text: Optional[str], max_chars: int) -> str:
    flat = (text or "").replace("\n", "\\n").strip()
    if len(flat) <= max_chars:
        return flat
    return flat[:max_chars] + "..."
