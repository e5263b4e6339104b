"""Session event log (JSONL) for diagnostics.

One file per process run, named <model>_<timestamp>.jsonl. Events:

    meta       model name and runtime options
    assistant  one model reply of any loop (main or subagent)
    tool       one finished tool call with its final (truncated) content
    outcome    how a loop ended when it hit a budget or a fatal error

Nothing reads the log back into a Conversation.
"""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


class SessionStore:
    """Append-only JSONL writer; every method is a no-op when disabled."""

    def __init__(
        self,
        enabled: bool,
        model: str,
        session_dir: Path,
        runtime_options: Optional[Dict[str, Any]] = None,
    ):
        self.enabled = bool(enabled)
        self.model = model or "unknown-model"
        self.path: Optional[Path] = None

        if not self.enabled:
            return

        directory = Path(session_dir)
        directory.mkdir(parents = True, exist_ok = True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        self.path = directory / f"{_sanitize_model_name(self.model)}_{stamp}.jsonl"
        self._record("meta", model = self.model, runtime_options = runtime_options or {})

    def record_assistant(
        self,
        actor: str,
        content: str,
        reasoning: str,
        tool_calls: Any,
        raw_metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._record(
            "assistant",
            actor = actor,
            content = content or "",
            reasoning = reasoning or "",
            tool_calls = tool_calls or [],
            raw_metadata = raw_metadata or {},
        )

    def record_tool(
        self,
        actor: str,
        tool_name: str,
        arguments: Dict[str, Any],
        content: str,
        is_error: bool = False,
        truncated: bool = False,
    ) -> None:
        """
        Record one tool result exactly as the model will see it.

        Parameters:
            actor: Loop that ran the tool (main, subagent:<role>).
            tool_name: Tool name as the model called it.
            arguments: Parsed arguments.
            content: Result content after truncation.
            is_error: Whether the result reports a failure.
            truncated: Whether the content was cut to the output limit.
        """
        self._record(
            "tool",
            actor = actor,
            tool_name = tool_name,
            arguments = arguments,
            content = content,
            is_error = is_error,
            truncated = truncated,
        )

    def record_outcome(
        self,
        actor: str,
        outcome: str,
        message: str,
        conversation: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Record a budget or fatal stop together with the partial conversation."""
        self._record(
            "outcome",
            actor = actor,
            outcome = outcome,
            message = message,
            conversation = conversation or [],
        )

    def get_path(self) -> Optional[Path]:
        return self.path

    def _record(self, event: str, **fields: Any) -> None:
        if not self.enabled or self.path is None:
            return

        payload = {"event": event, "timestamp": datetime.now().strftime("%Y-%m-%dT%H:%M:%S")}
        payload.update(fields)
        with self.path.open("a", encoding = "utf-8") as file:
            file.write(json.dumps(payload, ensure_ascii = False, default = str) + "\n")


def _sanitize_model_name(model_name: str) -> str:
    """Make a model name safe to use in a file name."""
    sanitized = re.sub(r"[^A-Za-z0-9_.-]+", "_", model_name.strip())
    return sanitized.strip("_") or "unknown-model"
