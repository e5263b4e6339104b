"""Todo list state with all-or-nothing validated updates."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from mini_code.errors import ToolValidationError

logger = logging.getLogger(__name__)

MAX_TODO_ITEMS = 20


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen = True)
class TodoItem:
    content: str
    status: TodoStatus
    active_form: str


TODO_WRITE_SCHEMA = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "content": {"type": "string"},
                    "status": {
                        "type": "string",
                        "enum": [status.value for status in TodoStatus],
                    },
                    "activeForm": {"type": "string"},
                },
                "required": ["content", "status", "activeForm"],
            },
        }
    },
    "required": ["items"],
}


class TodoManager:
    """
    Manage todo items with strict validation.

    The model sends the complete list every time. The whole list is
    validated before anything is stored, so a rejected update leaves the
    previous list untouched.
    """

    def __init__(self):
        self.items: List[TodoItem] = []

    def update(self, items: List[Dict[str, Any]]) -> str:
        """
        Validate and replace the full todo list.

        Parameters:
            items: Full todo list payload from the model.
        """
        if not isinstance(items, list):
            raise ToolValidationError("items must be a list of todo objects.")

        validated: List[TodoItem] = []
        in_progress_count = 0

        for index, item in enumerate(items):
            if not isinstance(item, dict):
                raise ToolValidationError(f"Item {index} must be an object.")

            content = str(item.get("content") or "").strip()
            raw_status = str(item.get("status") or "").strip().lower()
            active_form = str(item.get("activeForm") or item.get("active_form") or "").strip()

            if not content:
                raise ToolValidationError(f"Item {index} is missing content.")
            if not active_form:
                raise ToolValidationError(f"Item {index} is missing activeForm.")
            try:
                status = TodoStatus(raw_status)
            except ValueError:
                raise ToolValidationError(
                    f"Item {index} has invalid status '{raw_status}'. "
                    "Must be pending|in_progress|completed."
                ) from None

            if status is TodoStatus.IN_PROGRESS:
                in_progress_count += 1

            validated.append(TodoItem(content = content, status = status, active_form = active_form))

        if len(validated) > MAX_TODO_ITEMS:
            raise ToolValidationError(f"Too many todo items ({len(validated)}). Maximum allowed is {MAX_TODO_ITEMS}.")
        if in_progress_count > 1:
            raise ToolValidationError("Only one todo item can be in_progress at a time.")

        self.items = validated
        logger.debug(f"Todo list replaced with {len(validated)} items")
        return self.render()

    def render(self) -> str:
        """
        Render todo items to a compact status view.
        """
        if not self.items:
            return "No todos."

        lines = []
        for item in self.items:
            if item.status is TodoStatus.COMPLETED:
                lines.append(f"- [✅] {item.content}")
            elif item.status is TodoStatus.IN_PROGRESS:
                lines.append(f"- [>] {item.content} <- ({item.active_form})")
            else:
                lines.append(f"- [ ] {item.content}")

        completed_count = sum(1 for item in self.items if item.status is TodoStatus.COMPLETED)
        lines.append("")
        lines.append(f"({completed_count}/{len(self.items)} completed)")
        return "\n".join(lines)
