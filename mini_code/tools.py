"""Local tools: shell, file read/write/edit, and the todo list.

File tools resolve every path inside the workspace root and reject
anything that escapes it. Handlers raise on failure; the loop turns the
exception into an is_error result for the model.
"""

import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from mini_code.errors import ToolValidationError
from mini_code.registry import (
    ALL_ROLES,
    WRITER_ROLES,
    ContextHandler,
    LocalHandler,
    ToolContext,
    ToolSpec,
)
from mini_code.todo import TODO_WRITE_SCHEMA

logger = logging.getLogger(__name__)

BASH_TIMEOUT_SECONDS = 300
DANGEROUS_COMMANDS = ["rm -rf /", "sudo", "shutdown", "reboot", "> /dev/"]


def safe_path(workspace: Path, file_path: str) -> Path:
    """
    Resolve file_path against the workspace and refuse escapes.

    Parameters:
        workspace: Workspace root directory.
        file_path: Relative (or absolute, inside the workspace) path.
    """
    root = Path(workspace).resolve()
    path = Path(file_path)
    if not path.is_absolute():
        path = root / path
    resolved = path.resolve()
    try:
        resolved.relative_to(root)
    except ValueError:
        raise ToolValidationError(f"Path escapes workspace: {file_path}") from None
    return resolved


class WorkspaceTools:
    """Tool implementations bound to one workspace root."""

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace).resolve()

    def bash(self, command: str) -> str:
        """
        Execute shell command.

        Parameters:
            command: Command string to run.
        """
        if any(pattern in command for pattern in DANGEROUS_COMMANDS):
            raise PermissionError("Dangerous command blocked")

        logger.info(f"$ {command}")
        try:
            result = subprocess.run(
                command,
                shell = True,
                cwd = self.workspace,
                capture_output = True,
                text = True,
                errors = "replace",
                timeout = BASH_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired:
            raise TimeoutError(f"Command timed out after {BASH_TIMEOUT_SECONDS}s") from None

        combined = ((result.stdout or "") + (result.stderr or "")).strip()
        if result.returncode != 0:
            combined = f"{combined}\n(exit code {result.returncode})".strip()
        return combined or "(no output)"

    def read_file(self, file_path: str, max_lines: Optional[int] = None) -> str:
        """
        Read text content from a file.

        Parameters:
            file_path: Path of file to read.
            max_lines: Maximum lines to return. Use None for all.
        """
        path = safe_path(self.workspace, file_path)
        content = path.read_text(encoding = "utf-8", errors = "replace")
        if not max_lines or max_lines <= 0:
            return content

        lines = content.splitlines()
        if max_lines >= len(lines):
            return content
        kept = "\n".join(lines[:max_lines])
        return f"{kept}\n... ({len(lines) - max_lines} more lines)"

    def write_file(self, file_path: str, content: str) -> str:
        """
        Write full content to a file, creating parent directories.

        Parameters:
            file_path: Target file path.
            content: Full file content.
        """
        path = safe_path(self.workspace, file_path)
        path.parent.mkdir(parents = True, exist_ok = True)
        path.write_text(content, encoding = "utf-8")
        return f"Wrote {len(content.encode('utf-8'))} bytes to {file_path}"

    def edit_file(self, file_path: str, old_content: str, new_content: str) -> str:
        """
        Replace the first occurrence of old_content in a file.

        Parameters:
            file_path: Target file path.
            old_content: Exact source text to replace.
            new_content: Replacement text.
        """
        path = safe_path(self.workspace, file_path)
        text = path.read_text(encoding = "utf-8", errors = "replace")
        if old_content not in text:
            raise ToolValidationError(f"Text not found in {file_path}")
        path.write_text(text.replace(old_content, new_content, 1), encoding = "utf-8")
        return f"Edited {file_path}"


def build_local_tools(workspace: Path) -> List[ToolSpec]:
    """
    Build the local ToolSpecs: read-only tools for every role, writers for main/code.

    Parameters:
        workspace: Workspace root the tools operate in.
    """
    tools = WorkspaceTools(workspace)
    return [
        ToolSpec(
            name = "bash",
            description = "Execute shell command.",
            input_schema = {
                "type": "object",
                "properties": {
                    "command": {"type": "string"}
                },
                "required": ["command"],
            },
            handler = LocalHandler(tools.bash),
            allowed_roles = ALL_ROLES,
        ),
        ToolSpec(
            name = "read_file",
            description = "Read file content with optional max_lines limit.",
            input_schema = {
                "type": "object",
                "properties": {
                    "file_path": {"type": "string"},
                    "max_lines": {"type": "integer"},
                },
                "required": ["file_path"],
            },
            handler = LocalHandler(tools.read_file),
            allowed_roles = ALL_ROLES,
        ),
        ToolSpec(
            name = "write_file",
            description = "Write full content to a file.",
            input_schema = {
                "type": "object",
                "properties": {
                    "file_path": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["file_path", "content"],
            },
            handler = LocalHandler(tools.write_file),
            allowed_roles = WRITER_ROLES,
        ),
        ToolSpec(
            name = "edit_file",
            description = "Replace the first occurrence of old_content with new_content in a file.",
            input_schema = {
                "type": "object",
                "properties": {
                    "file_path": {"type": "string"},
                    "old_content": {"type": "string"},
                    "new_content": {"type": "string"},
                },
                "required": ["file_path", "old_content", "new_content"],
            },
            handler = LocalHandler(tools.edit_file),
            allowed_roles = WRITER_ROLES,
        ),
    ]


async def todo_write(args: Dict[str, Any], context: ToolContext) -> str:
    """Replace the calling loop's todo list."""
    if context.todo is None:
        raise ToolValidationError("This loop has no todo list.")
    rendered = context.todo.update(args.get("items"))
    logger.info(f"[{context.actor}] Todo list updated:\n{rendered}")
    return rendered


def todo_tool_spec() -> ToolSpec:
    return ToolSpec(
        name = "todo_write",
        description = "Update complete todo list. Each item requires content, status, activeForm.",
        input_schema = TODO_WRITE_SCHEMA,
        handler = ContextHandler(todo_write),
        allowed_roles = WRITER_ROLES,
    )
