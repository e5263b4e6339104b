"""Unit tests for mini_code/tools.py - local shell and file tools."""

import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.utils import run_tests
from mini_code.errors import ToolValidationError
from mini_code.registry import AgentRole, ToolRegistry
from mini_code.tools import WorkspaceTools, build_local_tools, safe_path, todo_tool_spec


def test_safe_path_rejects_escapes():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir).resolve()
        assert safe_path(root, "sub/file.txt") == root / "sub" / "file.txt"
        for bad in ("../outside.txt", "/etc/passwd", "sub/../../x"):
            try:
                safe_path(root, bad)
                raise AssertionError(f"Expected rejection for {bad}")
            except ToolValidationError as exc:
                assert "escapes workspace" in str(exc)
    print("PASS: test_safe_path_rejects_escapes")
    return True


def test_write_read_edit_roundtrip():
    with tempfile.TemporaryDirectory() as tmpdir:
        tools = WorkspaceTools(Path(tmpdir))
        message = tools.write_file("notes/todo.txt", "one\ntwo\nthree\nfour\n")
        assert message == "Wrote 19 bytes to notes/todo.txt"

        assert tools.read_file("notes/todo.txt", max_lines = 2) == "one\ntwo\n... (2 more lines)"
        assert tools.read_file("notes/todo.txt") == "one\ntwo\nthree\nfour\n"

        assert tools.edit_file("notes/todo.txt", "o", "0") == "Edited notes/todo.txt"
        assert tools.read_file("notes/todo.txt").startswith("0ne\ntwo\n"), "Only the first match is replaced"

        try:
            tools.edit_file("notes/todo.txt", "missing", "x")
            raise AssertionError("Expected ToolValidationError")
        except ToolValidationError as exc:
            assert "Text not found" in str(exc)
    print("PASS: test_write_read_edit_roundtrip")
    return True


def test_bash_runs_in_workspace_and_blocks_dangerous_commands():
    with tempfile.TemporaryDirectory() as tmpdir:
        tools = WorkspaceTools(Path(tmpdir))
        Path(tmpdir, "marker.txt").write_text("x", encoding = "utf-8")
        assert "marker.txt" in tools.bash("ls")
        assert tools.bash("true") == "(no output)"
        assert "(exit code 3)" in tools.bash("exit 3")

        for command in ("sudo ls", "rm -rf /", "echo hi > /dev/sda"):
            try:
                tools.bash(command)
                raise AssertionError(f"Expected PermissionError for {command}")
            except PermissionError as exc:
                assert "Dangerous command blocked" in str(exc)
    print("PASS: test_bash_runs_in_workspace_and_blocks_dangerous_commands")
    return True


def test_local_tool_specs_register_with_roles():
    with tempfile.TemporaryDirectory() as tmpdir:
        registry = ToolRegistry()
        for spec in build_local_tools(Path(tmpdir)):
            registry.register(spec)
        registry.register(todo_tool_spec())
        registry.freeze()

        explore = [spec.name for spec in registry.visible(AgentRole.EXPLORE)]
        code = [spec.name for spec in registry.visible(AgentRole.CODE)]
        assert explore == ["bash", "read_file"]
        assert code == ["bash", "read_file", "write_file", "edit_file", "todo_write"]
    print("PASS: test_local_tool_specs_register_with_roles")
    return True


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_safe_path_rejects_escapes,
        test_write_read_edit_roundtrip,
        test_bash_runs_in_workspace_and_blocks_dangerous_commands,
        test_local_tool_specs_register_with_roles,
    ]) else 1)
