"""Unit tests for mini_code/todo.py - validated todo list state."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.utils import run_tests
from mini_code.errors import ToolValidationError
from mini_code.todo import MAX_TODO_ITEMS, TodoManager, TodoStatus


def _item(content, status = "pending", active_form = None):
    return {"content": content, "status": status, "activeForm": active_form or f"Doing {content}"}


def test_update_and_render():
    manager = TodoManager()
    rendered = manager.update(
        [
            _item("Read code", "completed"),
            _item("Write tests", "in_progress", "Writing tests"),
            _item("Ship it"),
        ]
    )
    assert rendered.splitlines() == [
        "- [✅] Read code",
        "- [>] Write tests <- (Writing tests)",
        "- [ ] Ship it",
        "",
        "(1/3 completed)",
    ], rendered
    assert manager.items[1].status is TodoStatus.IN_PROGRESS
    print("PASS: test_update_and_render")
    return True


def test_empty_list_renders_placeholder():
    manager = TodoManager()
    assert manager.render() == "No todos."
    assert manager.update([]) == "No todos."
    print("PASS: test_empty_list_renders_placeholder")
    return True


def test_two_in_progress_rejected_and_state_kept():
    manager = TodoManager()
    manager.update([_item("A", "in_progress")])
    before = list(manager.items)

    try:
        manager.update([_item("A", "in_progress"), _item("B", "in_progress")])
        raise AssertionError("Expected ToolValidationError")
    except ToolValidationError as exc:
        assert "in_progress" in str(exc)

    assert manager.items == before, "Rejected update must not change the list"
    print("PASS: test_two_in_progress_rejected_and_state_kept")
    return True


def test_invalid_items_rejected():
    manager = TodoManager()
    manager.update([_item("Keep me", "in_progress"), _item("And me")])
    before = list(manager.items)
    bad_payloads = [
        [{"content": "", "status": "pending", "activeForm": "x"}],
        [{"content": "A", "status": "done", "activeForm": "x"}],
        [{"content": "A", "status": "pending", "activeForm": ""}],
        [{"content": "A", "activeForm": "Doing A"}],
        [_item("A"), {"status": "pending", "activeForm": "Doing B"}],
        ["not an object"],
        "not a list",
        [_item(f"task {index}") for index in range(MAX_TODO_ITEMS + 1)],
    ]
    for payload in bad_payloads:
        try:
            manager.update(payload)
            raise AssertionError(f"Expected rejection for {payload!r}")
        except ToolValidationError:
            pass
        assert manager.items == before, f"Rejected update changed the list: {payload!r}"
    assert manager.render().endswith("(0/2 completed)")
    print("PASS: test_invalid_items_rejected")
    return True


def test_single_in_progress_of_three_renders():
    manager = TodoManager()
    rendered = manager.update(
        [
            _item("Plan", "pending"),
            _item("Build", "in_progress", "Building"),
            _item("Verify", "pending"),
        ]
    )
    lines = rendered.splitlines()
    assert [line for line in lines if line.startswith("- [>]")] == ["- [>] Build <- (Building)"]
    assert lines.count("- [ ] Plan") == 1 and lines.count("- [ ] Verify") == 1
    assert lines[-1] == "(0/3 completed)"
    print("PASS: test_single_in_progress_of_three_renders")
    return True


def test_snake_case_active_form_accepted():
    manager = TodoManager()
    manager.update([{"content": "A", "status": "IN_PROGRESS", "active_form": "Doing A"}])
    assert manager.items[0].active_form == "Doing A"
    assert manager.items[0].status is TodoStatus.IN_PROGRESS
    print("PASS: test_snake_case_active_form_accepted")
    return True


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_update_and_render,
        test_empty_list_renders_placeholder,
        test_two_in_progress_rejected_and_state_kept,
        test_invalid_items_rejected,
        test_single_in_progress_of_three_renders,
        test_snake_case_active_form_accepted,
    ]) else 1)
