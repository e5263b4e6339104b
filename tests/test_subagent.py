"""
Tests for mini_code/subagent.py - context isolation via subagents.

Covers role filtering, summary-only results, nested failure reporting,
the depth bound, and spawn serialization.
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.utils import RoutingModel, ScriptedModel, reply, run_tests, tool_call
from mini_code.errors import ToolValidationError
from mini_code.loop import ExecutionLoop, LoopBudget
from mini_code.registry import ALL_ROLES, WRITER_ROLES, AgentRole, LocalHandler, ToolRegistry, ToolSpec
from mini_code.subagent import ROLE_PROFILES, TASK_TOOL_NAME, SubagentSpawner

EMPTY_SCHEMA = {"type": "object", "properties": {}}
NOTE_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


def _build(model, written, budget = None, max_depth = 1, concurrent = False):
    def _peek():
        return "a.txt\nb.txt"

    def _write_note(text):
        written.append(text)
        return "written"

    registry = ToolRegistry()
    spawner = SubagentSpawner(
        model = model,
        registry = registry,
        budget = budget or LoopBudget(max_rounds = 5),
        max_depth = max_depth,
        concurrent = concurrent,
    )
    registry.register(ToolSpec("peek", "List files.", EMPTY_SCHEMA, LocalHandler(_peek), ALL_ROLES))
    registry.register(ToolSpec("write_note", "Write a note.", NOTE_SCHEMA, LocalHandler(_write_note), WRITER_ROLES))
    registry.register(spawner.tool_spec())
    registry.freeze()
    return registry, spawner


def test_role_profiles_defined():
    for role in (AgentRole.EXPLORE, AgentRole.CODE, AgentRole.PLAN):
        assert role in ROLE_PROFILES, f"Missing role profile: {role}"
        assert ROLE_PROFILES[role].description
        assert ROLE_PROFILES[role].system_prompt
    assert AgentRole.MAIN not in ROLE_PROFILES
    print("PASS: test_role_profiles_defined")
    return True


def test_explore_subagent_is_isolated_and_read_only():
    written = []
    explore_script = ScriptedModel(
        [
            reply(tool_calls = [tool_call("s1", "write_note", {"text": "sneaky"})]),
            reply(tool_calls = [tool_call("s2", "peek")]),
            reply("Found a.txt and b.txt"),
        ]
    )
    main_script = ScriptedModel(
        [
            reply(tool_calls = [tool_call("m1", TASK_TOOL_NAME, {"role": "explore", "task_description": "list files"})]),
            reply("All done"),
        ]
    )
    model = RoutingModel({"explore subagent": explore_script}, default = main_script)
    registry, spawner = _build(model, written)

    loop = ExecutionLoop(model = model, registry = registry, actor = "main")
    assert asyncio.run(loop.run("What files are there?")) == "All done"

    assert written == [], "explore must not reach the write tool"
    assert explore_script.requests[0]["tools"] == ["peek"]
    assert TASK_TOOL_NAME in main_script.requests[0]["tools"]

    sub_results = [message for message in explore_script.requests[1]["messages"] if message["role"] == "tool"]
    assert sub_results[0]["content"] == "Error: Unknown tool: write_note"

    parent_calls = [call.name for call in loop.conversation.tool_calls()]
    assert parent_calls == [TASK_TOOL_NAME], parent_calls
    task_result = loop.conversation.messages[2].tool_results[0]
    assert task_result.content == "Found a.txt and b.txt"
    assert not task_result.is_error
    assert spawner.spawn_count == 1
    print("PASS: test_explore_subagent_is_isolated_and_read_only")
    return True


def test_nested_failure_becomes_error_result():
    code_script = ScriptedModel([reply(tool_calls = [tool_call(f"s{index}", "peek")]) for index in range(5)])
    main_script = ScriptedModel(
        [
            reply(tool_calls = [tool_call("m1", TASK_TOOL_NAME, {"role": "code", "task_description": "loop forever"})]),
            reply("Gave up on the subagent"),
        ]
    )
    model = RoutingModel({"code subagent": code_script}, default = main_script)
    registry, _ = _build(model, [], budget = LoopBudget(max_rounds = 2))

    loop = ExecutionLoop(model = model, registry = registry)
    assert asyncio.run(loop.run("go")) == "Gave up on the subagent"

    result = loop.conversation.messages[2].tool_results[0]
    assert result.is_error
    assert result.content.startswith("LoopTimeoutError: Stopped after reaching max rounds (2)")
    print("PASS: test_nested_failure_becomes_error_result")
    return True


def test_depth_and_role_bounds():
    registry, spawner = _build(ScriptedModel([]), [], max_depth = 1)
    assert registry.get(TASK_TOOL_NAME).allowed_roles == frozenset({AgentRole.MAIN})

    for kwargs in (
        {"role": "explore", "task_description": "x", "depth": 2},
        {"role": "main", "task_description": "x"},
        {"role": "wizard", "task_description": "x"},
    ):
        try:
            asyncio.run(spawner.spawn(**kwargs))
            raise AssertionError(f"Expected ToolValidationError for {kwargs}")
        except ToolValidationError:
            pass

    deeper_registry, _ = _build(ScriptedModel([]), [], max_depth = 2)
    assert AgentRole.CODE in deeper_registry.get(TASK_TOOL_NAME).allowed_roles
    print("PASS: test_depth_and_role_bounds")
    return True


class _OverlapModel:
    """Subagent model that records how many spawns run at the same time."""

    def __init__(self):
        self.active = 0
        self.max_active = 0

    async def complete(self, messages, tools = None, max_tokens = None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.05)
        self.active -= 1
        return reply("sub done")


def _run_two_spawns(concurrent):
    overlap = _OverlapModel()
    main_script = ScriptedModel(
        [
            reply(tool_calls = [
                tool_call("m1", TASK_TOOL_NAME, {"role": "plan", "task_description": "first"}),
                tool_call("m2", TASK_TOOL_NAME, {"role": "plan", "task_description": "second"}),
            ]),
            reply("both planned"),
        ]
    )
    model = RoutingModel({"plan subagent": overlap}, default = main_script)
    registry, _ = _build(model, [], concurrent = concurrent)
    loop = ExecutionLoop(model = model, registry = registry)
    asyncio.run(loop.run("plan twice"))
    results = loop.conversation.messages[2].tool_results
    return overlap.max_active, [result.content for result in results]


def test_spawns_are_serialized_by_default():
    max_active, contents = _run_two_spawns(concurrent = False)
    assert max_active == 1
    assert contents == ["sub done", "sub done"]

    max_active, _ = _run_two_spawns(concurrent = True)
    assert max_active == 2
    print("PASS: test_spawns_are_serialized_by_default")
    return True


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_role_profiles_defined,
        test_explore_subagent_is_isolated_and_read_only,
        test_nested_failure_becomes_error_result,
        test_depth_and_role_bounds,
        test_spawns_are_serialized_by_default,
    ]) else 1)
