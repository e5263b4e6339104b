"""
Shared test utilities for this repository.

Provides:
1) Scripted chat model (no network, no API key)
2) Tool-call payload builders in the normalized OpenAI format
3) Fake external tool provider config
4) Common test runner
"""

import asyncio
import json
import os
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mini_code.bridge import BridgeConfig
from utils.llm_call import LLMCallResult

FAKE_PROVIDER = PROJECT_ROOT / "tests" / "fake_provider.py"


def tool_call(call_id: str, name: str, arguments: Any = None) -> Dict[str, Any]:
    """
    Build one normalized tool call payload.

    Parameters:
        call_id: Tool call id.
        name: Tool name.
        arguments: Dict (serialized to JSON) or raw argument string.
    """
    if isinstance(arguments, str):
        raw_arguments = arguments
    else:
        raw_arguments = json.dumps(arguments or {})
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": raw_arguments},
    }


def reply(content: str = "", tool_calls: Optional[List[Dict[str, Any]]] = None, finish_reason: Optional[str] = None) -> LLMCallResult:
    """Build one scripted model reply."""
    if finish_reason is None:
        finish_reason = "tool_calls" if tool_calls else "stop"
    return LLMCallResult(
        assistant_content = content,
        tool_calls = list(tool_calls or []),
        finish_reason = finish_reason,
    )


class ScriptedModel:
    """
    Fake model replaying prepared replies and recording every request.

    Replies can be LLMCallResults or callables taking the request messages,
    which lets a script react to what the loop sent.
    """

    def __init__(self, replies: List[Any], delay: float = 0.0):
        self.replies = list(replies)
        self.delay = delay
        self.requests: List[Dict[str, Any]] = []

    async def complete(self, messages, tools = None, max_tokens = None):
        self.requests.append(
            {
                "messages": [dict(message) for message in messages],
                "tools": [tool["function"]["name"] for tool in tools or []],
                "max_tokens": max_tokens,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.replies:
            return reply("(script exhausted)")
        next_reply = self.replies.pop(0)
        if callable(next_reply):
            return next_reply(messages)
        return next_reply


class RoutingModel:
    """
    Fake model that picks a script by the request's system prompt.

    Used when a main loop and its subagents share one model object.
    """

    def __init__(self, scripts: Dict[str, ScriptedModel], default: ScriptedModel):
        self.scripts = scripts
        self.default = default

    async def complete(self, messages, tools = None, max_tokens = None):
        system_text = " ".join(
            message.get("content") or ""
            for message in messages
            if message.get("role") == "system"
        )
        for marker, script in self.scripts.items():
            if marker in system_text:
                return await script.complete(messages, tools, max_tokens)
        return await self.default.complete(messages, tools, max_tokens)


def fake_provider_config(**overrides) -> BridgeConfig:
    """
    Bridge config launching tests/fake_provider.py with this interpreter.

    Parameters:
        overrides: BridgeConfig fields to replace.
    """
    settings = {
        "command": [sys.executable, "-u", str(FAKE_PROVIDER)],
        "env": {},
        "name": "fake",
        "call_timeout": 10.0,
        "startup_timeout": 10.0,
        "tool_prefix": "mcp_",
    }
    settings.update(overrides)
    return BridgeConfig(**settings)


def set_env(overrides):
    """Set env variables and return previous snapshot for restoration."""
    before = {}
    for key, value in overrides.items():
        before[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return before


def restore_env(snapshot):
    """Restore env variables from snapshot."""
    for key, value in snapshot.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def run_tests(test_functions):
    """
    Run test callables and print a compact summary.

    Parameters:
        test_functions: List of test functions.
    """
    failed = []
    for test_function in test_functions:
        print(f"\n{'=' * 60}")
        print(f"Running: {test_function.__name__}")
        print("=" * 60)
        try:
            if not test_function():
                failed.append(test_function.__name__)
        except Exception as exc:
            print(f"FAILED: {exc}")
            traceback.print_exc()
            failed.append(test_function.__name__)

    passed = len(test_functions) - len(failed)
    print(f"\n{'=' * 60}")
    print(f"Results: {passed}/{len(test_functions)} passed")
    print("=" * 60)
    if failed:
        print(f"FAILED: {failed}")
        return False
    print("All tests passed!")
    return True
