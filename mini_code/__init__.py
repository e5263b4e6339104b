"""
mini_code: a tool-calling agent harness.

Pieces, bottom-up:
1) conversation - append-only message history of one loop
2) registry     - tool name -> ToolSpec, visible per AgentRole
3) todo         - validated todo list behind the todo_write tool
4) bridge       - JSON-RPC client for an out-of-process tool provider
5) loop         - model -> tools -> results rounds under budgets
6) subagent     - `task` tool running nested loops in isolated context
7) tools        - local shell and file tools
8) skills       - SKILL.md folders behind the `skill` tool
9) agent        - wiring and the `mini-code` CLI
"""

from mini_code.conversation import Conversation, Message, ToolCall, ToolResult
from mini_code.errors import (
    BridgeError,
    BridgeTimeoutError,
    FatalError,
    HarnessError,
    IPCError,
    LoopTimeoutError,
    ModelError,
    RegistrationError,
    ToolValidationError,
)
from mini_code.registry import AgentRole, ToolRegistry, ToolSpec
from mini_code.loop import ExecutionLoop, LoopBudget
from mini_code.bridge import BridgeConfig, ExternalToolBridge
from mini_code.subagent import SubagentSpawner

__all__ = [
    "Conversation",
    "Message",
    "ToolCall",
    "ToolResult",
    "BridgeError",
    "BridgeTimeoutError",
    "FatalError",
    "HarnessError",
    "IPCError",
    "LoopTimeoutError",
    "ModelError",
    "RegistrationError",
    "ToolValidationError",
    "AgentRole",
    "ToolRegistry",
    "ToolSpec",
    "ExecutionLoop",
    "LoopBudget",
    "BridgeConfig",
    "ExternalToolBridge",
    "SubagentSpawner",
]
