"""Subagents: nested execution loops with their own conversation.

The parent sees a subagent as the `task` tool. A spawn builds a fresh
Conversation seeded with the task, a fresh ExecutionLoop bound to the
role's visible tools, and runs it to completion. The shared registry and
bridge are reused; nothing but the final text returns to the parent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from mini_code.conversation import Conversation
from mini_code.errors import FatalError, LoopTimeoutError, ToolValidationError
from mini_code.loop import ExecutionLoop, LoopBudget
from mini_code.registry import (
    MAIN_ONLY,
    WRITER_ROLES,
    AgentRole,
    ContextHandler,
    ToolContext,
    ToolRegistry,
    ToolSpec,
)
from utils.session_store import SessionStore
from utils.trace_logger import TraceLogger

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "task"
EMPTY_SUMMARY = "(subagent returned no text)"


@dataclass(frozen = True)
class RoleProfile:
    role: AgentRole
    description: str
    system_prompt: str


ROLE_PROFILES: Dict[AgentRole, RoleProfile] = {
    AgentRole.EXPLORE: RoleProfile(
        role = AgentRole.EXPLORE,
        description = "Read-only subagent for searching files and understanding code.",
        system_prompt = "You are an exploration subagent. Search and analyze, but never modify files. Return a concise summary.",
    ),
    AgentRole.CODE: RoleProfile(
        role = AgentRole.CODE,
        description = "Implementation subagent with full tool access.",
        system_prompt = "You are a coding subagent. You have full access to implement changes efficiently in the codebase.",
    ),
    AgentRole.PLAN: RoleProfile(
        role = AgentRole.PLAN,
        description = "Read-only planning subagent for strategy and sequencing.",
        system_prompt = "You are a planning subagent. Analyze the codebase and output a numbered implementation plan. Do NOT make changes.",
    ),
}


def get_role_descriptions() -> str:
    """
    Build a bullet list describing all spawnable roles.
    """
    return "\n".join(
        f"- {profile.role.value}: {profile.description}"
        for profile in ROLE_PROFILES.values()
    )


TASK_SCHEMA = {
    "type": "object",
    "properties": {
        "role": {
            "type": "string",
            "enum": [role.value for role in ROLE_PROFILES],
        },
        "task_description": {"type": "string"},
        "prompt": {"type": "string"},
    },
    "required": ["role", "task_description"],
}


class SubagentSpawner:
    """
    Run subagents for the `task` tool.

    Spawns are serialized unless concurrent=True; each spawn owns its
    Conversation and loop, so running them side by side needs no other
    change.
    """

    def __init__(
        self,
        model: Any,
        registry: ToolRegistry,
        budget: Optional[LoopBudget] = None,
        max_depth: int = 1,
        workspace: Optional[Path] = None,
        trace_logger: Optional[TraceLogger] = None,
        session_store: Optional[SessionStore] = None,
        concurrent: bool = False,
    ):
        """
        Parameters:
            model: Model shared with the parent loop.
            registry: Shared tool registry (same bridge, no new process).
            budget: Budget applied to every subagent loop.
            max_depth: Deepest allowed nesting; 1 lets only the main agent spawn.
            workspace: Directory named in the subagent system prompt.
            trace_logger: Optional per-turn trace logger.
            session_store: Optional session event log.
            concurrent: Allow overlapping spawns.
        """
        self.model = model
        self.registry = registry
        self.budget = budget or LoopBudget(max_rounds = 30)
        self.max_depth = max(0, int(max_depth))
        self.workspace = Path(workspace) if workspace else Path.cwd()
        self.tracer = trace_logger
        self.session = session_store
        self.concurrent = concurrent
        self._locks: Dict[int, asyncio.Lock] = {}
        self.spawn_count = 0

    def tool_spec(self) -> ToolSpec:
        """The `task` ToolSpec; spawning roles follow max_depth."""
        allowed_roles = MAIN_ONLY if self.max_depth <= 1 else WRITER_ROLES
        return ToolSpec(
            name = TASK_TOOL_NAME,
            description = (
                "Spawn a subagent for focused work in isolated context. "
                "Only its final summary is returned.\n\n"
                f"Roles:\n{get_role_descriptions()}"
            ),
            input_schema = TASK_SCHEMA,
            handler = ContextHandler(self.handle_task),
            allowed_roles = allowed_roles,
        )

    async def handle_task(self, args: Dict[str, Any], context: ToolContext) -> str:
        """
        Tool entry point; nested failures propagate and become an is_error result.

        Parameters:
            args: Validated `task` arguments.
            context: Calling loop's context (supplies the current depth).
        """
        description = str(args.get("task_description") or "").strip()
        prompt = str(args.get("prompt") or "").strip() or description
        if not description:
            raise ToolValidationError("task requires non-empty task_description.")

        return await self.spawn(
            role = args.get("role"),
            task_description = description,
            prompt = prompt,
            depth = context.depth + 1,
        )

    async def spawn(
        self,
        role: Any,
        task_description: str,
        prompt: Optional[str] = None,
        depth: int = 1,
    ) -> str:
        """
        Run one subagent to completion and return its final text.

        Parameters:
            role: Subagent role (explore|code|plan).
            task_description: Short description, also the prompt if none is given.
            prompt: Full instructions sent as the subagent's first message.
            depth: Nesting depth of the new loop.
        """
        try:
            role = AgentRole(role)
        except ValueError:
            raise ToolValidationError(f"Unknown subagent role: {role}") from None
        profile = ROLE_PROFILES.get(role)
        if profile is None:
            raise ToolValidationError(f"Role '{role.value}' cannot be spawned.")
        if depth > self.max_depth:
            raise ToolValidationError(
                f"Subagent depth limit reached ({self.max_depth}); do the work directly."
            )

        if self.concurrent:
            return await self._run(profile, task_description, prompt or task_description, depth)
        # One lock per depth: siblings wait, a nested spawn does not wait on its parent.
        async with self._locks.setdefault(depth, asyncio.Lock()):
            return await self._run(profile, task_description, prompt or task_description, depth)

    async def _run(self, profile: RoleProfile, description: str, prompt: str, depth: int) -> str:
        actor = f"subagent:{profile.role.value}"
        conversation = Conversation()
        conversation.append_user(prompt)

        loop = ExecutionLoop(
            model = self.model,
            registry = self.registry,
            role = profile.role,
            budget = self.budget,
            system_prompt = (
                f"You are a {profile.role.value} subagent at {self.workspace}.\n\n"
                f"{profile.system_prompt}\n\n"
                "Complete the task and return a clear, concise summary."
            ),
            conversation = conversation,
            actor = actor,
            depth = depth,
            trace_logger = self.tracer,
            session_store = self.session,
        )

        self.spawn_count += 1
        logger.info(f"[{actor}] {description}")
        start_time = time.monotonic()
        try:
            summary = await loop.run()
        except (LoopTimeoutError, FatalError) as exc:
            logger.warning(
                f"[{actor}] {description} - failed after {loop.rounds} rounds: {type(exc).__name__}"
            )
            raise

        elapsed = time.monotonic() - start_time
        logger.info(f"[{actor}] {description} - done ({loop.tool_count} tools, {elapsed:.1f}s)")
        return summary or EMPTY_SUMMARY
