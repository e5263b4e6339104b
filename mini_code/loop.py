"""The execution loop: model -> tool calls -> results -> model, until done.

One round sends the whole conversation plus the role's visible tools to the
model. A reply without tool calls ends the run. Otherwise every tool call of
the reply is executed (concurrently), and the assistant message and the
complete, call-ordered result set are appended together before the next
round starts.

Budgets:
  - max_rounds and wall_clock_seconds end the run with LoopTimeoutError
  - consecutive truncated rounds beyond max_truncation_retries end it with
    FatalError (ModelError when the model call itself fails)
Both errors carry the partial conversation.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from mini_code.conversation import Conversation, ToolCall, ToolResult
from mini_code.errors import FatalError, HarnessError, LoopTimeoutError, ModelError
from mini_code.registry import AgentRole, ToolContext, ToolRegistry
from mini_code.todo import TodoManager
from utils.session_store import SessionStore
from utils.trace_logger import TraceLogger

logger = logging.getLogger(__name__)

INITIAL_REMINDER = "<reminder>Use todo_write for multi-step tasks.</reminder>"
NAG_REMINDER = "<reminder>10+ turns without todo update. Please update todos via todo_write.</reminder>"
NAG_AFTER_TURNS = 10
MODEL_TRUNCATION_NUDGE = (
    "[SYSTEM: Your previous response was truncated due to length. Please provide a brief "
    "summary, or write large content to a file using write_file tool.]"
)

CONTEXT_WINDOW_TOKENS = 200000
OUTPUT_RATIO = 0.4
MIN_OUTPUT_TOKENS = 4000


@dataclass
class LoopBudget:
    """Limits applied to one loop run."""

    max_rounds: int = 40
    wall_clock_seconds: Optional[float] = 600.0
    max_output_bytes: int = 50000
    max_truncation_retries: int = 3
    max_tokens: int = 8192


class ExecutionLoop:
    """
    Drive one conversation to completion against a role-filtered tool set.

    The registry (and any bridge behind it) is shared; the conversation and
    todo list belong to this loop alone.
    """

    def __init__(
        self,
        model: Any,
        registry: ToolRegistry,
        role: AgentRole = AgentRole.MAIN,
        budget: Optional[LoopBudget] = None,
        system_prompt: str = "",
        conversation: Optional[Conversation] = None,
        actor: Optional[str] = None,
        depth: int = 0,
        trace_logger: Optional[TraceLogger] = None,
        session_store: Optional[SessionStore] = None,
        todo_reminders: bool = False,
        todo: Optional[TodoManager] = None,
    ):
        """
        Parameters:
            model: Object with `async complete(messages, tools, max_tokens)`.
            registry: Shared, frozen tool registry.
            role: Role whose visible tools this loop may call.
            budget: Round, time, and truncation limits.
            system_prompt: System message sent ahead of the conversation.
            conversation: Existing history to continue (multi-turn CLI).
            actor: Label used in trace and session records.
            depth: Subagent nesting depth (0 for the main agent).
            trace_logger: Optional per-turn trace logger.
            session_store: Optional JSONL event log.
            todo_reminders: Inject todo_write reminders at request time.
            todo: Todo list to keep across runs (default: a fresh one).
        """
        self.model = model
        self.registry = registry
        self.role = AgentRole(role)
        self.budget = budget or LoopBudget()
        self.system_prompt = system_prompt
        self.conversation = conversation if conversation is not None else Conversation()
        self.actor = actor or self.role.value
        self.tracer = trace_logger or TraceLogger(enabled = False)
        self.session = session_store or SessionStore(enabled = False, model = "", session_dir = "sessions")
        self.todo_reminders = todo_reminders

        self.todo = todo if todo is not None else TodoManager()
        self.context = ToolContext(role = self.role, actor = self.actor, depth = depth, todo = self.todo)
        self.tool_specs = registry.visible(self.role)
        self._visible_names = {spec.name for spec in self.tool_specs}
        self._openai_tools = [spec.to_openai() for spec in self.tool_specs]

        self.rounds = 0
        self.tool_count = 0
        self.consecutive_truncations = 0

    async def run(self, prompt: Optional[str] = None) -> str:
        """
        Run rounds until the model answers without tool calls.

        Parameters:
            prompt: Optional user message appended before the first round.
        """
        if prompt:
            self.conversation.append_user(prompt)

        self.rounds = 0
        self.consecutive_truncations = 0
        wall_clock = self.budget.wall_clock_seconds
        started = time.monotonic()

        try:
            if wall_clock is None:
                return await self._run_rounds()
            return await self._run_with_wall_clock(wall_clock, started)
        except (LoopTimeoutError, FatalError) as exc:
            self._record_outcome(type(exc).__name__, str(exc))
            raise

    async def _run_with_wall_clock(self, wall_clock: float, started: float) -> str:
        # Only expiry of this wait counts as the wall-clock budget; a
        # TimeoutError raised inside a round is not mistaken for it.
        rounds_task = asyncio.ensure_future(self._run_rounds())
        try:
            done, _ = await asyncio.wait({rounds_task}, timeout = wall_clock)
        except asyncio.CancelledError:
            rounds_task.cancel()
            raise

        if rounds_task in done:
            return rounds_task.result()

        rounds_task.cancel()
        await asyncio.gather(rounds_task, return_exceptions = True)
        elapsed = time.monotonic() - started
        raise LoopTimeoutError(
            f"Wall-clock budget of {wall_clock}s exhausted after {self.rounds} rounds ({elapsed:.1f}s).",
            conversation = self.conversation,
        )

    async def _run_rounds(self) -> str:
        while True:
            if self.rounds >= self.budget.max_rounds:
                raise LoopTimeoutError(
                    f"Stopped after reaching max rounds ({self.budget.max_rounds}).",
                    conversation = self.conversation,
                )
            self.rounds += 1

            result = await self._call_model()
            tool_calls = parse_tool_calls(result.tool_calls)

            self.tracer.log_reply(self.actor, result)
            self.session.record_assistant(
                actor = self.actor,
                content = result.assistant_content,
                reasoning = result.assistant_reasoning,
                tool_calls = result.tool_calls,
                raw_metadata = result.raw_metadata,
            )

            if result.truncated:
                # Partial tool calls of a cut-off reply are not executable.
                self.conversation.append_assistant(result.assistant_content)
                self.conversation.append_user(MODEL_TRUNCATION_NUDGE)
                self._count_truncation("model reply hit the output token limit")
                continue

            if not tool_calls:
                self.conversation.append_assistant(result.assistant_content)
                self.consecutive_truncations = 0
                return result.assistant_content or ""

            self._check_unique_ids(tool_calls)
            results = await self.execute_round(tool_calls)

            self.conversation.append_assistant(result.assistant_content, tool_calls)
            self.conversation.append_tool_results(results)

            truncated = [item.tool_call_id for item in results if item.truncated]
            if truncated:
                self._count_truncation(f"tool output truncated for {', '.join(truncated)}")
            else:
                self.consecutive_truncations = 0

    async def execute_round(self, tool_calls: List[ToolCall]) -> List[ToolResult]:
        """
        Execute all tool calls of a round; results keep the call order.

        Parameters:
            tool_calls: Tool calls from one assistant message.
        """
        return list(await asyncio.gather(*(self._execute_one(call) for call in tool_calls)))

    async def _execute_one(self, tool_call: ToolCall) -> ToolResult:
        started = time.monotonic()

        if tool_call.parse_error:
            output, is_error = f"ToolValidationError: {tool_call.parse_error}", True
        elif tool_call.name not in self._visible_names:
            output, is_error = f"Unknown tool: {tool_call.name}", True
        else:
            try:
                output = await self.registry.dispatch(tool_call.name, tool_call.arguments, self.context)
                is_error = False
            except Exception as exc:
                logger.warning(f"[{self.actor}] tool {tool_call.name} failed: {type(exc).__name__}: {exc}")
                output, is_error = f"{type(exc).__name__}: {exc}", True

        content, truncated = truncate_utf8(output, self.budget.max_output_bytes)
        self.tool_count += 1

        logger.debug(
            f"[{self.actor}] {tool_call.name} done in {time.monotonic() - started:.2f}s "
            f"(error={is_error}, truncated={truncated})"
        )
        self.tracer.log_tool_result(
            actor = self.actor,
            tool_name = tool_call.name or "unknown",
            content = content,
            is_error = is_error,
            truncated = truncated,
        )
        self.session.record_tool(
            actor = self.actor,
            tool_name = tool_call.name or "unknown",
            arguments = tool_call.arguments,
            content = content,
            is_error = is_error,
            truncated = truncated,
        )
        return ToolResult(
            tool_call_id = tool_call.id,
            content = content,
            is_error = is_error,
            truncated = truncated,
        )

    async def _call_model(self):
        messages = self.build_request_messages()
        max_tokens = calculate_max_tokens(estimate_context_tokens(messages), self.budget.max_tokens)
        try:
            return await self.model.complete(messages, self._openai_tools, max_tokens = max_tokens)
        except HarnessError:
            raise
        except Exception as exc:
            raise ModelError(
                f"Model call failed in round {self.rounds}: {type(exc).__name__}: {exc}",
                conversation = self.conversation,
            ) from exc

    def build_request_messages(self) -> List[Dict[str, Any]]:
        """System prompt, request-time reminders, then the conversation."""
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})

        if self.todo_reminders and "todo_write" in self._visible_names:
            if len(self.conversation) <= 1:
                messages.append({"role": "system", "content": INITIAL_REMINDER})
            elif self.conversation.assistant_turns_since("todo_write") >= NAG_AFTER_TURNS:
                messages.append({"role": "system", "content": NAG_REMINDER})

        messages.extend(self.conversation.to_openai_messages())
        return messages

    def _count_truncation(self, reason: str) -> None:
        self.consecutive_truncations += 1
        limit = self.budget.max_truncation_retries
        logger.warning(f"[{self.actor}] truncation {self.consecutive_truncations}/{limit}: {reason}")
        if self.consecutive_truncations > limit:
            raise FatalError(
                f"Output truncated {self.consecutive_truncations} rounds in a row (limit {limit}). "
                "Break the task into smaller steps or write large output to files.",
                conversation = self.conversation,
            )

    def _check_unique_ids(self, tool_calls: List[ToolCall]) -> None:
        seen = set()
        for tool_call in tool_calls:
            if tool_call.id in seen:
                raise FatalError(
                    f"Model reused tool call id '{tool_call.id}' within one round.",
                    conversation = self.conversation,
                )
            seen.add(tool_call.id)

    def _record_outcome(self, outcome: str, message: str) -> None:
        logger.error(f"[{self.actor}] {outcome}: {message}")
        self.session.record_outcome(
            actor = self.actor,
            outcome = outcome,
            message = message,
            conversation = self.conversation.to_records(),
        )


def parse_tool_calls(raw_tool_calls: List[Dict[str, Any]]) -> List[ToolCall]:
    """
    Convert normalized tool-call dicts into ToolCalls with parsed arguments.

    Unparseable arguments do not raise; the ToolCall carries a parse_error
    and is answered with an is_error result.
    """
    tool_calls = []
    for index, raw in enumerate(raw_tool_calls or []):
        function_block = raw.get("function") or {}
        raw_arguments = function_block.get("arguments") or ""
        arguments, error = _parse_tool_args(raw_arguments)
        tool_calls.append(
            ToolCall(
                id = raw.get("id") or f"call_{index}",
                name = function_block.get("name") or "",
                arguments = arguments,
                raw_arguments = raw_arguments if isinstance(raw_arguments, str) else "",
                parse_error = error,
            )
        )
    return tool_calls


def _parse_tool_args(arguments: Any) -> Tuple[Dict[str, Any], Optional[str]]:
    if isinstance(arguments, dict):
        return arguments, None
    if not arguments:
        return {}, None

    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        cleaned = "".join(ch for ch in arguments if ch >= " " or ch in "\t\n\r")
        try:
            parsed = json.loads(cleaned, strict = False)
        except json.JSONDecodeError as exc:
            return {}, f"Invalid JSON arguments: {exc}"

    if not isinstance(parsed, dict):
        return {}, "Tool arguments must be a JSON object."
    return parsed, None


def truncate_utf8(text: str, max_bytes: int) -> Tuple[str, bool]:
    """
    Cap text at max_bytes of UTF-8 without splitting a character.

    A marker with the original size is appended inside the byte limit.
    """
    data = text.encode("utf-8", errors = "replace")
    if len(data) <= max_bytes:
        return text, False

    marker = f"\n... [truncated, {len(data)} bytes total]"
    keep = max_bytes - len(marker)
    if keep <= 0:
        marker = ""
        keep = max_bytes
    # errors="ignore" drops the partial character left at the cut.
    head = data[:keep].decode("utf-8", errors = "ignore")
    return head + marker, True


def estimate_context_tokens(messages: List[Dict[str, Any]]) -> int:
    """Rough token estimate: four characters per token."""
    total_chars = 0
    for message in messages:
        total_chars += len(message.get("content") or "")
        for tool_call in message.get("tool_calls") or []:
            total_chars += len((tool_call.get("function") or {}).get("arguments") or "")
    return total_chars // 4


def calculate_max_tokens(context_tokens: int, max_configured: int) -> int:
    """Give the reply 40% of the remaining window, within [4000, configured]."""
    available = max(0, CONTEXT_WINDOW_TOKENS - context_tokens)
    max_output = int(available * OUTPUT_RATIO)
    return min(max(max_output, MIN_OUTPUT_TOKENS), max_configured)
