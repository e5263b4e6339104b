"""mini-code CLI: wires the model, tools, bridge, and subagents into one agent."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv
from openai import OpenAI

from mini_code.bridge import BridgeConfig, ExternalToolBridge, bridge_tool_specs
from mini_code.conversation import Conversation
from mini_code.errors import BridgeError, HarnessError, RegistrationError
from mini_code.loop import ExecutionLoop, LoopBudget
from mini_code.registry import ToolRegistry
from mini_code.skills import SkillLoader
from mini_code.subagent import SubagentSpawner, get_role_descriptions
from mini_code.todo import TodoManager
from mini_code.tools import build_local_tools, todo_tool_spec
from utils.llm_call import ChatModel
from utils.runtime_config import RuntimeOptions, add_runtime_args, runtime_options_from_args
from utils.session_store import SessionStore
from utils.trace_logger import TraceLogger

logger = logging.getLogger("mini-code")

SYSTEM_PROMPT_TEMPLATE = """You are a coding agent at {workspace}.

Loop: plan -> act with tools -> report.

Rules:
- Use todo_write to track multi-step work; keep exactly one item in_progress.
- Use the task tool to hand focused work to a subagent. Roles:
{roles}
- Use the skill tool to load a skill before domain-specific work. Skills:
{skills}
- Prefer tools over prose. Write large content to files with write_file.
- When done, summarize what changed."""


class Agent:
    """
    Main agent: one registry, at most one bridge, and a conversation kept across turns.
    """

    def __init__(
        self,
        model: Any,
        runtime_options: Optional[RuntimeOptions] = None,
        workspace: Optional[Path] = None,
        trace_logger: Optional[TraceLogger] = None,
        session_store: Optional[SessionStore] = None,
        bridge: Optional[ExternalToolBridge] = None,
    ):
        """
        Parameters:
            model: Awaitable chat model shared by the main agent and its subagents.
            runtime_options: Budgets and feature switches.
            workspace: Root directory of the file tools.
            trace_logger: Optional per-turn trace logger.
            session_store: Optional session event log.
            bridge: Optional external tool bridge; its tools are discovered in setup().
        """
        self.model = model
        self.options = runtime_options or RuntimeOptions()
        self.workspace = Path(workspace) if workspace else Path.cwd()
        self.tracer = trace_logger or TraceLogger(enabled = self.options.show_llm_response)
        self.session = session_store or SessionStore(
            enabled = False,
            model = "",
            session_dir = self.options.session_dir,
        )
        self.bridge = bridge

        self.registry = ToolRegistry()
        self.spawner = SubagentSpawner(
            model = model,
            registry = self.registry,
            budget = self._budget(self.options.max_subagent_rounds),
            max_depth = self.options.max_depth,
            workspace = self.workspace,
            trace_logger = self.tracer,
            session_store = self.session,
        )
        self.conversation = Conversation()
        self.todo = TodoManager()
        self.skills = SkillLoader(self.workspace / "skills")
        self.system_prompt = SYSTEM_PROMPT_TEMPLATE.format(
            workspace = self.workspace,
            roles = get_role_descriptions(),
            skills = self.skills.get_descriptions(),
        )

    async def setup(self) -> None:
        """Register local, todo, skill, task, and discovered bridge tools, then freeze."""
        if self.registry.frozen:
            return

        for spec in build_local_tools(self.workspace):
            self.registry.register(spec)
        self.registry.register(todo_tool_spec())
        self.registry.register(self.skills.tool_spec())
        if self.options.max_depth > 0:
            self.registry.register(self.spawner.tool_spec())

        if self.bridge is not None:
            await self._register_bridge_tools()

        self.registry.freeze()
        logger.info(f"Registered {len(self.registry)} tools")

    async def chat(self, prompt: str) -> str:
        """
        Run the main loop for one user turn.

        Parameters:
            prompt: User input string.
        """
        await self.setup()
        loop = ExecutionLoop(
            model = self.model,
            registry = self.registry,
            budget = self._budget(self.options.max_rounds),
            system_prompt = self.system_prompt,
            conversation = self.conversation,
            actor = "main",
            trace_logger = self.tracer,
            session_store = self.session,
            todo_reminders = True,
            todo = self.todo,
        )
        return await loop.run(prompt)

    async def close(self) -> None:
        if self.bridge is not None:
            await self.bridge.close()

    async def _register_bridge_tools(self) -> None:
        try:
            remote_tools = await self.bridge.list_tools()
        except BridgeError as exc:
            logger.error(f"Tool discovery on '{self.bridge.config.name}' failed: {exc}")
            return

        registered = 0
        for spec in bridge_tool_specs(self.bridge, remote_tools):
            try:
                self.registry.register(spec)
                registered += 1
            except RegistrationError as exc:
                logger.warning(f"Skipping provider tool: {exc}")
        logger.info(f"Registered {registered} tools from '{self.bridge.config.name}'")

    def _budget(self, max_rounds: int) -> LoopBudget:
        return LoopBudget(
            max_rounds = max_rounds,
            wall_clock_seconds = self.options.wall_clock_seconds,
            max_output_bytes = self.options.max_output_bytes,
            max_truncation_retries = self.options.max_truncation_retries,
            max_tokens = self.options.max_tokens,
        )


def build_bridge(runtime_options: RuntimeOptions) -> Optional[ExternalToolBridge]:
    """Create the bridge when a provider command is configured; it starts on first use."""
    if not runtime_options.bridge_command:
        return None
    config = BridgeConfig.from_command_line(
        runtime_options.bridge_command,
        env = runtime_options.bridge_env,
        call_timeout = runtime_options.bridge_timeout,
        startup_timeout = runtime_options.bridge_startup_timeout,
        tool_prefix = runtime_options.bridge_tool_prefix,
    )
    return ExternalToolBridge(config)


def parse_args(argv: Optional[List[str]] = None):
    """
    Parse command line arguments.
    """
    parser = argparse.ArgumentParser(
        description = "Coding agent with subagents, todo tracking, and external tool providers."
    )
    parser.add_argument(
        "prompt",
        nargs = "?",
        help = "User prompt for single-shot mode",
    )
    add_runtime_args(parser)

    args = parser.parse_args(argv)
    args.runtime_options = runtime_options_from_args(args)
    return args


async def run_cli(args) -> int:
    runtime_options = args.runtime_options
    model_name = os.getenv("LLM_MODEL") or ""

    def _on_content_chunk(chunk: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    model = ChatModel(
        client = OpenAI(
            base_url = os.getenv("LLM_BASE_URL"),
            api_key = os.getenv("LLM_API_KEY"),
        ),
        model = model_name,
        max_tokens = runtime_options.max_tokens,
        stream = runtime_options.stream,
        on_content_chunk = _on_content_chunk if runtime_options.stream else None,
    )
    tracer = TraceLogger(enabled = runtime_options.show_llm_response)
    session = SessionStore(
        enabled = runtime_options.save_session,
        model = model_name,
        session_dir = runtime_options.session_dir,
        runtime_options = runtime_options.as_dict(),
    )
    agent = Agent(
        model = model,
        runtime_options = runtime_options,
        workspace = Path.cwd(),
        trace_logger = tracer,
        session_store = session,
        bridge = build_bridge(runtime_options),
    )

    try:
        await agent.setup()
        if args.prompt:
            return await _single_shot(agent, args.prompt, runtime_options)
        return await _interactive(agent, runtime_options)
    finally:
        await agent.close()
        if session.get_path():
            logger.info(f"Session saved: {session.get_path()}")


async def _single_shot(agent: Agent, prompt: str, runtime_options: RuntimeOptions) -> int:
    logger.info("=" * 80)
    logger.info("Starting mini-code in single-shot mode")
    logger.info("=" * 80)
    try:
        result = await agent.chat(prompt)
    except HarnessError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1

    logger.info("-" * 60)
    logger.info("Final Response:")
    logger.info("-" * 60)
    if runtime_options.stream:
        print()
    else:
        print(result)
    return 0


async def _interactive(agent: Agent, runtime_options: RuntimeOptions) -> int:
    logger.info("=" * 80)
    logger.info("Starting mini-code in interactive mode")
    logger.info("=" * 80)
    logger.info("Type 'exit' or 'quit' to end the conversation.")
    logger.info("-" * 60)

    while True:
        try:
            user_prompt = (await asyncio.to_thread(input, "\033[94mUser:\033[0m ")).strip()
        except EOFError:
            logger.info("Conversation ended.")
            return 0
        if user_prompt.lower() in {"exit", "quit"}:
            logger.info("Conversation ended.")
            return 0
        if not user_prompt:
            continue

        try:
            result = await agent.chat(user_prompt)
        except HarnessError as exc:
            logger.error(f"{type(exc).__name__}: {exc}")
            return 1

        if runtime_options.stream:
            print()
        else:
            print(f"\033[92mAssistant:\033[0m {result}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entrypoint for single-shot and interactive modes.
    """
    load_dotenv()
    args = parse_args(argv)

    logging.basicConfig(
        level = logging.INFO,
        format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers = [logging.StreamHandler()],
    )

    try:
        return asyncio.run(run_cli(args))
    except KeyboardInterrupt:
        logger.info("Conversation interrupted.")
        return 130
    except Exception as exc:
        logger.error(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
