"""Runtime option parsing for the mini-code agent CLI."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


BOOL_TRUE = {"1", "true", "yes", "y", "on"}
BOOL_FALSE = {"0", "false", "no", "n", "off"}

MIN_TRUNCATION_RETRIES = 1
MAX_TRUNCATION_RETRIES = 10
MIN_MAX_TOKENS = 1000
MAX_MAX_TOKENS = 100_000_000


@dataclass
class RuntimeOptions:
    """Runtime feature switches and budgets merged from CLI and environment variables."""

    show_llm_response: bool = False
    stream: bool = False
    save_session: bool = False
    session_dir: Path = Path("sessions")
    max_rounds: int = 40
    max_subagent_rounds: int = 30
    wall_clock_seconds: float = 600.0
    max_output_bytes: int = 50000
    max_truncation_retries: int = 3
    max_tokens: int = 8192
    max_depth: int = 1
    bridge_command: str = ""
    bridge_env: Dict[str, str] = field(default_factory = dict)
    bridge_timeout: float = 60.0
    bridge_startup_timeout: float = 30.0
    bridge_tool_prefix: str = "mcp_"

    def as_dict(self) -> dict:
        """Return JSON-serializable dict form for session metadata."""
        return {
            "show_llm_response": self.show_llm_response,
            "stream": self.stream,
            "save_session": self.save_session,
            "session_dir": str(self.session_dir),
            "max_rounds": self.max_rounds,
            "max_subagent_rounds": self.max_subagent_rounds,
            "wall_clock_seconds": self.wall_clock_seconds,
            "max_output_bytes": self.max_output_bytes,
            "max_truncation_retries": self.max_truncation_retries,
            "max_tokens": self.max_tokens,
            "max_depth": self.max_depth,
            "bridge_command": self.bridge_command,
            # Values may hold secrets; only the keys are recorded.
            "bridge_env_keys": sorted(self.bridge_env),
            "bridge_timeout": self.bridge_timeout,
            "bridge_startup_timeout": self.bridge_startup_timeout,
            "bridge_tool_prefix": self.bridge_tool_prefix,
        }


def add_runtime_args(parser: Any) -> None:
    """Attach shared runtime flags to an argparse parser."""
    import argparse

    parser.add_argument(
        "--show-llm-response",
        dest = "show_llm_response",
        action = argparse.BooleanOptionalAction,
        default = None,
        help = "Show per-turn LLM assistant/tool/reasoning trace logs.",
    )
    parser.add_argument(
        "--stream",
        dest = "stream",
        action = argparse.BooleanOptionalAction,
        default = None,
        help = "Enable streaming output from the model.",
    )
    parser.add_argument(
        "--save-session",
        dest = "save_session",
        action = argparse.BooleanOptionalAction,
        default = None,
        help = "Save conversation events to JSONL.",
    )
    parser.add_argument(
        "--session-dir",
        dest = "session_dir",
        default = None,
        help = "Session output directory (default: sessions/).",
    )
    parser.add_argument(
        "--max-rounds",
        dest = "max_rounds",
        type = int,
        default = None,
        help = "Round budget of the main agent loop (default: 40).",
    )
    parser.add_argument(
        "--max-subagent-rounds",
        dest = "max_subagent_rounds",
        type = int,
        default = None,
        help = "Round budget of each subagent loop (default: 30).",
    )
    parser.add_argument(
        "--wall-clock",
        dest = "wall_clock_seconds",
        type = float,
        default = None,
        help = "Wall-clock budget of one run in seconds (default: 600).",
    )
    parser.add_argument(
        "--max-output-bytes",
        dest = "max_output_bytes",
        type = int,
        default = None,
        help = "Truncate tool output above this many UTF-8 bytes (default: 50000).",
    )
    parser.add_argument(
        "--max-truncation-retries",
        dest = "max_truncation_retries",
        type = int,
        default = None,
        help = "Consecutive truncated rounds tolerated before aborting (1-10, default: 3).",
    )
    parser.add_argument(
        "--max-tokens",
        dest = "max_tokens",
        type = int,
        default = None,
        help = "Model output token ceiling (default: 8192).",
    )
    parser.add_argument(
        "--max-depth",
        dest = "max_depth",
        type = int,
        default = None,
        help = "Maximum subagent nesting depth (default: 1).",
    )
    parser.add_argument(
        "--bridge-command",
        dest = "bridge_command",
        default = None,
        help = "Command line of the external tool provider, e.g. 'npx -y chrome-devtools-mcp@latest'.",
    )
    parser.add_argument(
        "--bridge-env",
        dest = "bridge_env",
        action = "append",
        default = None,
        metavar = "KEY=VALUE",
        help = "Extra provider environment variable; ${NAME} values are read from the host. Repeatable.",
    )
    parser.add_argument(
        "--bridge-timeout",
        dest = "bridge_timeout",
        type = float,
        default = None,
        help = "Per-call timeout of provider tools in seconds (default: 60).",
    )
    parser.add_argument(
        "--bridge-startup-timeout",
        dest = "bridge_startup_timeout",
        type = float,
        default = None,
        help = "Provider handshake timeout in seconds (default: 30).",
    )
    parser.add_argument(
        "--bridge-tool-prefix",
        dest = "bridge_tool_prefix",
        default = None,
        help = "Prefix of provider tool names (default: mcp_).",
    )


def runtime_options_from_args(args: Any) -> RuntimeOptions:
    """Build runtime options with CLI > ENV > default precedence."""
    show_llm_response = _resolve_bool(
        cli_value = getattr(args, "show_llm_response", None),
        env_name = "AGENT_SHOW_LLM_RESPONSE",
        default = False,
    )
    stream = _resolve_bool(
        cli_value = getattr(args, "stream", None),
        env_name = "AGENT_STREAM",
        default = False,
    )
    save_session = _resolve_bool(
        cli_value = getattr(args, "save_session", None),
        env_name = "AGENT_SAVE_SESSION",
        default = False,
    )
    raw_session_dir = _resolve_str(
        cli_value = getattr(args, "session_dir", None),
        env_name = "AGENT_SESSION_DIR",
        default = "sessions",
    )

    max_rounds = _resolve_int(
        cli_value = getattr(args, "max_rounds", None),
        env_name = "AGENT_MAX_ROUNDS",
        default = 40,
    )
    max_subagent_rounds = _resolve_int(
        cli_value = getattr(args, "max_subagent_rounds", None),
        env_name = "AGENT_MAX_SUBAGENT_ROUNDS",
        default = 30,
    )
    wall_clock_seconds = _resolve_float(
        cli_value = getattr(args, "wall_clock_seconds", None),
        env_name = "AGENT_WALL_CLOCK_SECONDS",
        default = 600.0,
    )
    max_output_bytes = _resolve_int(
        cli_value = getattr(args, "max_output_bytes", None),
        env_name = "AGENT_MAX_OUTPUT_BYTES",
        default = 50000,
    )
    max_truncation_retries = _resolve_clamped_int(
        cli_value = getattr(args, "max_truncation_retries", None),
        env_name = "AGENT_MAX_TRUNCATION_RETRIES",
        default = 3,
        minimum = MIN_TRUNCATION_RETRIES,
        maximum = MAX_TRUNCATION_RETRIES,
    )
    max_tokens = _resolve_clamped_int(
        cli_value = getattr(args, "max_tokens", None),
        env_name = "AGENT_MAX_TOKENS",
        default = 8192,
        minimum = MIN_MAX_TOKENS,
        maximum = MAX_MAX_TOKENS,
    )
    max_depth = _resolve_int(
        cli_value = getattr(args, "max_depth", None),
        env_name = "AGENT_MAX_SUBAGENT_DEPTH",
        default = 1,
    )

    bridge_command = _resolve_str(
        cli_value = getattr(args, "bridge_command", None),
        env_name = "AGENT_BRIDGE_COMMAND",
        default = "",
    )
    bridge_env = _resolve_env_pairs(
        cli_values = getattr(args, "bridge_env", None),
        env_name = "AGENT_BRIDGE_ENV",
    )
    bridge_timeout = _resolve_float(
        cli_value = getattr(args, "bridge_timeout", None),
        env_name = "AGENT_BRIDGE_TIMEOUT",
        default = 60.0,
    )
    bridge_startup_timeout = _resolve_float(
        cli_value = getattr(args, "bridge_startup_timeout", None),
        env_name = "AGENT_BRIDGE_STARTUP_TIMEOUT",
        default = 30.0,
    )
    bridge_tool_prefix = _resolve_str(
        cli_value = getattr(args, "bridge_tool_prefix", None),
        env_name = "AGENT_BRIDGE_TOOL_PREFIX",
        default = "mcp_",
    )

    return RuntimeOptions(
        show_llm_response = show_llm_response,
        stream = stream,
        save_session = save_session,
        session_dir = Path(raw_session_dir),
        max_rounds = max(1, max_rounds),
        max_subagent_rounds = max(1, max_subagent_rounds),
        wall_clock_seconds = max(1.0, wall_clock_seconds),
        max_output_bytes = max(256, max_output_bytes),
        max_truncation_retries = max_truncation_retries,
        max_tokens = max_tokens,
        max_depth = max(0, max_depth),
        bridge_command = bridge_command,
        bridge_env = bridge_env,
        bridge_timeout = max(0.1, bridge_timeout),
        bridge_startup_timeout = max(0.1, bridge_startup_timeout),
        bridge_tool_prefix = bridge_tool_prefix,
    )


def _resolve_bool(cli_value: Any, env_name: str, default: bool) -> bool:
    """Resolve bool with CLI > ENV > default precedence."""
    if cli_value is not None:
        return bool(cli_value)

    raw_env = os.getenv(env_name)
    if raw_env is None:
        return default

    normalized = raw_env.strip().lower()
    if normalized in BOOL_TRUE:
        return True
    if normalized in BOOL_FALSE:
        return False
    return default


def _resolve_int(cli_value: Any, env_name: str, default: int) -> int:
    """Resolve int option with fallback to default on parse failure."""
    if cli_value is not None:
        return int(cli_value)

    raw_env = os.getenv(env_name)
    if raw_env is None:
        return default

    try:
        return int(raw_env.strip())
    except ValueError:
        return default


def _resolve_clamped_int(cli_value: Any, env_name: str, default: int, minimum: int, maximum: int) -> int:
    """Resolve int option and clamp it into [minimum, maximum]."""
    value = _resolve_int(cli_value = cli_value, env_name = env_name, default = default)
    return min(max(value, minimum), maximum)


def _resolve_float(cli_value: Any, env_name: str, default: float) -> float:
    """Resolve float option with fallback to default on parse failure."""
    if cli_value is not None:
        return float(cli_value)

    raw_env = os.getenv(env_name)
    if raw_env is None:
        return default

    try:
        return float(raw_env.strip())
    except ValueError:
        return default


def _resolve_str(cli_value: Any, env_name: str, default: str) -> str:
    """Resolve string option with CLI > ENV > default precedence."""
    if cli_value is not None and str(cli_value).strip():
        return str(cli_value)

    raw_env = os.getenv(env_name)
    if raw_env is not None and raw_env.strip():
        return raw_env.strip()

    return default


def _resolve_env_pairs(cli_values: Optional[List[str]], env_name: str) -> Dict[str, str]:
    """Resolve KEY=VALUE pairs; CLI values replace the comma-separated env variable."""
    if cli_values:
        raw_pairs = list(cli_values)
    else:
        raw_env = os.getenv(env_name) or ""
        raw_pairs = [part for part in raw_env.split(",") if part.strip()]

    pairs: Dict[str, str] = {}
    for raw_pair in raw_pairs:
        key, separator, value = raw_pair.partition("=")
        key = key.strip()
        if not separator or not key:
            continue
        pairs[key] = value.strip()
    return pairs
