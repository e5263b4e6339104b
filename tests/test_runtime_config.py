"""Unit tests for shared runtime option parsing."""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.utils import restore_env, run_tests, set_env
from utils.runtime_config import add_runtime_args, runtime_options_from_args

ALL_ENV_NAMES = [
    "AGENT_SHOW_LLM_RESPONSE",
    "AGENT_STREAM",
    "AGENT_SAVE_SESSION",
    "AGENT_SESSION_DIR",
    "AGENT_MAX_ROUNDS",
    "AGENT_MAX_SUBAGENT_ROUNDS",
    "AGENT_WALL_CLOCK_SECONDS",
    "AGENT_MAX_OUTPUT_BYTES",
    "AGENT_MAX_TRUNCATION_RETRIES",
    "AGENT_MAX_TOKENS",
    "AGENT_MAX_SUBAGENT_DEPTH",
    "AGENT_BRIDGE_COMMAND",
    "AGENT_BRIDGE_ENV",
    "AGENT_BRIDGE_TIMEOUT",
    "AGENT_BRIDGE_STARTUP_TIMEOUT",
    "AGENT_BRIDGE_TOOL_PREFIX",
]


def _parse_with_args(arg_list):
    """Build parser with runtime args and parse provided argv list."""
    parser = argparse.ArgumentParser()
    add_runtime_args(parser)
    return parser.parse_args(arg_list)


def _clean_env(overrides):
    """Clear every runtime env variable, then apply overrides."""
    values = {name: None for name in ALL_ENV_NAMES}
    values.update(overrides)
    return set_env(values)


def test_defaults():
    env_backup = _clean_env({})
    try:
        options = runtime_options_from_args(_parse_with_args([]))
        assert options.show_llm_response is False
        assert options.stream is False
        assert options.max_rounds == 40
        assert options.max_subagent_rounds == 30
        assert options.wall_clock_seconds == 600.0
        assert options.max_output_bytes == 50000
        assert options.max_truncation_retries == 3
        assert options.max_tokens == 8192
        assert options.max_depth == 1
        assert options.bridge_command == ""
        assert options.bridge_env == {}
        assert options.bridge_timeout == 60.0
        assert options.bridge_startup_timeout == 30.0
        assert options.bridge_tool_prefix == "mcp_"
    finally:
        restore_env(env_backup)

    print("PASS: test_defaults")
    return True


def test_cli_overrides_env():
    """CLI flags must override environment variables."""
    env_backup = _clean_env(
        {
            "AGENT_SHOW_LLM_RESPONSE": "0",
            "AGENT_STREAM": "1",
            "AGENT_SAVE_SESSION": "0",
            "AGENT_SESSION_DIR": "env_sessions",
            "AGENT_MAX_ROUNDS": "7",
            "AGENT_BRIDGE_COMMAND": "env-provider --flag",
            "AGENT_BRIDGE_ENV": "A=1,B=2",
        }
    )

    try:
        args = _parse_with_args(
            [
                "--show-llm-response",
                "--no-stream",
                "--save-session",
                "--session-dir",
                "cli_sessions",
                "--max-rounds",
                "12",
                "--bridge-command",
                "npx -y some-provider",
                "--bridge-env",
                "TOKEN=${HOST_TOKEN}",
                "--bridge-env",
                "MODE=fast",
            ]
        )
        options = runtime_options_from_args(args)

        assert options.show_llm_response is True
        assert options.stream is False
        assert options.save_session is True
        assert str(options.session_dir) == "cli_sessions"
        assert options.max_rounds == 12
        assert options.bridge_command == "npx -y some-provider"
        assert options.bridge_env == {"TOKEN": "${HOST_TOKEN}", "MODE": "fast"}
    finally:
        restore_env(env_backup)

    print("PASS: test_cli_overrides_env")
    return True


def test_env_parsing_without_cli():
    """ENV values should be parsed when CLI does not override them."""
    env_backup = _clean_env(
        {
            "AGENT_SHOW_LLM_RESPONSE": "true",
            "AGENT_STREAM": "yes",
            "AGENT_SAVE_SESSION": "1",
            "AGENT_SESSION_DIR": "from_env",
            "AGENT_WALL_CLOCK_SECONDS": "90.5",
            "AGENT_MAX_TRUNCATION_RETRIES": "5",
            "AGENT_MAX_SUBAGENT_DEPTH": "2",
            "AGENT_BRIDGE_COMMAND": "npx -y chrome-devtools-mcp@latest",
            "AGENT_BRIDGE_ENV": "API_KEY=${MY_KEY}, MODE = slow ,broken",
            "AGENT_BRIDGE_TOOL_PREFIX": "ext_",
        }
    )

    try:
        options = runtime_options_from_args(_parse_with_args([]))

        assert options.show_llm_response is True
        assert options.stream is True
        assert options.save_session is True
        assert str(options.session_dir) == "from_env"
        assert options.wall_clock_seconds == 90.5
        assert options.max_truncation_retries == 5
        assert options.max_depth == 2
        assert options.bridge_command == "npx -y chrome-devtools-mcp@latest"
        assert options.bridge_env == {"API_KEY": "${MY_KEY}", "MODE": "slow"}
        assert options.bridge_tool_prefix == "ext_"
    finally:
        restore_env(env_backup)

    print("PASS: test_env_parsing_without_cli")
    return True


def test_bounds_are_clamped():
    env_backup = _clean_env({"AGENT_MAX_TRUNCATION_RETRIES": "0", "AGENT_MAX_TOKENS": "500"})
    try:
        options = runtime_options_from_args(_parse_with_args([]))
        assert options.max_truncation_retries == 1
        assert options.max_tokens == 1000

        options = runtime_options_from_args(
            _parse_with_args(["--max-truncation-retries", "20", "--max-tokens", "200000000"])
        )
        assert options.max_truncation_retries == 10
        assert options.max_tokens == 100_000_000
    finally:
        restore_env(env_backup)

    print("PASS: test_bounds_are_clamped")
    return True


def test_invalid_env_falls_back_to_defaults():
    """Invalid ENV tokens should fall back to safe defaults."""
    env_backup = _clean_env(
        {
            "AGENT_SHOW_LLM_RESPONSE": "maybe",
            "AGENT_STREAM": "not_bool",
            "AGENT_SAVE_SESSION": "invalid",
            "AGENT_SESSION_DIR": "",
            "AGENT_MAX_ROUNDS": "many",
            "AGENT_WALL_CLOCK_SECONDS": "soon",
            "AGENT_MAX_TRUNCATION_RETRIES": "not_a_number",
            "AGENT_MAX_TOKENS": "invalid",
        }
    )

    try:
        options = runtime_options_from_args(_parse_with_args([]))

        assert options.show_llm_response is False
        assert options.stream is False
        assert options.save_session is False
        assert str(options.session_dir) == "sessions"
        assert options.max_rounds == 40
        assert options.wall_clock_seconds == 600.0
        assert options.max_truncation_retries == 3
        assert options.max_tokens == 8192
    finally:
        restore_env(env_backup)

    print("PASS: test_invalid_env_falls_back_to_defaults")
    return True


def test_as_dict_hides_bridge_env_values():
    env_backup = _clean_env({"AGENT_BRIDGE_ENV": "SECRET=hunter2"})
    try:
        data = runtime_options_from_args(_parse_with_args([])).as_dict()
        assert data["bridge_env_keys"] == ["SECRET"]
        assert "hunter2" not in str(data)
    finally:
        restore_env(env_backup)

    print("PASS: test_as_dict_hides_bridge_env_values")
    return True


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_defaults,
        test_cli_overrides_env,
        test_env_parsing_without_cli,
        test_bounds_are_clamped,
        test_invalid_env_falls_back_to_defaults,
        test_as_dict_hides_bridge_env_values,
    ]) else 1)
