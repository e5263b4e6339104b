"""Conversation data model: messages, tool calls and tool results.

A Conversation is append-only and owned by exactly one ExecutionLoop.
Tool results for one round are stored as a single message so the model
either sees the whole result set of a round or none of it.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple


USER = "user"
ASSISTANT = "assistant"
TOOL_RESULTS = "tool_results"


@dataclass(frozen = True)
class ToolCall:
    """One tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory = dict)
    raw_arguments: str = ""
    parse_error: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        """Return the OpenAI-compatible tool_call payload."""
        arguments = self.raw_arguments or json.dumps(self.arguments, ensure_ascii = False)
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": arguments,
            },
        }


@dataclass(frozen = True)
class ToolResult:
    """Outcome of one ToolCall, paired with it by tool_call_id."""

    tool_call_id: str
    content: str
    is_error: bool = False
    truncated: bool = False


@dataclass(frozen = True)
class Message:
    """A single conversation entry."""

    role: str
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_results: Tuple[ToolResult, ...] = ()


class Conversation:
    """Ordered, append-only message history of one execution loop."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def append_user(self, text: str) -> Message:
        return self._append(Message(role = USER, content = text))

    def append_assistant(self, content: str, tool_calls: Optional[List[ToolCall]] = None) -> Message:
        return self._append(
            Message(
                role = ASSISTANT,
                content = content or "",
                tool_calls = tuple(tool_calls or ()),
            )
        )

    def append_tool_results(self, results: List[ToolResult]) -> Message:
        """
        Append the result set of a round.

        The previous message must be the assistant message of that round and
        results must answer its tool calls one-to-one, in the same order.

        Parameters:
            results: Tool results ordered like the assistant's tool calls.
        """
        previous = self.last
        if previous is None or previous.role != ASSISTANT or not previous.tool_calls:
            raise ValueError("Tool results must follow an assistant message with tool calls.")

        expected_ids = [tool_call.id for tool_call in previous.tool_calls]
        actual_ids = [result.tool_call_id for result in results]
        if expected_ids != actual_ids:
            raise ValueError(
                f"Tool results {actual_ids} do not match tool calls {expected_ids}."
            )

        return self._append(Message(role = TOOL_RESULTS, tool_results = tuple(results)))

    def tool_calls(self) -> List[ToolCall]:
        """Return every tool call made so far, in order."""
        return [
            tool_call
            for message in self._messages
            for tool_call in message.tool_calls
        ]

    def assistant_turns_since(self, tool_name: str) -> int:
        """Count assistant turns since the last call to tool_name."""
        turns = 0
        for message in reversed(self._messages):
            if message.role != ASSISTANT:
                continue
            if any(tool_call.name == tool_name for tool_call in message.tool_calls):
                return turns
            turns += 1
        return turns

    def to_openai_messages(self) -> List[Dict[str, Any]]:
        """Render the history as OpenAI chat-completions messages."""
        rendered: List[Dict[str, Any]] = []
        for message in self._messages:
            if message.role == USER:
                rendered.append({"role": "user", "content": message.content})
            elif message.role == ASSISTANT:
                payload: Dict[str, Any] = {"role": "assistant", "content": message.content}
                if message.tool_calls:
                    payload["tool_calls"] = [tool_call.to_openai() for tool_call in message.tool_calls]
                rendered.append(payload)
            else:
                for result in message.tool_results:
                    content = f"Error: {result.content}" if result.is_error else result.content
                    rendered.append(
                        {
                            "role": "tool",
                            "tool_call_id": result.tool_call_id,
                            "content": content,
                        }
                    )
        return rendered

    def to_records(self) -> List[Dict[str, Any]]:
        """Plain dict dump used for diagnostics."""
        records = []
        for message in self._messages:
            records.append(
                {
                    "role": message.role,
                    "content": message.content,
                    "tool_calls": [tool_call.to_openai() for tool_call in message.tool_calls],
                    "tool_results": [
                        {
                            "tool_call_id": result.tool_call_id,
                            "content": result.content,
                            "is_error": result.is_error,
                            "truncated": result.truncated,
                        }
                        for result in message.tool_results
                    ],
                }
            )
        return records

    def _append(self, message: Message) -> Message:
        self._messages.append(message)
        return message
