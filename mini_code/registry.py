"""Tool registry with role-based visibility and uniform dispatch.

Every tool name maps to exactly one ToolSpec whose handler is one of three
tagged variants:

    LocalHandler    plain function called with the tool arguments as
                    keyword arguments, executed on a worker thread
    ContextHandler  coroutine receiving (arguments, ToolContext); used by
                    tools that need per-loop state (todo list, subagents)
    BridgeHandler   forwarded to the external tool provider

The registry is filled once during setup and then frozen. visible(role)
only depends on the role and on registration order, so the tool list sent
to the model is stable across rounds.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from mini_code.errors import RegistrationError, ToolValidationError

logger = logging.getLogger(__name__)


class AgentRole(str, Enum):
    MAIN = "main"
    EXPLORE = "explore"
    CODE = "code"
    PLAN = "plan"


ALL_ROLES: FrozenSet[AgentRole] = frozenset(AgentRole)
READ_ONLY_ROLES: FrozenSet[AgentRole] = frozenset({AgentRole.EXPLORE, AgentRole.PLAN})
WRITER_ROLES: FrozenSet[AgentRole] = frozenset({AgentRole.MAIN, AgentRole.CODE})
MAIN_ONLY: FrozenSet[AgentRole] = frozenset({AgentRole.MAIN})


@dataclass
class ToolContext:
    """Per-loop state handed to context handlers."""

    role: AgentRole
    actor: str
    depth: int = 0
    todo: Any = None


@dataclass(frozen = True)
class LocalHandler:
    func: Callable[..., Any]


@dataclass(frozen = True)
class ContextHandler:
    func: Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(frozen = True)
class BridgeHandler:
    bridge: Any
    remote_name: str
    timeout: Optional[float] = None


Handler = Union[LocalHandler, ContextHandler, BridgeHandler]


@dataclass(frozen = True)
class ToolSpec:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Handler
    allowed_roles: FrozenSet[AgentRole] = ALL_ROLES

    def to_openai(self) -> Dict[str, Any]:
        """Return the OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
    "null": (type(None),),
}


class ToolRegistry:
    """Closed name -> ToolSpec map shared by every loop of a process."""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}
        self._frozen = False

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, spec: ToolSpec) -> ToolSpec:
        """
        Validate and add one tool.

        Parameters:
            spec: Tool specification with its handler.
        """
        if self._frozen:
            raise RegistrationError(f"Registry is frozen; cannot register '{spec.name}'.")
        if not spec.name:
            raise RegistrationError("Tool name must be non-empty.")
        if spec.name in self._tools:
            raise RegistrationError(f"Tool '{spec.name}' is already registered.")
        if not spec.allowed_roles:
            raise RegistrationError(f"Tool '{spec.name}' is visible to no role.")

        _check_schema(spec.name, spec.input_schema)
        _check_handler(spec)

        self._tools[spec.name] = spec
        logger.debug(f"Registered tool {spec.name} ({type(spec.handler).__name__})")
        return spec

    def freeze(self) -> None:
        self._frozen = True

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def visible(self, role: AgentRole) -> Tuple[ToolSpec, ...]:
        """Tools a loop running as role may see, in registration order."""
        role = AgentRole(role)
        return tuple(spec for spec in self._tools.values() if role in spec.allowed_roles)

    def openai_tools(self, role: AgentRole) -> List[Dict[str, Any]]:
        return [spec.to_openai() for spec in self.visible(role)]

    async def dispatch(
        self,
        name: str,
        args: Dict[str, Any],
        context: Optional[ToolContext] = None,
    ) -> str:
        """
        Validate arguments and run the tool, whatever kind of handler it has.

        Parameters:
            name: Registered tool name.
            args: Parsed tool arguments.
            context: Calling loop's context; required by context handlers.
        """
        spec = self._tools.get(name)
        if spec is None:
            raise ToolValidationError(f"Unknown tool: {name}")

        validate_arguments(spec.input_schema, args)
        handler = spec.handler

        if isinstance(handler, LocalHandler):
            output = await asyncio.to_thread(handler.func, **args)
        elif isinstance(handler, ContextHandler):
            if context is None:
                raise ToolValidationError(f"Tool '{name}' requires a loop context.")
            output = await handler.func(args, context)
        else:
            output = await handler.bridge.call_tool(
                handler.remote_name,
                args,
                timeout = handler.timeout,
            )

        return _coerce_output(output)


def validate_arguments(schema: Dict[str, Any], args: Any) -> None:
    """
    Check tool arguments against the top level of an object schema.

    Parameters:
        schema: Tool input schema (type=object).
        args: Parsed arguments from the model.
    """
    if not isinstance(args, dict):
        raise ToolValidationError("Tool arguments must be a JSON object.")

    properties = schema.get("properties") or {}
    for required_name in schema.get("required") or []:
        if required_name not in args:
            raise ToolValidationError(f"Missing required argument '{required_name}'.")

    if schema.get("additionalProperties") is False:
        unknown = sorted(set(args) - set(properties))
        if unknown:
            raise ToolValidationError(f"Unexpected arguments: {', '.join(unknown)}.")

    for arg_name, value in args.items():
        prop = properties.get(arg_name)
        if not isinstance(prop, dict):
            continue
        expected = prop.get("type")
        if isinstance(expected, str) and expected in _JSON_TYPES:
            if not _matches_type(value, expected):
                raise ToolValidationError(
                    f"Argument '{arg_name}' must be of type {expected}, got {type(value).__name__}."
                )
        if "enum" in prop and value not in prop["enum"]:
            raise ToolValidationError(
                f"Argument '{arg_name}' must be one of {prop['enum']}, got {value!r}."
            )


def _matches_type(value: Any, expected: str) -> bool:
    # bool is an int subclass; JSON keeps them apart.
    if expected in {"integer", "number"} and isinstance(value, bool):
        return False
    return isinstance(value, _JSON_TYPES[expected])


def _check_schema(name: str, schema: Any) -> None:
    if not isinstance(schema, dict) or schema.get("type") != "object":
        raise RegistrationError(f"Tool '{name}' input_schema must be an object schema.")
    properties = schema.get("properties", {})
    if not isinstance(properties, dict):
        raise RegistrationError(f"Tool '{name}' input_schema.properties must be an object.")
    missing = [item for item in schema.get("required") or [] if item not in properties]
    if missing:
        raise RegistrationError(f"Tool '{name}' requires undeclared properties: {missing}.")


def _check_handler(spec: ToolSpec) -> None:
    handler = spec.handler

    if isinstance(handler, LocalHandler):
        if not callable(handler.func):
            raise RegistrationError(f"Tool '{spec.name}' handler is not callable.")
        parameters = inspect.signature(handler.func).parameters.values()
        accepts_kwargs = any(param.kind is inspect.Parameter.VAR_KEYWORD for param in parameters)
        names = {param.name for param in parameters}
        properties = set((spec.input_schema.get("properties") or {}).keys())
        required = set(spec.input_schema.get("required") or [])

        if not accepts_kwargs:
            undeclared = sorted(properties - names)
            if undeclared:
                raise RegistrationError(
                    f"Tool '{spec.name}' schema declares {undeclared} but the handler does not accept them."
                )
        for param in parameters:
            if param.kind in {inspect.Parameter.VAR_KEYWORD, inspect.Parameter.VAR_POSITIONAL}:
                continue
            if param.default is inspect.Parameter.empty and param.name not in required:
                raise RegistrationError(
                    f"Tool '{spec.name}' handler needs '{param.name}' but the schema does not require it."
                )
        return

    if isinstance(handler, ContextHandler):
        if not inspect.iscoroutinefunction(handler.func):
            raise RegistrationError(f"Tool '{spec.name}' context handler must be a coroutine function.")
        return

    if isinstance(handler, BridgeHandler):
        if handler.bridge is None or not handler.remote_name:
            raise RegistrationError(f"Tool '{spec.name}' bridge handler needs a bridge and a remote name.")
        return

    raise RegistrationError(f"Tool '{spec.name}' has unsupported handler type {type(handler).__name__}.")


def _coerce_output(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii = False)
