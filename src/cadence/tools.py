import asyncio
import functools
import inspect
import json
import logging
import re
import types
from concurrent.futures import Executor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Union, get_args, get_origin

from pydantic import BaseModel, Field

from cadence.context import ToolContext
from cadence.errors import ErrorCode
from cadence.instrumentation import record_error, tool_span

logger = logging.getLogger(__name__)

# Parameters filled in by the dispatcher rather than by the model.
_INJECTED_PARAMS = ("context",)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}


class LLMRecoverableError(Exception):
    """Raised by a tool to hand a message back to the model.

    The message is delivered as the tool's output rather than as an
    error, so the model can correct itself on the next round.
    """


@dataclass
class DirectOutput:
    """Returned by a tool to surface ``content`` straight to the user.

    Ends the turn without another model call.
    """

    content: str
    source: str | None = None


class ResultKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    DIRECT_OUTPUT = "direct_output"


@dataclass(frozen=True)
class ToolInvocationResult:
    """Outcome of dispatching one tool call."""

    call_id: str
    tool_name: str
    kind: ResultKind
    content: str = ""
    error: str | None = None
    error_code: ErrorCode | None = None
    source: str | None = None

    @classmethod
    def success(cls, call_id: str, tool_name: str, content: str) -> "ToolInvocationResult":
        return cls(call_id=call_id, tool_name=tool_name, kind=ResultKind.SUCCESS, content=content)

    @classmethod
    def failure(
        cls, call_id: str, tool_name: str, error: str,
        code: ErrorCode = ErrorCode.TOOL_EXECUTION_FAILED,
    ) -> "ToolInvocationResult":
        return cls(
            call_id=call_id, tool_name=tool_name, kind=ResultKind.ERROR,
            error=error, error_code=code,
        )

    @classmethod
    def direct(
        cls, call_id: str, tool_name: str, content: str, source: str | None = None,
    ) -> "ToolInvocationResult":
        return cls(
            call_id=call_id, tool_name=tool_name, kind=ResultKind.DIRECT_OUTPUT,
            content=content, source=source,
        )

    @property
    def succeeded(self) -> bool:
        return self.kind is not ResultKind.ERROR

    @property
    def is_direct_output(self) -> bool:
        return self.kind is ResultKind.DIRECT_OUTPUT

    @property
    def output(self) -> str:
        """Text folded into history: the content, or the error for failures."""
        if self.kind is ResultKind.ERROR:
            return self.error or ""
        return self.content


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any = None


def _signature(func: Callable) -> inspect.Signature:
    try:
        return inspect.signature(func, eval_str=True)
    except (NameError, TypeError):
        return inspect.signature(func)


def _json_type(annotation) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        args = [a for a in get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "null"
    if origin is not None:
        annotation = origin
    return _JSON_TYPES.get(annotation, "string")


_REST_PARAM = re.compile(r"^\s*:param\s+(?:[\w\[\], ]+\s+)?(\w+)\s*:\s*(.*)$")
_GOOGLE_SECTION = re.compile(r"^\s*(Args|Arguments|Parameters)\s*:\s*$")
_GOOGLE_ENTRY = re.compile(r"^(\s*)\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract parameter descriptions from a Google or reST docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()

    rest = {}
    for line in lines:
        m = _REST_PARAM.match(line)
        if m:
            rest[m.group(1)] = m.group(2).strip()
    if rest:
        return rest

    descriptions: dict[str, str] = {}
    in_section = False
    entry_indent = None
    current = None
    for line in lines:
        if not in_section:
            in_section = bool(_GOOGLE_SECTION.match(line))
            continue
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        m = _GOOGLE_ENTRY.match(line)
        if m and (entry_indent is None or indent == entry_indent):
            entry_indent = indent
            current = m.group(2)
            descriptions[current] = m.group(3).strip()
        elif current is not None and indent > entry_indent:
            descriptions[current] += "\n" + line.strip()
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build the JSON schema for a function's model-facing parameters."""
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in _signature(func).parameters.items():
        if name in _INJECTED_PARAMS:
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)
    model_config = {"arbitrary_types_allowed": True}

    @classmethod
    def from_function(
        cls, func: Callable, name: str | None = None, description: str | None = None,
    ) -> "Tool":
        schema, _ = _build_parameters_schema(func)
        if description is None:
            doc = inspect.getdoc(func) or ""
            description = doc.split("\n\n")[0].strip()
        return cls(
            func=func,
            name=name or func.__name__,
            description=description,
            parameters_schema=schema,
        )

    @property
    def wants_context(self) -> bool:
        return "context" in _signature(self.func).parameters

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    def model_dump(self, **kwargs):
        """Return the OpenAI function schema instead of internal attributes."""
        return self.get_schema()

    def model_dump_json(self, **kwargs):
        return json.dumps(self.get_schema())

    def get_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    async def invoke(self, params: dict, executor: Executor | None = None) -> Any:
        """Run the tool; synchronous functions go to ``executor``."""
        if self.is_async:
            return await self.func(**params)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, functools.partial(self.func, **params))

    async def __call__(self, **kwargs) -> ToolCallResult:
        return ToolCallResult(tool_name=self.name, output=await self.invoke(kwargs))


def tool(func: Callable | None = None, *, name: str | None = None, description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Works bare (``@tool``) or with overrides
    (``@tool(name="lookup", description="...")``).  A parameter named
    ``context`` receives a :class:`ToolContext` and is hidden from the
    model.
    """
    if func is not None:
        return Tool.from_function(func)

    def decorator(f: Callable) -> Tool:
        return Tool.from_function(f, name=name, description=description)

    return decorator


def _stringify(output: Any) -> str:
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output)
    except (TypeError, ValueError):
        return str(output)


class ToolRegistry:
    """Name-keyed tools and the dispatch entry point used by the runner."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, tool_obj: Tool) -> None:
        self._tools[tool_obj.name] = tool_obj
        logger.debug(f"Registered tool {tool_obj.name}")

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [t.model_dump() for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(
        self,
        call_id: str,
        name: str,
        arguments: str,
        context: ToolContext | None = None,
        timeout: float | None = None,
        executor: Executor | None = None,
    ) -> ToolInvocationResult:
        """Execute one tool call.

        Never raises for tool-level problems: unknown tools, bad
        arguments, exceptions and timeouts all come back as ERROR
        results so sibling calls in the batch are unaffected.
        """
        tool_obj = self._tools.get(name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {name}")
            return ToolInvocationResult.failure(
                call_id, name, f"Error: tool '{name}' not found", ErrorCode.TOOL_NOT_FOUND,
            )

        try:
            params = json.loads(arguments) if arguments and arguments.strip() else {}
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in arguments for {name}: {e}")
            return ToolInvocationResult.failure(
                call_id, name, f"Error: invalid arguments: {e}", ErrorCode.TOOL_INVALID_ARGUMENTS,
            )
        if not isinstance(params, dict):
            return ToolInvocationResult.failure(
                call_id, name, "Error: arguments must be a JSON object",
                ErrorCode.TOOL_INVALID_ARGUMENTS,
            )

        logger.info(f"Calling {name} with {params}")
        if tool_obj.wants_context:
            if context is not None:
                context = replace(context, call_id=call_id, tool_name=name)
            params["context"] = context

        async with tool_span(name, call_id) as span:
            try:
                output = await asyncio.wait_for(tool_obj.invoke(params, executor), timeout)
            except asyncio.TimeoutError as e:
                logger.warning(f"Tool {name} timed out after {timeout}s")
                record_error(span, e)
                return ToolInvocationResult.failure(
                    call_id, name, f"Error: {name} timed out after {timeout}s", ErrorCode.TOOL_TIMEOUT,
                )
            except LLMRecoverableError as e:
                logger.info(f"Tool {name} requested retry: {e}")
                return ToolInvocationResult.success(call_id, name, str(e))
            except Exception as e:
                logger.error(f"Tool {name} raised: {e}")
                record_error(span, e)
                return ToolInvocationResult.failure(call_id, name, f"Error calling {name}: {e}")

        if isinstance(output, DirectOutput):
            logger.info(f"Tool {name} claimed direct output")
            return ToolInvocationResult.direct(call_id, name, output.content, output.source)
        return ToolInvocationResult.success(call_id, name, _stringify(output))


@tool
def terminate(reason: str = "Task complete"):
    """End the conversation turn. Use when the task is done or the user asks to stop.

    Args:
        reason: Why the turn is ending, e.g. the task is done or the user said goodbye.
    """
    return DirectOutput(content=f"Conversation ended. Reason: {reason}", source="terminate")
