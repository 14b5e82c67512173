import asyncio
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from cadence.context import RoundContext, ToolContext
from cadence.errors import ErrorCode
from cadence.tools import (
    DirectOutput,
    LLMRecoverableError,
    ResultKind,
    Tool,
    ToolCallResult,
    ToolInvocationResult,
    ToolRegistry,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)


# ---------------------------------------------------------------------------
# Schema generation (_build_parameters_schema)
# ---------------------------------------------------------------------------


class TestBuildParametersSchema:
    def test_python_types_map_to_json_schema_types(self):
        def func(a: str, b: int, c: float, d: bool, e: list, f: dict):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["a"]["type"] == "string"
        assert schema["properties"]["b"]["type"] == "integer"
        assert schema["properties"]["c"]["type"] == "number"
        assert schema["properties"]["d"]["type"] == "boolean"
        assert schema["properties"]["e"]["type"] == "array"
        assert schema["properties"]["f"]["type"] == "object"

    def test_optional_and_generic_annotations(self):
        def func(a: int | None = None, b: list[str] = None, c: dict[str, int] = None):
            pass

        schema, required = _build_parameters_schema(func)
        assert schema["properties"]["a"]["type"] == "integer"
        assert schema["properties"]["b"]["type"] == "array"
        assert schema["properties"]["c"]["type"] == "object"
        assert required == []

    def test_context_param_excluded(self):
        def func(context, query: str):
            pass

        schema, _ = _build_parameters_schema(func)
        assert "context" not in schema["properties"]
        assert "query" in schema["properties"]

    def test_optional_params_not_required(self):
        def func(name: str, greeting: str = "hi"):
            pass

        _, required = _build_parameters_schema(func)
        assert required == ["name"]

    def test_unannotated_param_defaults_to_string(self):
        def func(x):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["x"]["type"] == "string"

    def test_var_args_skipped(self):
        def func(query: str, *args, **kwargs):
            pass

        schema, _ = _build_parameters_schema(func)
        assert list(schema["properties"]) == ["query"]


# ---------------------------------------------------------------------------
# Docstring param description parsing (_parse_param_descriptions)
# ---------------------------------------------------------------------------


class TestParseParamDescriptions:
    def test_google_style(self):
        def func(name: str, age: int):
            """Do something.

            Args:
                name: The user's name.
                age: The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_google_style_with_type_in_docstring(self):
        def func(name, age):
            """Do something.

            Args:
                name (str): The user's name.
                age (int): The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_sphinx_rest_style(self):
        def func(name: str, age: int):
            """Do something.

            :param name: The user's name.
            :param int age: The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_no_docstring(self):
        def func(x: str):
            pass

        assert _parse_param_descriptions(func) == {}

    def test_docstring_without_params_section(self):
        def func(x: str):
            """Just a summary."""

        assert _parse_param_descriptions(func) == {}

    def test_multiline_description(self):
        def func(query: str):
            """Search.

            Args:
                query: The search query string.
                    Supports boolean operators
                    and wildcards.
            """

        assert _parse_param_descriptions(func) == {
            "query": (
                "The search query string.\n"
                "Supports boolean operators\n"
                "and wildcards."
            ),
        }

    def test_section_ends_at_next_heading(self):
        def func(query: str):
            """Search.

            Args:
                query: The query.

            Returns:
                matches: Not a parameter.
            """

        assert _parse_param_descriptions(func) == {"query": "The query."}

    def test_undocumented_param_gets_empty_description(self):
        def func(a: str, b: int):
            """Do something.

            Args:
                a: Documented param.
            """

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["a"]["description"] == "Documented param."
        assert schema["properties"]["b"]["description"] == ""


# ---------------------------------------------------------------------------
# @tool decorator
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def greet(name: str):
            """Say hello."""
            return f"Hello {name}"

        assert isinstance(greet, Tool)
        assert greet.name == "greet"
        assert greet.description == "Say hello."

    def test_decorator_with_args(self):
        @tool(name="custom_name", description="Custom desc")
        def greet(name: str):
            """Original docstring."""
            return f"Hello {name}"

        assert greet.name == "custom_name"
        assert greet.description == "Custom desc"

    def test_description_is_first_paragraph(self):
        @tool
        def search(query: str):
            """Search the knowledge base.

            Args:
                query: The query.
            """

        assert search.description == "Search the knowledge base."

    def test_wants_context(self, sample_tool, sample_context_tool):
        assert not sample_tool.wants_context
        assert sample_context_tool.wants_context


def test_tool_model_dump_openai_format():
    @tool
    def greet(name: str):
        """Say hello."""

    assert greet.model_dump() == {
        "type": "function",
        "function": {
            "name": "greet",
            "description": "Say hello.",
            "parameters": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": ""},
                },
                "required": ["name"],
            },
        },
    }
    assert json.loads(greet.model_dump_json()) == greet.model_dump()


class TestToolCall:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        @tool
        def add(a: int, b: int):
            """Add numbers."""
            return a + b

        result = await add(a=2, b=3)
        assert isinstance(result, ToolCallResult)
        assert result.tool_name == "add"
        assert result.output == 5

    @pytest.mark.asyncio
    async def test_async_function(self):
        @tool
        async def fetch(url: str):
            """Fake fetch."""
            return {"status": 200, "url": url}

        result = await fetch(url="http://example.com")
        assert result.output == {"status": 200, "url": "http://example.com"}

    @pytest.mark.asyncio
    async def test_sync_function_runs_on_executor(self):
        @tool
        def where():
            """Report the current thread."""
            return threading.current_thread().name

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-tool") as pool:
            name = await where.invoke({}, executor=pool)
        assert name.startswith("sync-tool")


# ---------------------------------------------------------------------------
# ToolInvocationResult
# ---------------------------------------------------------------------------


class TestToolInvocationResult:
    def test_success(self):
        result = ToolInvocationResult.success("c", "t", "ok")
        assert result.kind is ResultKind.SUCCESS
        assert result.succeeded
        assert not result.is_direct_output
        assert result.output == "ok"

    def test_failure(self):
        result = ToolInvocationResult.failure("c", "t", "Error: boom")
        assert result.kind is ResultKind.ERROR
        assert not result.succeeded
        assert result.output == "Error: boom"
        assert result.error_code is ErrorCode.TOOL_EXECUTION_FAILED

    def test_direct_output_is_tagged_not_prefixed(self):
        result = ToolInvocationResult.direct("c", "t", "Shown verbatim", source="sub")
        assert result.kind is ResultKind.DIRECT_OUTPUT
        assert result.is_direct_output
        assert result.succeeded
        assert result.output == "Shown verbatim"
        assert result.source == "sub"

    def test_plain_content_never_becomes_direct_output(self):
        result = ToolInvocationResult.success("c", "t", "__DIRECT_OUTPUT__ hello")
        assert not result.is_direct_output


# ---------------------------------------------------------------------------
# ToolRegistry.dispatch
# ---------------------------------------------------------------------------


@tool
def echo(text: str):
    """Echo text back."""
    return text


@tool
def get_data():
    """Return structured data."""
    return {"items": [1, 2, 3]}


@tool
async def async_echo(text: str):
    """Async echo."""
    return f"async: {text}"


@tool
def explode():
    """Always raises."""
    raise RuntimeError("boom")


@tool
def needs_retry(value: int):
    """Rejects odd values."""
    raise LLMRecoverableError(f"{value} is odd, try an even number")


@tool
def claim_output(text: str):
    """Surfaces text directly."""
    return DirectOutput(content=text, source="claimer")


@tool
def whoami(context: ToolContext):
    """Reports the caller."""
    return f"{context.user_id}:{context.call_id}:{context.tool_name}"


@tool
def slow():
    """Sleeps past the timeout."""
    time.sleep(0.5)
    return "late"


@tool
async def slow_async():
    """Awaits past the timeout."""
    await asyncio.sleep(5)
    return "late"


@pytest.fixture
def registry():
    return ToolRegistry([
        echo, get_data, async_echo, explode, needs_retry, claim_output, whoami, slow, slow_async,
    ])


class TestToolRegistry:
    def test_register_and_lookup(self, registry):
        assert "echo" in registry
        assert registry.get("echo") is echo
        assert registry.get("missing") is None
        assert len(registry) == 9

    def test_schemas(self, registry):
        names = [s["function"]["name"] for s in registry.schemas()]
        assert names == registry.names()

    @pytest.mark.asyncio
    async def test_success(self, registry):
        result = await registry.dispatch("c1", "echo", '{"text": "hi"}')
        assert result.kind is ResultKind.SUCCESS
        assert result.call_id == "c1"
        assert result.tool_name == "echo"
        assert result.content == "hi"

    @pytest.mark.asyncio
    async def test_structured_output_is_json(self, registry):
        result = await registry.dispatch("c1", "get_data", "{}")
        assert json.loads(result.content) == {"items": [1, 2, 3]}

    @pytest.mark.asyncio
    async def test_empty_arguments(self, registry):
        result = await registry.dispatch("c1", "get_data", "")
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_async_tool(self, registry):
        result = await registry.dispatch("c1", "async_echo", '{"text": "x"}')
        assert result.content == "async: x"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        result = await registry.dispatch("c1", "nope", "{}")
        assert not result.succeeded
        assert result.error_code is ErrorCode.TOOL_NOT_FOUND
        assert "nope" in result.output

    @pytest.mark.asyncio
    async def test_invalid_json(self, registry):
        result = await registry.dispatch("c1", "echo", '{"text": ')
        assert result.error_code is ErrorCode.TOOL_INVALID_ARGUMENTS

    @pytest.mark.asyncio
    async def test_non_object_arguments(self, registry):
        result = await registry.dispatch("c1", "echo", '["hi"]')
        assert result.error_code is ErrorCode.TOOL_INVALID_ARGUMENTS

    @pytest.mark.asyncio
    async def test_wrong_parameter_is_execution_failure(self, registry):
        result = await registry.dispatch("c1", "echo", '{"wrong": 1}')
        assert result.error_code is ErrorCode.TOOL_EXECUTION_FAILED

    @pytest.mark.asyncio
    async def test_exception(self, registry):
        result = await registry.dispatch("c1", "explode", "{}")
        assert not result.succeeded
        assert result.output == "Error calling explode: boom"

    @pytest.mark.asyncio
    async def test_recoverable_error_is_success(self, registry):
        result = await registry.dispatch("c1", "needs_retry", '{"value": 3}')
        assert result.succeeded
        assert result.content == "3 is odd, try an even number"

    @pytest.mark.asyncio
    async def test_direct_output(self, registry):
        result = await registry.dispatch("c1", "claim_output", '{"text": "verbatim"}')
        assert result.is_direct_output
        assert result.content == "verbatim"
        assert result.source == "claimer"

    @pytest.mark.asyncio
    async def test_context_injected_per_call(self, registry):
        ctx = ToolContext(round_context=RoundContext(conversation_id="conv", user_id="ada"))
        result = await registry.dispatch("call_7", "whoami", "{}", context=ctx)
        assert result.content == "ada:call_7:whoami"
        # The shared context is copied, not mutated.
        assert ctx.call_id == ""

    @pytest.mark.asyncio
    async def test_sync_timeout(self, registry):
        with ThreadPoolExecutor(max_workers=1) as pool:
            result = await registry.dispatch("c1", "slow", "{}", timeout=0.05, executor=pool)
        assert result.error_code is ErrorCode.TOOL_TIMEOUT

    @pytest.mark.asyncio
    async def test_async_timeout(self, registry):
        result = await registry.dispatch("c1", "slow_async", "{}", timeout=0.05)
        assert result.error_code is ErrorCode.TOOL_TIMEOUT
        assert "timed out" in result.output

    @pytest.mark.asyncio
    async def test_timeout_does_not_cancel_siblings(self, registry):
        results = await asyncio.gather(
            registry.dispatch("a", "slow_async", "{}", timeout=0.05),
            registry.dispatch("b", "echo", '{"text": "fine"}', timeout=0.05),
        )
        assert [r.succeeded for r in results] == [False, True]
