import asyncio
import json

import pytest

from cadence.agent import Agent
from cadence.config import AgentConfig
from cadence.context import ToolContext
from cadence.provider import ChatRequest, ModelProvider
from cadence.runner import Runner
from cadence.streaming import AccumulatedMessage, FinishReason, ToolCall
from cadence.tools import tool


DONE = "data: [DONE]"


# ---------------------------------------------------------------------------
# Raw SSE line builders (mirror the OpenAI chunk shape)
# ---------------------------------------------------------------------------

def chunk(
    content: str | None = None,
    tool_calls: list[dict] | None = None,
    finish_reason: str | None = None,
    role: str | None = None,
) -> str:
    """One ``data:`` line carrying a chat.completion.chunk."""
    delta = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    payload = {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "model": "mock-model",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload)}"


def tool_call_chunk(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> str:
    """A chunk carrying a single tool-call fragment."""
    fragment = {"index": index, "type": "function", "function": {}}
    if call_id is not None:
        fragment["id"] = call_id
    if name is not None:
        fragment["function"]["name"] = name
    if arguments is not None:
        fragment["function"]["arguments"] = arguments
    return chunk(tool_calls=[fragment])


def text_stream(*pieces: str) -> list[str]:
    """A complete stream answering with text split into ``pieces``."""
    return [
        chunk(role="assistant"),
        *[chunk(content=p) for p in pieces],
        chunk(finish_reason="stop"),
        DONE,
    ]


def tool_call_stream(
    calls: list[tuple[str, dict, str]],
    content: str | None = None,
) -> list[str]:
    """A complete stream requesting tools.

    Each item in *calls* is ``(func_name, args_dict, call_id)``; argument
    text is split across two fragments.
    """
    lines = [chunk(role="assistant")]
    if content:
        lines.append(chunk(content=content))
    for index, (name, args, call_id) in enumerate(calls):
        arguments = json.dumps(args)
        half = len(arguments) // 2
        lines.append(tool_call_chunk(index, call_id=call_id, name=name, arguments=""))
        lines.append(tool_call_chunk(index, arguments=arguments[:half]))
        lines.append(tool_call_chunk(index, arguments=arguments[half:]))
    lines.append(chunk(finish_reason="tool_calls"))
    lines.append(DONE)
    return lines


# ---------------------------------------------------------------------------
# Completed-message builders for the non-streaming path
# ---------------------------------------------------------------------------

def text_message(content: str) -> AccumulatedMessage:
    return AccumulatedMessage(content=content, complete=True, finish_reason=FinishReason.STOP)


def tool_call_message(
    calls: list[tuple[str, dict, str]],
    content: str = "",
) -> AccumulatedMessage:
    return AccumulatedMessage(
        content=content,
        tool_calls=tuple(
            ToolCall(id=call_id, name=name, arguments=json.dumps(args))
            for name, args, call_id in calls
        ),
        complete=True,
        finish_reason=FinishReason.TOOL_CALLS,
    )


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider that replays pre-queued raw streams and completions.

    No network calls.  ``streams`` holds one list of raw SSE lines per
    streaming call; ``completions`` one message per non-streaming call.
    """

    system = "scripted"

    def __init__(self):
        self.streams: list[list[str]] = []
        self.completions: list[AccumulatedMessage] = []
        self.call_log: list[ChatRequest] = []
        self.lines_served = 0
        self.line_delay: float = 0.0
        self.completion_delay: float = 0.0

    async def complete(self, request, span=None):
        self.call_log.append(request)
        if self.completion_delay:
            await asyncio.sleep(self.completion_delay)
        return self.completions.pop(0)

    async def stream_lines(self, request):
        self.call_log.append(request)
        for line in self.streams.pop(0):
            if self.line_delay:
                await asyncio.sleep(self.line_delay)
            self.lines_served += 1
            yield line


class FailingProvider(ModelProvider):
    """Provider whose every call raises ``exc``."""

    system = "failing"

    def __init__(self, exc: BaseException):
        self.exc = exc
        self.calls = 0

    async def complete(self, request, span=None):
        self.calls += 1
        raise self.exc

    async def stream_lines(self, request):
        self.calls += 1
        raise self.exc
        yield  # pragma: no cover


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet


@pytest.fixture
def sample_context_tool():
    @tool
    def whoami(context: ToolContext, query: str):
        """Tool that uses context."""
        return f"user={context.user_id}, query={query}"
    return whoami


@pytest.fixture
def make_agent(provider):
    """Factory fixture to build agents with the scripted provider."""
    def _make(
        name="test_agent",
        tools=None,
        system_prompt="You are helpful.",
        description="",
        provider_override=None,
    ):
        return Agent(
            name=name,
            description=description,
            system_prompt=system_prompt,
            tools=tools or [],
            model="mock-model",
            provider=provider_override or provider,
        )
    return _make


@pytest.fixture
def make_runner():
    """Factory fixture for runners; their worker pools are shut down after the test."""
    runners = []

    def _make(conversation=None, hooks=None, **config):
        runner = Runner(config=AgentConfig(**config), conversation=conversation, hooks=hooks)
        runners.append(runner)
        return runner

    yield _make
    for runner in runners:
        runner.close()
