import logging
import os
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing

from openai import AsyncOpenAI
from pydantic import BaseModel

from cadence.errors import AgentError, ErrorCode
from cadence.instrumentation import record_usage
from cadence.message import Message
from cadence.parser import parse_stream, to_finish_reason
from cadence.streaming import (
    AccumulatedMessage,
    DeltaAccumulator,
    StreamDelta,
    ToolCallDelta,
)

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    """One model invocation: the message list plus sampling and tool options."""

    model: str
    messages: list[Message]
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[dict] | None = None
    tool_choice: str | None = None
    stream: bool = False

    def payload(self) -> dict:
        """Keyword arguments for ``chat.completions.create``."""
        payload = {
            "model": self.model,
            "messages": [m.model_dump() for m in self.messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.tools:
            payload["tools"] = self.tools
            payload["tool_choice"] = self.tool_choice or "auto"
        if self.stream:
            payload["stream"] = True
        return payload


class ModelProvider:
    """Source of model responses.

    Subclasses implement :meth:`complete` for the non-streaming path and
    :meth:`stream_lines` for the raw event feed, as an async generator so
    an abandoned stream can be closed; :meth:`stream` runs the feed
    through the delta parser.
    """

    system = "custom"

    async def complete(self, request: ChatRequest, span=None) -> AccumulatedMessage:
        raise NotImplementedError

    def stream_lines(self, request: ChatRequest) -> AsyncGenerator[str, None]:
        raise NotImplementedError

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamDelta]:
        # Closing the stream early must release the underlying response.
        async with aclosing(self.stream_lines(request)) as lines, \
                aclosing(parse_stream(lines)) as deltas:
            async for delta in deltas:
                yield delta


class OpenAICompatibleProvider(ModelProvider):
    """Provider for any endpoint speaking the OpenAI chat completions API."""

    system = "openai"

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def complete(self, request: ChatRequest, span=None) -> AccumulatedMessage:
        payload = request.model_copy(update={"stream": False}).payload()
        logger.debug(f"Completion request: model={request.model}, messages={len(request.messages)}")
        response = await self.client.chat.completions.create(**payload)
        record_usage(span, getattr(response, "usage", None), getattr(response, "model", None))
        if not response.choices:
            raise AgentError(ErrorCode.LLM_INVALID_RESPONSE, "model response contained no choices")

        choice = response.choices[0]
        message = choice.message
        calls = [
            ToolCallDelta(
                index=i,
                call_id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments,
            )
            for i, tc in enumerate(message.tool_calls or [])
            if tc.type == "function"
        ]
        # Folding through the accumulator applies the same validation as
        # the streaming path.
        accumulator = DeltaAccumulator()
        accumulator.accumulate(StreamDelta(
            role=message.role,
            content=message.content,
            tool_calls=calls or None,
            finish_reason=to_finish_reason(choice.finish_reason),
        ))
        accumulator.mark_complete()
        return accumulator.build_message()

    async def stream_lines(self, request: ChatRequest) -> AsyncIterator[str]:
        payload = request.model_copy(update={"stream": True}).payload()
        logger.debug(f"Streaming request: model={request.model}, messages={len(request.messages)}")
        async with self.client.chat.completions.with_streaming_response.create(**payload) as response:
            async for line in response.iter_lines():
                yield line


class OpenAIProvider(OpenAICompatibleProvider):

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise AgentError(ErrorCode.CONFIG_MISSING, "OPENAI_API_KEY is not set")
        super().__init__(AsyncOpenAI(
            api_key=api_key,
            max_retries=5,
            timeout=600.0
        ))


class OpenRouter(OpenAICompatibleProvider):

    system = "openrouter"

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        if not api_key:
            raise AgentError(ErrorCode.CONFIG_MISSING, "OPENROUTER_API_KEY is not set")
        super().__init__(AsyncOpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
            max_retries=5,
            timeout=180.0
        ))


class VLLMProvider(OpenAICompatibleProvider):

    system = "vllm"

    def __init__(self, url: str, port: int):
        self.base_url = f"http://{url}:{port}/v1"
        super().__init__(AsyncOpenAI(base_url=self.base_url, api_key="DUMMY"))
