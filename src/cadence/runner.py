import asyncio
import logging
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from dataclasses import dataclass

from cadence.agent import Agent
from cadence.buffer import BufferDecision, ResponseUnit, StreamBuffer, UnitKind
from cadence.config import AgentConfig
from cadence.context import RoundContext, ToolContext, TurnState
from cadence.conversation import ConversationService, InMemoryConversationService
from cadence.errors import AgentError, ErrorCode, classify
from cadence.events import (
    DirectOutputEvent,
    ErrorEvent,
    FinalAnswerEvent,
    StreamEvent,
    TerminalEvent,
    TextDeltaEvent,
    ToolCallsEvent,
    ToolResultEvent,
)
from cadence.instrumentation import completion_span, record_error, record_turn, turn_span
from cadence.lifecycle import LifecycleHook, LifecycleManager
from cadence.message import Message, MessageRole, ToolCallRequestMessage
from cadence.provider import ChatRequest
from cadence.streaming import DeltaAccumulator, ToolCall
from cadence.tools import ToolInvocationResult

logger = logging.getLogger(__name__)


@dataclass
class TurnRequest:
    """A user message addressed to an agent within a conversation."""

    user_id: str
    conversation_id: str
    message: str


@dataclass
class TurnResult:
    """The outcome of a single conversation turn."""

    state: TurnState
    content: str = ""
    rounds: int = 0
    model_calls: int = 0
    conversation_id: str = ""
    error: AgentError | None = None
    source: str | None = None

    @property
    def direct_output(self) -> bool:
        return self.state is TurnState.TERMINATED_DIRECT_OUTPUT


class Runner:
    """Drives one conversation turn through bounded rounds.

    Each round calls the model with the system prompt, the trimmed prior
    history and the turn so far.  A round that answers in text ends the
    turn; a round that requests tools dispatches them as one concurrent
    batch, folds every result into the turn, and either ends the turn
    (a tool claimed direct output) or starts the next round.

    The round counter advances only when at least one call in a batch
    succeeded.  Synchronous tools run on a bounded thread pool owned by
    the runner, so call :meth:`close` (or use ``async with``) when done.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        config: Runtime settings; defaults to :class:`AgentConfig`.
        conversation: History store; defaults to an in-memory one.
        hooks: :class:`LifecycleHook`s notified as the turn runs.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        conversation: ConversationService | None = None,
        hooks: list[LifecycleHook] | None = None,
    ):
        self.config = config or AgentConfig()
        self.conversation = conversation or InMemoryConversationService()
        self.lifecycle = LifecycleManager(hooks)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_tool_workers,
            thread_name_prefix="cadence-tool",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    async def __aenter__(self) -> "Runner":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    async def run(
        self, agent: Agent, request: TurnRequest, stream: bool | None = None,
    ) -> TurnResult:
        """Run a turn to completion and return its result."""
        result: TurnResult | None = None
        async for event in self.iter(agent, request, stream=stream):
            if isinstance(event, TerminalEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting a terminal event")
        return result

    async def iter(
        self, agent: Agent, request: TurnRequest, stream: bool | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run a turn, yielding events as execution proceeds.

        Exactly one :class:`TerminalEvent` is yielded, always last.
        Failures never escape; they end the turn with an :class:`ErrorEvent`.

        Args:
            agent: The agent answering the turn.
            request: Who is asking, in which conversation, and what.
            stream: Override ``config.enable_streaming`` for this turn.
        """
        streaming = self.config.enable_streaming if stream is None else stream
        try:
            self._validate(agent, request)
        except AgentError as e:
            logger.error(f"Rejected turn [{e.code.code}]: {e.detail}")
            yield self._error_event(e, TurnResult(
                state=TurnState.FAILED,
                conversation_id=request.conversation_id or "",
                error=e,
            ))
            return

        ctx = RoundContext(
            conversation_id=request.conversation_id,
            user_id=request.user_id,
            system_prompt=agent.system_prompt,
            max_rounds=self.config.max_rounds,
            max_context_tokens=self.config.max_context_tokens,
            conversation=self.conversation,
        )
        logger.info(
            f"Starting turn {ctx.execution_id} for agent {agent.name} "
            f"(conversation={ctx.conversation_id}, streaming={streaming}, "
            f"stream_partial_content={self.config.stream_partial_content})"
        )

        async with turn_span(agent.name, agent.model, ctx.conversation_id) as span:
            try:
                await self.lifecycle.notify("on_turn_start", ctx)
                await self.conversation.append(
                    ctx.conversation_id, Message(role=MessageRole.USER, content=request.message),
                )
                async for event in self._rounds(agent, ctx, streaming):
                    yield event
            except Exception as e:
                error = classify(e)
                logger.error(f"Turn {ctx.execution_id} failed [{error.code.code}]: {error}")
                record_error(span, e)
                yield await self._terminate(ctx, TurnState.FAILED, error=error, persist=False)
            finally:
                record_turn(span, ctx.state.value, ctx.current_round, ctx.model_calls)

    def _validate(self, agent: Agent, request: TurnRequest) -> None:
        if not request.user_id or not request.user_id.strip():
            raise AgentError(ErrorCode.CONFIG_INVALID, "user_id is required")
        if not request.conversation_id or not request.conversation_id.strip():
            raise AgentError(ErrorCode.CONFIG_INVALID, "conversation_id is required")
        if not agent.model:
            raise AgentError(ErrorCode.CONFIG_MISSING, f"agent {agent.name!r} has no model")
        if agent.provider is None:
            raise AgentError(ErrorCode.CONFIG_MISSING, f"agent {agent.name!r} has no provider")

    # ------------------------------------------------------------------
    # Round loop
    # ------------------------------------------------------------------

    async def _rounds(
        self, agent: Agent, ctx: RoundContext, streaming: bool,
    ) -> AsyncIterator[StreamEvent]:
        failed_batches = 0
        while True:
            if ctx.max_rounds_reached():
                logger.warning(f"Turn {ctx.execution_id} reached max rounds ({ctx.max_rounds})")
                error = AgentError(
                    ErrorCode.MAX_ROUNDS_EXCEEDED,
                    f"Stopped after {ctx.max_rounds} rounds without a final answer",
                )
                yield await self._terminate(ctx, TurnState.TERMINATED_MAX_ROUNDS, error=error)
                return

            ctx.state = TurnState.RUNNING
            ctx.model_calls += 1
            round_number = ctx.current_round
            request = agent.build_request(
                await ctx.message_list(),
                stream=streaming,
                tools_enabled=self.config.enable_tool_calls,
            )
            logger.info(f"Round {round_number}: model call {ctx.model_calls} to {agent.model}")
            await self.lifecycle.notify("before_model_call", ctx, round_number)

            buffer = StreamBuffer(self.config.stream_partial_content)
            tool_calls: list[ToolCall] = []
            message = None
            async with completion_span(agent.provider.system, agent.model, round_number, streaming) as span:
                async for unit in self._units(agent, request, streaming, span):
                    decision = buffer.add_unit(unit)
                    if decision.emits:
                        released = [unit]
                    elif decision is BufferDecision.RELEASE_ALL:
                        released = buffer.release()
                    else:
                        released = []
                    for item in released:
                        if item.kind is UnitKind.TEXT:
                            yield TextDeltaEvent(content=item.content, round=round_number)
                        elif item.kind is UnitKind.TOOL_CALLS:
                            tool_calls.extend(item.tool_calls)
                    if unit.is_final:
                        message = unit.message
            buffer.clear()
            content = message.content
            await self.lifecycle.notify("after_model_call", ctx, message)

            if not tool_calls:
                ctx.add_message(Message(role=MessageRole.ASSISTANT, content=content))
                yield await self._terminate(ctx, TurnState.TERMINATED_NORMAL, content=content)
                return

            ctx.state = TurnState.AWAITING_TOOLS
            ctx.add_message(ToolCallRequestMessage(content=content, tool_calls=tool_calls))
            yield ToolCallsEvent(calls=[c.to_dict() for c in tool_calls], round=round_number)

            results = await self._dispatch_batch(agent, ctx, tool_calls)

            direct: ToolInvocationResult | None = None
            for result in results:
                ctx.add_tool_result(result.call_id, result.output)
                yield ToolResultEvent(
                    call_id=result.call_id,
                    tool_name=result.tool_name,
                    output=result.output,
                    is_error=not result.succeeded,
                    direct_output=result.is_direct_output,
                )
                if direct is None and result.is_direct_output:
                    direct = result

            if direct is not None:
                logger.info(f"Tool {direct.tool_name} claimed direct output, ending turn")
                ctx.direct_output = True
                ctx.add_message(Message(role=MessageRole.ASSISTANT, content=direct.content))
                yield await self._terminate(
                    ctx,
                    TurnState.TERMINATED_DIRECT_OUTPUT,
                    content=direct.content,
                    source=direct.source or direct.tool_name,
                )
                return

            if any(r.succeeded for r in results):
                failed_batches = 0
                ctx.advance_round()
                continue

            failed_batches += 1
            logger.warning(
                f"All {len(results)} tool call(s) failed in round {round_number}; "
                f"round not advanced ({failed_batches} consecutive)"
            )
            limit = self.config.max_consecutive_failed_batches
            if limit is not None and failed_batches >= limit:
                error = AgentError(
                    ErrorCode.CONSECUTIVE_FAILURES_EXCEEDED,
                    f"All tool calls failed in {failed_batches} consecutive rounds",
                )
                yield await self._terminate(ctx, TurnState.TERMINATED_MAX_ROUNDS, error=error)
                return

    async def _units(
        self, agent: Agent, request: ChatRequest, streaming: bool, span,
    ) -> AsyncIterator[ResponseUnit]:
        """Response units of one round: text, then tool calls, then the end."""
        if not streaming:
            try:
                message = await asyncio.wait_for(
                    agent.provider.complete(request, span=span), self.config.model_timeout,
                )
            except asyncio.TimeoutError as e:
                raise AgentError(
                    ErrorCode.LLM_TIMEOUT, f"Model call exceeded {self.config.model_timeout}s", e,
                ) from e
            if message.content:
                yield ResponseUnit.text(message.content)
            if message.tool_calls:
                yield ResponseUnit.calls(message.tool_calls)
            yield ResponseUnit.end(message)
            return

        accumulator = DeltaAccumulator()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.stream_timeout
        async with aclosing(agent.provider.stream(request)) as deltas:
            while True:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    delta = await asyncio.wait_for(deltas.__anext__(), remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise AgentError(
                        ErrorCode.LLM_TIMEOUT,
                        f"Model stream exceeded {self.config.stream_timeout}s",
                        e,
                    ) from e
                accumulator.accumulate(delta)
                if accumulator.has_new_content():
                    yield ResponseUnit.text(accumulator.get_new_content())
                if accumulator.is_complete():
                    break

        if not accumulator.is_complete():
            logger.warning("Model stream ended without a finish signal, closing the round")
            accumulator.mark_complete()
        message = accumulator.build_message()
        if message.tool_calls:
            yield ResponseUnit.calls(message.tool_calls)
        yield ResponseUnit.end(message)

    async def _dispatch_batch(
        self, agent: Agent, ctx: RoundContext, tool_calls: list[ToolCall],
    ) -> list[ToolInvocationResult]:
        """Dispatch a round's calls concurrently; results keep call order."""
        logger.info(f"Dispatching {len(tool_calls)} tool call(s): {[c.name for c in tool_calls]}")
        tool_context = ToolContext(round_context=ctx, agent=agent)

        async def dispatch(call: ToolCall) -> ToolInvocationResult:
            await self.lifecycle.notify("before_tool_call", ctx, call)
            result = await agent.tool_registry.dispatch(
                call.id,
                call.name,
                call.arguments,
                context=tool_context,
                timeout=self.config.tool_timeout,
                executor=self._executor,
            )
            await self.lifecycle.notify("after_tool_call", ctx, result)
            return result

        return list(await asyncio.gather(*[dispatch(call) for call in tool_calls]))

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _terminate(
        self,
        ctx: RoundContext,
        state: TurnState,
        content: str = "",
        error: AgentError | None = None,
        source: str | None = None,
        persist: bool = True,
    ) -> TerminalEvent:
        if persist and ctx.messages:
            await self.conversation.append_many(ctx.conversation_id, list(ctx.messages))
            ctx.messages.clear()
        ctx.state = state
        result = TurnResult(
            state=state,
            content=content,
            rounds=ctx.current_round,
            model_calls=ctx.model_calls,
            conversation_id=ctx.conversation_id,
            error=error,
            source=source,
        )
        logger.info(
            f"Turn {ctx.execution_id} ended in {state.value} after "
            f"{ctx.model_calls} model call(s), {ctx.current_round} round(s)"
        )
        if error is not None:
            await self.lifecycle.notify("on_error", ctx, error)
        await self.lifecycle.notify("on_complete", ctx, result)
        if state is TurnState.TERMINATED_NORMAL:
            return FinalAnswerEvent(result=result, content=content)
        if state is TurnState.TERMINATED_DIRECT_OUTPUT:
            return DirectOutputEvent(result=result, content=content, source=source)
        return self._error_event(error, result)

    @staticmethod
    def _error_event(error: AgentError, result: TurnResult) -> ErrorEvent:
        return ErrorEvent(result=result, message=error.user_message(), code=error.code.code)
