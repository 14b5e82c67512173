"""Hooks that observe a turn while the runner drives it.

Subclass :class:`LifecycleHook`, override the methods you care about and
pass instances to ``Runner(hooks=[...])``.  Hooks run in ascending
``priority`` order.  A hook that raises is logged and skipped; it never
changes how the turn ends.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cadence.context import RoundContext
from cadence.errors import AgentError
from cadence.streaming import AccumulatedMessage, ToolCall
from cadence.tools import ToolInvocationResult

if TYPE_CHECKING:
    from cadence.runner import TurnResult

logger = logging.getLogger(__name__)


class LifecycleHook:
    """No-op base for turn observers."""

    name = "lifecycle"
    priority = 100

    async def on_turn_start(self, ctx: RoundContext) -> None:
        pass

    async def before_model_call(self, ctx: RoundContext, round_number: int) -> None:
        pass

    async def after_model_call(self, ctx: RoundContext, message: AccumulatedMessage) -> None:
        pass

    async def before_tool_call(self, ctx: RoundContext, call: ToolCall) -> None:
        pass

    async def after_tool_call(self, ctx: RoundContext, result: ToolInvocationResult) -> None:
        pass

    async def on_error(self, ctx: RoundContext, error: AgentError) -> None:
        """Called before :meth:`on_complete` when a turn ends with an error."""

    async def on_complete(self, ctx: RoundContext, result: TurnResult) -> None:
        """Called once per turn with its final result, whatever the outcome."""


class LoggingHook(LifecycleHook):
    """Logs every lifecycle point at debug level, and errors as warnings."""

    name = "logging"
    priority = 10

    async def on_turn_start(self, ctx):
        logger.debug(
            f"Turn {ctx.execution_id} started for user {ctx.user_id} "
            f"in {ctx.conversation_id}"
        )

    async def before_model_call(self, ctx, round_number):
        logger.debug(f"Turn {ctx.execution_id}: model call in round {round_number}")

    async def after_model_call(self, ctx, message):
        logger.debug(
            f"Turn {ctx.execution_id}: model answered with {len(message.tool_calls)} "
            f"tool call(s), finish_reason={message.finish_reason}"
        )

    async def before_tool_call(self, ctx, call):
        logger.debug(f"Turn {ctx.execution_id}: calling {call.name} ({call.id})")

    async def after_tool_call(self, ctx, result):
        logger.debug(f"Turn {ctx.execution_id}: {result.tool_name} returned {result.kind.value}")

    async def on_error(self, ctx, error):
        logger.warning(f"Turn {ctx.execution_id} hit [{error.code.code}] {error.detail}")

    async def on_complete(self, ctx, result):
        logger.debug(f"Turn {ctx.execution_id} completed in {result.state.value}")


class LifecycleManager:
    """Ordered set of hooks, notified one after another."""

    def __init__(self, hooks: list[LifecycleHook] | None = None):
        self._hooks: list[LifecycleHook] = []
        for hook in hooks or []:
            self.register(hook)

    def register(self, hook: LifecycleHook) -> None:
        self._hooks.append(hook)
        self._hooks.sort(key=lambda h: h.priority)
        logger.info(f"Registered lifecycle hook {hook.name} with priority {hook.priority}")

    def unregister(self, name: str) -> None:
        self._hooks = [h for h in self._hooks if h.name != name]
        logger.info(f"Unregistered lifecycle hook {name}")

    def names(self) -> list[str]:
        return [h.name for h in self._hooks]

    def __len__(self) -> int:
        return len(self._hooks)

    async def notify(self, point: str, *args) -> None:
        """Call ``point`` on every hook in priority order."""
        for hook in self._hooks:
            try:
                await getattr(hook, point)(*args)
            except Exception as e:
                logger.warning(f"Lifecycle hook {hook.name} failed in {point}: {e}")
