"""Buffering decisions for a round's response units.

Whether a round's text is the final answer or throwaway reasoning
before a tool call is only known once the round finishes.  In hold
mode the :class:`StreamBuffer` defers that decision by keeping every
unit until the terminal one arrives; in stream-through mode it releases
units immediately and only records whether a tool call was seen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from cadence.streaming import AccumulatedMessage, ToolCall

logger = logging.getLogger(__name__)


class UnitKind(Enum):
    TEXT = "text"
    TOOL_CALLS = "tool_calls"
    END = "end"


@dataclass(frozen=True)
class ResponseUnit:
    """A unit of round output as seen by the buffer.

    ``TEXT`` units carry one text increment, a ``TOOL_CALLS`` unit carries
    the round's completed calls, and the ``END`` unit closes the round
    with the frozen message.
    """

    kind: UnitKind
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)
    message: AccumulatedMessage | None = None

    @classmethod
    def text(cls, content: str) -> ResponseUnit:
        return cls(kind=UnitKind.TEXT, content=content)

    @classmethod
    def calls(cls, tool_calls) -> ResponseUnit:
        return cls(kind=UnitKind.TOOL_CALLS, tool_calls=tuple(tool_calls))

    @classmethod
    def end(cls, message: AccumulatedMessage) -> ResponseUnit:
        return cls(kind=UnitKind.END, message=message)

    @property
    def is_final(self) -> bool:
        return self.kind is UnitKind.END


class BufferDecision(Enum):
    """What to do with a unit handed to the buffer.

    :class:`StreamBuffer` answers with DIRECT_OUTPUT, CONTINUE_BUFFERING or
    RELEASE_ALL; START_STREAMING and WAIT_FOR_COMPLETION complete the
    vocabulary for callers that drive their own buffering.
    """

    CONTINUE_BUFFERING = "continue_buffering"
    START_STREAMING = "start_streaming"
    DIRECT_OUTPUT = "direct_output"
    WAIT_FOR_COMPLETION = "wait_for_completion"
    RELEASE_ALL = "release_all"

    @property
    def emits(self) -> bool:
        """Whether the unit that produced this decision is released now."""
        return self in (BufferDecision.START_STREAMING, BufferDecision.DIRECT_OUTPUT)


class StreamBuffer:
    """Per-round buffer state.

    Args:
        stream_partial_content: Release every unit as it arrives instead
            of holding the round until it completes.
    """

    def __init__(self, stream_partial_content: bool):
        self.stream_partial_content = stream_partial_content
        self._units: list[ResponseUnit] = []
        self._tool_call_detected = False
        self._completed = False

    @property
    def tool_call_detected(self) -> bool:
        return self._tool_call_detected

    @property
    def completed(self) -> bool:
        return self._completed

    def add_unit(self, unit: ResponseUnit) -> BufferDecision:
        if self._completed:
            raise RuntimeError("unit added to a buffer whose round already completed")

        self._units.append(unit)
        if unit.kind is UnitKind.TOOL_CALLS:
            self._tool_call_detected = True
            logger.debug(f"Tool call detected, stream_partial_content={self.stream_partial_content}")
        if unit.is_final:
            self._completed = True

        if self.stream_partial_content:
            return BufferDecision.DIRECT_OUTPUT

        if unit.is_final:
            return BufferDecision.RELEASE_ALL
        logger.debug(f"Holding unit, {len(self._units)} buffered")
        return BufferDecision.CONTINUE_BUFFERING

    def buffered_units(self) -> list[ResponseUnit]:
        return list(self._units)

    def text_units(self) -> list[ResponseUnit]:
        return [u for u in self._units if u.kind is UnitKind.TEXT]

    def tool_call_units(self) -> list[ResponseUnit]:
        return [u for u in self._units if u.kind is UnitKind.TOOL_CALLS]

    def release(self) -> list[ResponseUnit]:
        """Units to hand on once the round has completed.

        A tool-call round releases only its tool-call units; its prose is
        dropped.  Otherwise held text is released in arrival order.  In
        stream-through mode the text has already gone out.
        """
        if not self._completed:
            logger.debug("Releasing a buffer before its round completed")
        if self._tool_call_detected:
            return self.tool_call_units()
        if self.stream_partial_content:
            return []
        return self.text_units()

    def clear(self) -> None:
        self._units.clear()
