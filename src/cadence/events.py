"""Caller-visible events emitted while a turn runs.

Each round yields zero or more :class:`TextDeltaEvent` and at most one
:class:`ToolCallsEvent`.  A turn always ends with exactly one
:class:`TerminalEvent`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class TextDeltaEvent(StreamEvent):
    """A text increment released to the caller."""

    content: str = ""
    round: int = 0


@dataclass
class ToolCallsEvent(StreamEvent):
    """The batch of tool calls requested by one round."""

    calls: list[dict] = field(default_factory=list)
    round: int = 0


@dataclass
class ToolResultEvent(StreamEvent):
    call_id: str = ""
    tool_name: str = ""
    output: str = ""
    is_error: bool = False
    direct_output: bool = False


@dataclass
class TerminalEvent(StreamEvent):
    """Base for the single event that ends a turn.

    ``result`` holds the :class:`~cadence.runner.TurnResult`.
    """

    result: Any = None


@dataclass
class FinalAnswerEvent(TerminalEvent):
    content: str = ""


@dataclass
class DirectOutputEvent(TerminalEvent):
    """The turn ended because a tool claimed the output."""

    content: str = ""
    source: str | None = None


@dataclass
class ErrorEvent(TerminalEvent):
    message: str = ""
    code: str = ""
