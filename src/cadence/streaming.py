"""Streaming primitives for model responses.

The parser turns raw feed lines into :class:`StreamDelta` objects.  The
:class:`DeltaAccumulator` folds the deltas of one round into text
increments and index-keyed tool calls whose arguments arrive in
fragments across many deltas, and freezes them into an
:class:`AccumulatedMessage` once the round finishes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from cadence.errors import StreamProtocolError

logger = logging.getLogger(__name__)


class FinishReason(Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"


@dataclass
class ToolCallDelta:
    """A fragment of a tool call from a single stream delta."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamDelta:
    """One parsed unit of the model stream."""

    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None
    finish_reason: FinishReason | None = None


@dataclass(frozen=True)
class ToolCall:
    """A resolved tool call ready for dispatch and the transcript."""

    id: str = ""
    name: str = ""
    arguments: str = ""

    def parsed_arguments(self) -> dict:
        """Decode the argument text; an empty string means no arguments."""
        if not self.arguments.strip():
            return {}
        params = json.loads(self.arguments)
        if not isinstance(params, dict):
            raise ValueError(f"expected a JSON object, got {type(params).__name__}")
        return params

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ToolCallFragment:
    """An in-progress tool call, identified by its index in the message."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments: str = ""

    @property
    def empty(self) -> bool:
        return self.call_id is None and self.name is None and not self.arguments

    def merge(self, delta: ToolCallDelta) -> None:
        if self.call_id is None and delta.call_id:
            self.call_id = delta.call_id
        if self.name is None and delta.name:
            self.name = delta.name
        if delta.arguments:
            self.arguments += delta.arguments


@dataclass(frozen=True)
class AccumulatedMessage:
    """The complete logical message of one model round."""

    role: str = "assistant"
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)
    complete: bool = False
    finish_reason: FinishReason | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class DeltaAccumulator:
    """Folds the deltas of a single round into a message.

    One instance per round.  ``accumulate()`` must be called once per
    delta in arrival order; after each call ``has_new_content()`` and
    ``get_new_content()`` describe only the text carried by that delta.
    """

    def __init__(self) -> None:
        self._content: list[str] = []
        self._fragments: list[ToolCallFragment] = []
        self._role = "assistant"
        self._new_content: str | None = None
        self._finish_reason: FinishReason | None = None
        self._complete = False
        self._message: AccumulatedMessage | None = None

    def accumulate(self, delta: StreamDelta) -> None:
        if self._complete:
            logger.debug("Ignoring delta received after round completion")
            self._new_content = None
            return

        if delta.content:
            self._content.append(delta.content)
            self._new_content = delta.content
        else:
            self._new_content = None

        if delta.tool_calls:
            for tc in delta.tool_calls:
                self._merge_tool_call(tc)

        if delta.role:
            self._role = delta.role

        if delta.finish_reason is not None:
            self._finish_reason = delta.finish_reason
            self._complete = True
            logger.debug(
                f"Stream completed with finish reason {delta.finish_reason.value}, "
                f"{len(self._fragments)} tool call fragment(s)"
            )

    def _merge_tool_call(self, delta: ToolCallDelta) -> None:
        if delta.index < 0:
            raise StreamProtocolError(f"negative tool call index {delta.index}")
        while len(self._fragments) <= delta.index:
            self._fragments.append(ToolCallFragment(index=len(self._fragments)))
        self._fragments[delta.index].merge(delta)

    def has_new_content(self) -> bool:
        return bool(self._new_content)

    def get_new_content(self) -> str | None:
        return self._new_content

    def is_complete(self) -> bool:
        return self._complete

    def mark_complete(self) -> None:
        """Close a round whose stream ended without a finish signal."""
        if self._complete:
            return
        self._new_content = None
        self._complete = True
        if any(not f.empty for f in self._fragments):
            self._finish_reason = FinishReason.TOOL_CALLS
        else:
            self._finish_reason = FinishReason.STOP

    def build_message(self) -> AccumulatedMessage:
        """Return the message accumulated so far.

        Once the round is complete the message is validated, frozen and
        returned unchanged by every later call.

        Raises:
            StreamProtocolError: If a completed tool call has no name or
                its argument text is not a JSON object.
        """
        if self._message is not None:
            return self._message
        if not self._complete:
            return AccumulatedMessage(
                role=self._role,
                content="".join(self._content),
                tool_calls=tuple(self._snapshot_calls()),
                complete=False,
            )

        calls = []
        for fragment in self._fragments:
            if fragment.empty:
                continue
            if not fragment.name:
                raise StreamProtocolError(f"tool call at index {fragment.index} has no function name")
            call = ToolCall(
                id=fragment.call_id or f"call_{fragment.index}",
                name=fragment.name,
                arguments=fragment.arguments,
            )
            try:
                call.parsed_arguments()
            except ValueError as e:
                raise StreamProtocolError(
                    f"arguments for tool call {call.name!r} at index {fragment.index} "
                    f"are not a JSON object: {e}",
                    e,
                ) from e
            calls.append(call)

        self._message = AccumulatedMessage(
            role=self._role,
            content="".join(self._content),
            tool_calls=tuple(calls),
            complete=True,
            finish_reason=self._finish_reason,
        )
        return self._message

    def _snapshot_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=f.call_id or "", name=f.name or "", arguments=f.arguments)
            for f in self._fragments
            if not f.empty
        ]
