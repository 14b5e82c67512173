"""Decode raw server-sent event lines into :class:`StreamDelta` values.

Upstream providers occasionally emit partial or corrupted frames, so a
line that cannot be decoded is logged and dropped rather than failing
the stream.  The parser keeps no state between lines.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, ValidationError

from cadence.streaming import FinishReason, StreamDelta, ToolCallDelta

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

# SSE fields other than ``data`` carry no delta payload.
_IGNORED_FIELDS = ("event:", "id:", "retry:")


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _WireFunction(_WireModel):
    name: str | None = None
    arguments: str | None = None


class _WireToolCall(_WireModel):
    index: int = 0
    id: str | None = None
    function: _WireFunction | None = None


class _WireDelta(_WireModel):
    role: str | None = None
    content: str | None = None
    tool_calls: list[_WireToolCall] | None = None


class _WireChoice(_WireModel):
    index: int = 0
    delta: _WireDelta | None = None
    finish_reason: str | None = None


class _WireChunk(_WireModel):
    choices: list[_WireChoice] = []


def to_finish_reason(value: str | None) -> FinishReason | None:
    if value is None:
        return None
    try:
        return FinishReason(value)
    except ValueError:
        logger.debug(f"Treating unsupported finish reason {value!r} as absent")
        return None


def decode_line(line: str) -> StreamDelta | None:
    """Decode one raw line.

    Returns ``None`` for sentinel, blank, comment and malformed lines.
    """
    if line is None:
        return None
    data = line.strip()
    if not data or data.startswith(":"):
        return None
    if data.startswith(_IGNORED_FIELDS):
        return None
    if data.startswith("data:"):
        data = data[len("data:"):].strip()
    if not data or data == DONE_SENTINEL:
        return None

    try:
        chunk = _WireChunk.model_validate_json(data)
    except ValidationError as e:
        logger.warning(f"Dropping malformed stream unit {data[:200]!r}: {e.error_count()} error(s)")
        return None

    if not chunk.choices:
        logger.debug("Stream unit without choices, skipping")
        return None

    choice = chunk.choices[0]
    delta = choice.delta or _WireDelta()
    tool_calls = None
    if delta.tool_calls:
        tool_calls = [
            ToolCallDelta(
                index=tc.index,
                call_id=tc.id,
                name=tc.function.name if tc.function else None,
                arguments=tc.function.arguments if tc.function else None,
            )
            for tc in delta.tool_calls
        ]
    return StreamDelta(
        role=delta.role,
        content=delta.content,
        tool_calls=tool_calls,
        finish_reason=to_finish_reason(choice.finish_reason),
    )


def parse_lines(lines: Iterable[str]) -> Iterator[StreamDelta]:
    """Synchronous variant of :func:`parse_stream` for replayed feeds."""
    for line in lines:
        delta = decode_line(line)
        if delta is not None:
            yield delta


async def parse_stream(lines: AsyncIterable[str]) -> AsyncIterator[StreamDelta]:
    """Lazily decode a live feed of raw lines into deltas."""
    async for line in lines:
        logger.debug(f"Raw stream line: {line!r}")
        delta = decode_line(line)
        if delta is not None:
            yield delta
