"""Server-Sent Events adapter for turn events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import fields

from cadence.events import StreamEvent, TerminalEvent


def encode_event(event: StreamEvent) -> str:
    """Render one event as an SSE frame.

    The turn result carried by terminal events stays server-side.
    """
    data = {
        f.name: getattr(event, f.name)
        for f in fields(event)
        if not (isinstance(event, TerminalEvent) and f.name == "result")
    }
    return f"event: {type(event).__name__}\ndata: {json.dumps(data)}\n\n"


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        yield encode_event(event)
    yield "event: done\ndata: {}\n\n"
