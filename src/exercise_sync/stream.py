"""Progress stream wire format.

Events travel as server-sent-event frames::

    data: {"type": "progress", "current": 3, "total": 10, ...}\\n\\n

A stream is complete only once a ``complete`` or ``error`` event has been
read.  Connection close before that means the producer died, and
``decode_events`` raises ``StreamIncompleteError``.  Frames may arrive split
across chunks or several to a chunk.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator

from src.exercise_sync.base import ProgressEvent
from src.exercise_sync.errors import StreamIncompleteError

logger = logging.getLogger("exercise_sync.stream")

MEDIA_TYPE = "text/event-stream"
_PREFIX = "data:"


def encode(event: ProgressEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


async def encode_stream(events: AsyncIterable[ProgressEvent]) -> AsyncIterator[str]:
    """Adapt an event iterator into SSE frames for a StreamingResponse."""
    async for event in events:
        yield encode(event)


def _parse_line(line: str) -> ProgressEvent | None:
    line = line.strip()
    if not line.startswith(_PREFIX):
        return None
    body = line[len(_PREFIX):].strip()
    if not body:
        return None
    try:
        return ProgressEvent.from_dict(json.loads(body))
    except (ValueError, KeyError) as exc:
        logger.warning("Skipping malformed progress frame %r: %s", body[:200], exc)
        return None


async def decode_events(
    chunks: AsyncIterable[str | bytes],
) -> AsyncIterator[ProgressEvent]:
    """Yield events from raw stream chunks until the terminal event.

    Raises:
        StreamIncompleteError: The stream ended without a terminal event.
    """
    buffer = ""
    # a multi-byte character may straddle two byte chunks
    decoder = codecs.getincrementaldecoder("utf-8")()
    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split("\n")
        for line in lines:
            event = _parse_line(line)
            if event is None:
                continue
            yield event
            if event.phase.is_terminal:
                return

    buffer += decoder.decode(b"", final=True)
    event = _parse_line(buffer)
    if event is not None:
        yield event
        if event.phase.is_terminal:
            return
    raise StreamIncompleteError("Progress stream closed before a complete/error event")


def decode_text(text: str) -> list[ProgressEvent]:
    """Decode a fully buffered stream body.

    Raises:
        StreamIncompleteError: The body holds no terminal event.
    """
    events: list[ProgressEvent] = []
    for line in text.splitlines():
        event = _parse_line(line)
        if event is None:
            continue
        events.append(event)
        if event.phase.is_terminal:
            return events
    raise StreamIncompleteError("Progress stream closed before a complete/error event")

