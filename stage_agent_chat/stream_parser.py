"""Decoder for the agent's newline-delimited ``data:`` event stream.

Each event arrives as a line ``data: {json}`` followed by a blank line.
The parser is incremental: bytes are fed as they arrive and only complete
lines are decoded. A trailing partial line is kept in the buffer and
prefixed to the next chunk.
"""

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


@dataclass
class ContentEvent:
    """Cumulative response text; replaces any previously received content."""
    content: str
    conversation_id: Optional[str] = None


@dataclass
class CompleteEvent:
    """Terminal event carrying the structured result of the turn."""
    content: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    auto_fill_data: Dict[str, Any] = field(default_factory=dict)
    stage_complete: bool = False
    go_to_stage_id: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass
class ErrorEvent:
    """The backend reported a failure for this attempt."""
    message: str
    conversation_id: Optional[str] = None


@dataclass
class PingEvent:
    """Heartbeat that keeps the connection open."""
    timestamp: Optional[str] = None


StreamEvent = Union[ContentEvent, CompleteEvent, ErrorEvent, PingEvent]


def decode_event(payload: Dict[str, Any]) -> Optional[StreamEvent]:
    """Turn one decoded JSON frame into a typed event.

    Returns None for frame types the client does not act on.
    """
    event_type = payload.get("type")
    conversation_id = payload.get("conversationId")

    if event_type == "content":
        return ContentEvent(
            content=payload.get("content") or "",
            conversation_id=conversation_id,
        )
    if event_type == "complete":
        return CompleteEvent(
            content=payload.get("content"),
            suggestions=list(payload.get("suggestions") or []),
            auto_fill_data=dict(payload.get("autoFillData") or {}),
            stage_complete=bool(payload.get("stageComplete", False)),
            go_to_stage_id=payload.get("goToStageId"),
            conversation_id=conversation_id,
        )
    if event_type == "error":
        return ErrorEvent(
            message=payload.get("error") or "Stream error occurred",
            conversation_id=conversation_id,
        )
    if event_type == "ping":
        return PingEvent(timestamp=payload.get("timestamp"))

    logger.debug(f"Ignoring stream frame of unknown type: {event_type!r}")
    return None


class StreamParser:
    """Incremental line parser for one response body.

    Not restartable: once ``close()`` has been called the parser refuses
    further input, and resuming requires a fresh stream and parser.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._closed = False
        self.frames_seen = 0
        self.frames_skipped = 0

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """Consume a chunk and return the events completed by it, in order."""
        if self._closed:
            raise RuntimeError("Cannot feed a closed stream parser")

        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> List[StreamEvent]:
        """Flush the decoder and any buffered final line."""
        if self._closed:
            return []
        self._closed = True

        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events = []
        for line in remainder.split("\n"):
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, line: str) -> Optional[StreamEvent]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None

        self.frames_seen += 1
        try:
            payload = json.loads(line[len(DATA_PREFIX):])
        except json.JSONDecodeError as e:
            self.frames_skipped += 1
            logger.warning(f"Failed to parse stream data: {e}")
            return None

        if not isinstance(payload, dict):
            self.frames_skipped += 1
            logger.warning(f"Skipping non-object stream frame: {type(payload).__name__}")
            return None

        return decode_event(payload)


async def parse_event_stream(
    chunks: AsyncIterable[Union[bytes, str]],
) -> AsyncIterator[StreamEvent]:
    """Yield typed events from an async byte source until it closes.

    Closing this generator early also closes the underlying source.
    """
    parser = StreamParser()
    try:
        async for chunk in chunks:
            for event in parser.feed(chunk):
                yield event
        for event in parser.close():
            yield event
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
