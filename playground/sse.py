"""Server-sent event framing for report streams.

The wire format is one ``data: <json>\\n\\n`` frame per event, terminated by a
``data: [DONE]`` sentinel on success.  ``FrameBuffer`` turns arbitrary byte
chunks into complete frames (a chunk boundary may fall anywhere, including in
the middle of a multi-byte character) and ``StreamDecoder`` turns frames into
the small tagged union of events below.  Frames whose payload is neither JSON
nor the sentinel are skipped: upstream providers occasionally emit garbled
frames and those must not kill an otherwise healthy stream.
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, ClassVar, Optional, Union

from .errors import StreamClosedError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"data: {DONE_SENTINEL}\n\n"


# ---------------------------
# Events
# ---------------------------
@dataclass(frozen=True)
class ContentEvent:
    content: str
    type: ClassVar[str] = "content"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True)
class MetadataEvent:
    metadata: dict[str, Any]
    type: ClassVar[str] = "metadata"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "metadata": self.metadata}


@dataclass(frozen=True)
class UsageEvent:
    input_tokens: int
    output_tokens: int
    type: ClassVar[str] = "usage"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "usage": {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens},
        }


@dataclass(frozen=True)
class CompleteEvent:
    report: dict[str, Any]
    section: Optional[dict[str, Any]] = None
    usage: Optional[dict[str, Any]] = None
    type: ClassVar[str] = "complete"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "report": self.report}
        if self.section is not None:
            out["section"] = self.section
        if self.usage is not None:
            out["usage"] = self.usage
        return out


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    type: ClassVar[str] = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "error": self.error}


@dataclass(frozen=True)
class DoneEvent:
    type: ClassVar[str] = "done"


StreamEvent = Union[ContentEvent, MetadataEvent, UsageEvent, CompleteEvent, ErrorEvent, DoneEvent]


def encode_event(event: StreamEvent) -> str:
    if isinstance(event, DoneEvent):
        return DONE_FRAME
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


# ---------------------------
# Framing
# ---------------------------
@dataclass
class SseFrame:
    data: str
    event: Optional[str] = None


class FrameBuffer:
    """Accumulates chunks and releases only complete ``\\n\\n``-terminated frames."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""

    def feed(self, chunk: bytes | str) -> list[SseFrame]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._buf = (self._buf + text).replace("\r\n", "\n")
        frames: list[SseFrame] = []
        while True:
            idx = self._buf.find("\n\n")
            if idx < 0:
                break
            raw, self._buf = self._buf[:idx], self._buf[idx + 2:]
            frame = parse_frame(raw)
            if frame is not None:
                frames.append(frame)
        return frames

    @property
    def pending(self) -> str:
        """Text buffered after the last complete frame."""
        return self._buf


def parse_frame(raw: str) -> Optional[SseFrame]:
    data_lines: list[str] = []
    event = None
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event = value
    if not data_lines:
        return None
    return SseFrame(data="\n".join(data_lines), event=event)


# ---------------------------
# Decoding
# ---------------------------
def _as_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def decode_payload(data: str) -> Optional[StreamEvent]:
    """Map one frame payload to an event; None means "skip this frame"."""
    payload = data.strip()
    if payload == DONE_SENTINEL:
        return DoneEvent()
    try:
        obj = json.loads(payload)
    except ValueError:
        logger.debug("Skipping malformed frame: %r", payload[:120])
        return None
    if not isinstance(obj, dict):
        return None

    kind = obj.get("type")
    if kind == "content":
        content = obj.get("content")
        return ContentEvent(content) if isinstance(content, str) else None
    if kind == "metadata":
        meta = obj.get("metadata")
        return MetadataEvent(meta if isinstance(meta, dict) else {})
    if kind == "usage":
        usage = obj.get("usage") or {}
        if not isinstance(usage, dict):
            return None
        return UsageEvent(_as_int(usage.get("inputTokens")), _as_int(usage.get("outputTokens")))
    if kind == "complete":
        report = obj.get("report")
        section = obj.get("section")
        usage = obj.get("usage")
        return CompleteEvent(
            report=report if isinstance(report, dict) else {},
            section=section if isinstance(section, dict) else None,
            usage=usage if isinstance(usage, dict) else None,
        )
    if kind == "error":
        return ErrorEvent(str(obj.get("error") or "Unknown error"))
    logger.debug("Skipping frame with unknown type %r", kind)
    return None


class StreamDecoder:
    """Incremental decoder: ``feed`` bytes, get back the events they completed."""

    def __init__(self) -> None:
        self._frames = FrameBuffer()
        self.done = False
        self.failed = False

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if self.done:
            return []
        events: list[StreamEvent] = []
        for frame in self._frames.feed(chunk):
            event = decode_payload(frame.data)
            if event is None:
                continue
            events.append(event)
            if isinstance(event, DoneEvent):
                self.done = True
                break
            if isinstance(event, ErrorEvent):
                self.failed = True
        return events

    @property
    def terminated(self) -> bool:
        return self.done or self.failed


async def iter_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Decode an async byte stream; raises StreamClosedError on a truncated stream."""
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return
    if not decoder.terminated:
        raise StreamClosedError("event stream closed before completion")


__all__ = [
    "ContentEvent",
    "MetadataEvent",
    "UsageEvent",
    "CompleteEvent",
    "ErrorEvent",
    "DoneEvent",
    "StreamEvent",
    "FrameBuffer",
    "SseFrame",
    "StreamDecoder",
    "decode_payload",
    "encode_event",
    "iter_events",
    "DONE_FRAME",
]
