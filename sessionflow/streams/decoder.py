"""Incremental decoder for ``data: <json>`` frame streams."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any

from pydantic import ValidationError

from .events import Frame, StreamEvent, parse_event

logger = logging.getLogger("sessionflow.streams")

FRAME_PREFIX = "data: "

Chunk = bytes | str


def format_frame(kind: str, data: Any = "") -> str:
    """Encode one frame. Non-string payloads are JSON-encoded first."""
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    payload = json.dumps({"type": kind, "data": data}, ensure_ascii=False, separators=(",", ":"))
    return f"{FRAME_PREFIX}{payload}\n\n"


def encode_frame(kind: str, data: Any = "") -> bytes:
    return format_frame(kind, data).encode("utf-8")


def decode_line(line: str) -> Frame | None:
    """Decode one complete line. Returns ``None`` for non-frame or malformed lines."""
    line = line.rstrip("\r")
    if not line.startswith(FRAME_PREFIX):
        return None
    body = line[len(FRAME_PREFIX) :]
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("frame_decode_failed", extra={"reason": "invalid_json", "frame": body[:200]})
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        logger.warning("frame_decode_failed", extra={"reason": "missing_type", "frame": body[:200]})
        return None
    data = payload.get("data", "")
    if data is None:
        data = ""
    elif not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    try:
        return Frame(type=payload["type"], data=data)
    except ValidationError:
        logger.warning("frame_decode_failed", extra={"reason": "invalid_frame", "frame": body[:200]})
        return None


class FrameDecoder:
    """Splits arbitrary chunks into frames, buffering partial lines."""

    __slots__ = ("_buffer", "_utf8", "_closed")

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False

    @property
    def pending(self) -> str:
        """Text received after the last complete line."""
        return self._buffer

    def feed(self, chunk: Chunk) -> list[Frame]:
        if self._closed:
            raise RuntimeError("decoder_closed")
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        frames: list[Frame] = []
        for line in lines:
            frame = decode_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> None:
        """End of input. An unterminated trailing line is discarded, never emitted."""
        if self._closed:
            return
        self._closed = True
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if tail.strip():
            logger.debug("trailing_partial_frame", extra={"frame": tail[:200]})


async def _aiter_chunks(source: AsyncIterable[Chunk] | Iterable[Chunk]) -> AsyncIterator[Chunk]:
    if isinstance(source, AsyncIterable):
        async for chunk in source:
            yield chunk
    else:
        for chunk in source:
            yield chunk


async def iter_frames(source: AsyncIterable[Chunk] | Iterable[Chunk]) -> AsyncIterator[Frame]:
    """Lazily decode frames from a chunk source until it is exhausted."""
    decoder = FrameDecoder()
    try:
        async for chunk in _aiter_chunks(source):
            for frame in decoder.feed(chunk):
                yield frame
    finally:
        decoder.close()


async def iter_events(source: AsyncIterable[Chunk] | Iterable[Chunk]) -> AsyncIterator[StreamEvent]:
    """Decode frames and map them to typed events, skipping unknown kinds."""
    async for frame in iter_frames(source):
        event = parse_event(frame)
        if event is not None:
            yield event


def decode_text(text: str) -> list[StreamEvent]:
    """Decode a complete captured stream held in memory."""
    decoder = FrameDecoder()
    frames = decoder.feed(text)
    decoder.close()
    events: list[StreamEvent] = []
    for frame in frames:
        event = parse_event(frame)
        if event is not None:
            events.append(event)
    return events


__all__ = [
    "FRAME_PREFIX",
    "FrameDecoder",
    "decode_line",
    "decode_text",
    "encode_frame",
    "format_frame",
    "iter_events",
    "iter_frames",
]
