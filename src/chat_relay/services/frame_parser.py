"""
Incremental parser for delimiter-framed upstream event streams.

The upstream provider sends Server-Sent Events: UTF-8 text frames
separated by a blank line, each carrying one or more ``data: <value>``
lines, and a final ``data: [DONE]`` sentinel. Network reads never line up
with frame boundaries - one chunk may hold several frames, a fraction of a
frame, or half of a multi-byte character - so the parser keeps a text
buffer and only ever hands out complete frames.

Wire example:
    data: {"choices": [{"delta": {"content": "Hi"}}]}

    data: {"choices": [{"delta": {"content": " there"}}]}

    data: [DONE]

Usage:
    async for event in iter_frames(response.aiter_bytes()):
        if event.is_terminal:
            break
        handle(event.payload)

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import codecs
import json
import structlog
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, List, Optional

logger = structlog.get_logger(__name__)

FRAME_DELIMITER: str = "\n\n"
DATA_TAG: str = "data:"
SENTINEL: str = "[DONE]"

# Logged payload previews are capped to keep log lines small
_PREVIEW_LENGTH: int = 80


@dataclass(frozen=True)
class FrameEvent:
    """
    One decoded upstream event.

    Attributes:
        payload: Decoded JSON value of the frame's data (None for the sentinel)
        is_terminal: True only for the ``[DONE]`` sentinel

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    payload: Any = None
    is_terminal: bool = False


TERMINATE = FrameEvent(is_terminal=True)


class FrameParser:
    """
    Buffer-and-split frame parser.

    Feed raw byte chunks in arrival order with ``feed()``; call ``close()``
    once the upstream connection ends. Both return the events completed by
    that call, in order. Once the sentinel has been seen the parser is
    finished and ignores further input.

    A parser instance serves a single stream.

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._finished = False
        self.skipped_frames = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes) -> List[FrameEvent]:
        """
        Consume one raw chunk and return every frame it completed.

        Args:
            chunk: Bytes exactly as read from the network

        Returns:
            List[FrameEvent]: Completed events (possibly empty)
        """
        if self._finished:
            return []
        self._append(self._decoder.decode(chunk))
        return self._drain_complete_frames()

    def close(self) -> List[FrameEvent]:
        """
        Flush the decoder and parse any trailing, undelimited frame.

        Upstream closure is an implicit terminator, so a last frame that
        lacks its blank line is still delivered.
        """
        if self._finished:
            return []
        self._append(self._decoder.decode(b"", final=True))
        events = self._drain_complete_frames()
        if not self._finished and self._buffer.strip():
            leftover, self._buffer = self._buffer, ""
            event = self._parse_frame(leftover)
            if event is not None:
                events.append(event)
        self._buffer = ""
        self._finished = True
        return events

    def _append(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        # A CRLF pair may straddle two chunks, so normalise the whole buffer
        if "\r\n" in self._buffer:
            self._buffer = self._buffer.replace("\r\n", "\n")

    def _drain_complete_frames(self) -> List[FrameEvent]:
        events: List[FrameEvent] = []
        while not self._finished:
            frame, sep, rest = self._buffer.partition(FRAME_DELIMITER)
            if not sep:
                break
            self._buffer = rest
            event = self._parse_frame(frame)
            if event is None:
                continue
            events.append(event)
            if event.is_terminal:
                self._finished = True
                self._buffer = ""
        return events

    def _parse_frame(self, frame: str) -> Optional[FrameEvent]:
        data_lines: List[str] = []
        for line in frame.split("\n"):
            if not line.startswith(DATA_TAG):
                # Comments (":keep-alive"), event:/id:/retry: fields, blanks
                continue
            value = line[len(DATA_TAG):]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)

        if not data_lines:
            return None

        data = "\n".join(data_lines)
        if data.strip() == SENTINEL:
            return TERMINATE

        try:
            return FrameEvent(payload=json.loads(data))
        except json.JSONDecodeError as e:
            self.skipped_frames += 1
            logger.warning(
                "frame_parser.malformed_payload",
                error=str(e),
                preview=data[:_PREVIEW_LENGTH],
            )
            return None


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[FrameEvent]:
    """
    Lazily turn an async byte-chunk source into frame events.

    The sequence ends right after the sentinel (the source is not read any
    further) or when the source is exhausted. Errors raised by the source
    propagate unchanged.

    Args:
        chunks: Raw chunks, e.g. ``httpx.Response.aiter_bytes()``

    Yields:
        FrameEvent: Decoded payloads in wire order, then TERMINATE if sent

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    parser = FrameParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
        if parser.finished:
            return
    for event in parser.close():
        yield event
