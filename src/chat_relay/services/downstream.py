"""
Downstream (client-facing) event writers.

The relay session never talks to the HTTP response directly; it writes
already-formatted SSE events to a ``DownstreamWriter``. Writes are best
effort: once the client is gone the writer is closed and every later write
raises ``DownstreamClosedError``.

Client wire format:
    data: {"token": "<fragment>"}     zero or more, in order
    data: [DONE]                      exactly one, terminal, success
    data: {"error": "<message>"}      at most one, terminal, failure

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional


class DownstreamClosedError(Exception):
    """Raised when writing to a client connection that has gone away."""


# ============================================================================
# Event Formatting
# ============================================================================

def format_token_event(fragment: str) -> str:
    return f"data: {json.dumps({'token': fragment})}\n\n"


def format_done_event() -> str:
    return "data: [DONE]\n\n"


def format_error_event(message: str) -> str:
    return f"data: {json.dumps({'error': message})}\n\n"


# ============================================================================
# Writers
# ============================================================================

class DownstreamWriter(ABC):
    """Destination for client events."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def write(self, chunk: str) -> None:
        """Send one event now. Raises DownstreamClosedError if closed."""

    @abstractmethod
    def close(self) -> None:
        """End the client stream. Idempotent."""


class QueueDownstreamWriter(DownstreamWriter):
    """
    Writer feeding a ``StreamingResponse`` body through an asyncio queue.

    The relay task writes, the response body iterates. The queue is
    unbounded so a slow client never blocks the relay's upstream reads;
    the body generator calls ``close()`` when the client disconnects,
    which makes every later ``write()`` fail fast.

    Example:
        writer = QueueDownstreamWriter()

        async def body():
            try:
                async for chunk in writer:
                    yield chunk
            finally:
                writer.close()

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    _EOF = None

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, chunk: str) -> None:
        if self._closed:
            raise DownstreamClosedError("client stream is closed")
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._EOF)

    async def next_chunk(self) -> Optional[str]:
        """Wait for the next event; None once the writer is closed and drained."""
        if self._drained:
            return None
        chunk = await self._queue.get()
        if chunk is self._EOF:
            self._drained = True
        return chunk

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            chunk = await self.next_chunk()
            if chunk is None:
                return
            yield chunk


class BufferedDownstreamWriter(DownstreamWriter):
    """
    Writer that keeps every event in memory.

    ``fail_after`` simulates a client that disconnects after receiving that
    many events: the next write closes the writer and raises.
    """

    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.chunks: List[str] = []
        self._fail_after = fail_after
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, chunk: str) -> None:
        if self._closed:
            raise DownstreamClosedError("client stream is closed")
        if self._fail_after is not None and len(self.chunks) >= self._fail_after:
            self._closed = True
            raise DownstreamClosedError("client disconnected")
        self.chunks.append(chunk)

    def close(self) -> None:
        self._closed = True

    @property
    def body(self) -> str:
        return "".join(self.chunks)

    def events(self) -> List[str]:
        """Raw ``data:`` values in the order they were written."""
        return [c[len("data: "):].rstrip("\n") for c in self.chunks]
