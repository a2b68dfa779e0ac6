"""
Streaming channel between the agent loop and its consumers.

The loop pushes text chunks without waiting on the reader; the reader
iterates until an explicit completion or error sentinel arrives.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

import structlog

from ..errors import AgentError
from ..telemetry import SpanContext

logger = structlog.get_logger()


class StreamEventType(str, Enum):
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One item on the channel. ``DONE`` and ``ERROR`` are terminal."""

    type: StreamEventType
    text: str = ""
    span: SpanContext | None = None
    result: Any = None
    error: AgentError | None = None

    @property
    def terminal(self) -> bool:
        return self.type is not StreamEventType.CHUNK


class StreamChannel:
    """Unbounded single-producer queue of stream events."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self._result: Any = None
        self._error: AgentError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def result(self) -> Any:
        return self._result

    @property
    def error(self) -> AgentError | None:
        return self._error

    def send(self, text: str, span: SpanContext | None = None) -> None:
        """Queue a text chunk. Chunks sent after close are dropped."""
        if self._closed:
            logger.debug("Chunk sent to closed stream dropped", length=len(text))
            return
        if text:
            self._queue.put_nowait(StreamEvent(StreamEventType.CHUNK, text=text, span=span))

    def close(self, result: Any = None) -> None:
        """Finish the stream successfully."""
        if self._closed:
            return
        self._closed = True
        self._result = result
        self._queue.put_nowait(StreamEvent(StreamEventType.DONE, result=result))

    def fail(self, error: AgentError, result: Any = None) -> None:
        """Finish the stream with an error."""
        if self._closed:
            return
        self._closed = True
        self._result = result
        self._error = error
        self._queue.put_nowait(StreamEvent(StreamEventType.ERROR, error=error, span=error.span, result=result))

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield every event including the terminal one."""
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return

    async def __aiter__(self) -> AsyncIterator[str]:
        async for event in self.events():
            if event.type is StreamEventType.CHUNK:
                yield event.text

    async def collect(self) -> str:
        """Drain the channel and return the concatenated text."""
        return "".join([chunk async for chunk in self])
