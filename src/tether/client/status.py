"""Connection status events.

The client appends lifecycle events to a `StatusLog`. Any number of
`StatusObserver` instances read the log, each with its own cursor, so a slow
observer never holds back the others or the client. The log keeps a bounded
history; an observer that falls further behind than that skips ahead.

Examples:
    async for event in client.status():
        if event.type is EventType.DISCONNECT:
            ...
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Kind of status event."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RECONNECTING = "reconnecting"
    RECONNECT = "reconnect"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class StatusEvent:
    """A single lifecycle event."""

    type: EventType
    timestamp: float
    server: str | None = None
    error: Exception | None = None


class StatusLog:
    """Append-only log of status events with bounded history."""

    _events: deque[StatusEvent]
    _offset: int
    _closed: bool
    _waker: asyncio.Event

    def __init__(self, history: int = 1024):
        if history < 1:
            msg = "history must be at least 1"
            raise ValueError(msg)
        self._events = deque(maxlen=history)
        self._offset = 0
        self._closed = False
        self._waker = asyncio.Event()

    @property
    def start(self) -> int:
        """Absolute index of the oldest retained event."""
        return self._offset

    @property
    def end(self) -> int:
        """Absolute index one past the newest event."""
        return self._offset + len(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, event: StatusEvent) -> None:
        if self._closed:
            msg = "Status log is closed"
            raise RuntimeError(msg)
        if len(self._events) == self._events.maxlen:
            self._offset += 1
        self._events.append(event)
        self._wake()

    def close(self) -> None:
        """Stop accepting events; observers finish once they reach the end."""
        self._closed = True
        self._wake()

    def get(self, index: int) -> StatusEvent:
        return self._events[index - self._offset]

    def events(self) -> list[StatusEvent]:
        """Snapshot of the retained history."""
        return list(self._events)

    def observe(self, *, replay: bool = False) -> StatusObserver:
        """Create an observer positioned at the end of the log, or at its start with ``replay``."""
        return StatusObserver(self, self.start if replay else self.end)

    async def _wait(self) -> None:
        await self._waker.wait()

    def _wake(self) -> None:
        waker, self._waker = self._waker, asyncio.Event()
        waker.set()


class StatusObserver(AsyncIterator[StatusEvent]):
    """Independent reader of a StatusLog."""

    _log: StatusLog
    _cursor: int

    def __init__(self, log: StatusLog, cursor: int):
        self._log = log
        self._cursor = cursor

    @property
    def pending(self) -> int:
        """Number of events available without waiting."""
        return max(self._log.end - max(self._cursor, self._log.start), 0)

    async def next(self, timeout: float | None = None) -> StatusEvent:
        """Get the next event.

        Raises:
            asyncio.TimeoutError: If no event arrives within ``timeout``.
            StopAsyncIteration: If the log is closed and fully read.
        """
        if timeout is not None:
            return await asyncio.wait_for(self.__anext__(), timeout)
        return await self.__anext__()

    async def __anext__(self) -> StatusEvent:
        while True:
            if self._cursor < self._log.start:
                logger.warning("Status observer fell behind, skipped %d events", self._log.start - self._cursor)
                self._cursor = self._log.start

            if self._cursor < self._log.end:
                event = self._log.get(self._cursor)
                self._cursor += 1
                return event

            if self._log.closed:
                raise StopAsyncIteration

            await self._log._wait()
