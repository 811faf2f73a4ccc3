"""Subscription implementation.

This module provides the Subscription class which represents an active
subscription to a subject. A subscription delivers either to a callback or to
an internal queue; queued subscriptions can be used as async iterators and
context managers for ergonomic message handling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Self, TypeAlias

from tether.client.message import Message

if TYPE_CHECKING:
    import types

    from tether.client import Client

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallbackDelivery:
    """Messages are handed to a callback as they arrive."""

    callback: Callable[[Message], None]


@dataclass(slots=True)
class QueueDelivery:
    """Messages are queued and read with `Subscription.next` or async iteration."""

    queue: asyncio.Queue[Message]


Delivery: TypeAlias = CallbackDelivery | QueueDelivery


class Subscription(AsyncIterator[Message], AbstractAsyncContextManager["Subscription"]):
    """A subscription to a subject.

    Subscriptions are owned by the client; the application holds this handle.
    The subscription stays registered (and is replayed on every reconnect)
    until it is unsubscribed, reaches ``max_messages``, is rejected by the
    server, or the client closes.

    Examples:
        # As an async iterator
        async for msg in subscription:
            process(msg)

        # As a context manager
        async with await client.subscribe("my.subject") as subscription:
            msg = await subscription.next()
            process(msg)

        # With a callback
        await client.subscribe("my.subject", callback=process)
    """

    _subject: str
    _sid: int
    _queue_group: str
    _client: Client
    _delivery: Delivery
    _max_messages: int | None
    _max_pending_messages: int | None
    _max_pending_bytes: int | None
    _received: int
    _pending_messages: int
    _pending_bytes: int
    _dropped_messages: int
    _dropped_bytes: int
    _closed: bool
    _error: Exception | None
    _slow_consumer_reported: bool

    def __init__(
        self,
        subject: str,
        sid: int,
        queue_group: str,
        client: Client,
        *,
        callback: Callable[[Message], None] | None = None,
        max_messages: int | None = None,
        max_pending_messages: int | None = None,
        max_pending_bytes: int | None = None,
    ):
        self._subject = subject
        self._sid = sid
        self._queue_group = queue_group
        self._client = client
        self._max_messages = max_messages

        if callback is not None:
            self._delivery = CallbackDelivery(callback)
        else:
            # maxsize 0 means unlimited
            maxsize = max_pending_messages if max_pending_messages is not None else 0
            self._delivery = QueueDelivery(asyncio.Queue(maxsize=maxsize))

        self._max_pending_messages = max_pending_messages
        self._max_pending_bytes = max_pending_bytes
        self._received = 0
        self._pending_messages = 0
        self._pending_bytes = 0
        self._dropped_messages = 0
        self._dropped_bytes = 0

        self._closed = False
        self._error = None
        self._slow_consumer_reported = False

    def __repr__(self) -> str:
        return f"<Subscription sid={self._sid} subject={self._subject!r} received={self._received}>"

    @property
    def subject(self) -> str:
        """Get the subscription subject."""
        return self._subject

    @property
    def sid(self) -> int:
        """Get the subscription id."""
        return self._sid

    @property
    def queue_group(self) -> str:
        """Get the queue group name."""
        return self._queue_group

    @property
    def max_messages(self) -> int | None:
        """Get the number of messages after which the subscription closes itself."""
        return self._max_messages

    @property
    def received(self) -> int:
        """Get the number of messages received from the server."""
        return self._received

    @property
    def dropped(self) -> int:
        """Get the number of messages dropped because pending limits were reached."""
        return self._dropped_messages

    @property
    def closed(self) -> bool:
        """Get whether the subscription is closed."""
        return self._closed

    @property
    def delivery(self) -> Delivery:
        return self._delivery

    @property
    def pending(self) -> tuple[int, int]:
        """Get the number of pending messages and bytes."""
        return (self._pending_messages, self._pending_bytes)

    def _reached_limit(self) -> bool:
        return self._max_messages is not None and self._received >= self._max_messages

    def _deliver(self, msg: Message) -> None:
        """Deliver a message without blocking.

        This is an internal method called by the Client when dispatching messages.

        Raises:
            asyncio.QueueFull: If the message count limit would be exceeded
            ValueError: If the byte limit would be exceeded
        """
        self._received += 1

        match self._delivery:
            case CallbackDelivery(callback):
                try:
                    callback(msg)
                except Exception:
                    # Log callback errors but don't disrupt message flow
                    logger.exception("Error in subscription callback for subject %s (sid %s)", msg.subject, self._sid)

            case QueueDelivery(queue):
                msg_size = len(msg.data)
                if self._max_pending_bytes is not None and self._pending_bytes + msg_size > self._max_pending_bytes:
                    raise ValueError(f"Byte limit exceeded: {self._pending_bytes + msg_size} > {self._max_pending_bytes}")

                queue.put_nowait(msg)

                self._pending_messages += 1
                self._pending_bytes += msg_size

    def _close(self, *, immediate: bool = True, error: Exception | None = None) -> None:
        """Mark the subscription closed.

        With ``immediate`` pending messages are discarded, otherwise they stay
        readable until consumed. ``error`` is raised to readers instead of the
        usual end-of-subscription signal.
        """
        if self._closed:
            return
        self._closed = True
        self._error = error
        if isinstance(self._delivery, QueueDelivery):
            self._delivery.queue.shutdown(immediate=immediate)
            if immediate:
                self._pending_messages = 0
                self._pending_bytes = 0

    async def next(self, timeout: float | None = None) -> Message:
        """Get the next message from the subscription.

        Args:
            timeout: How long to wait for the next message in seconds.
                    If None, wait indefinitely.

        Returns:
            The next message

        Raises:
            asyncio.TimeoutError: If timeout is reached waiting for a message
            RuntimeError: If the subscription is closed and queue is empty, or
                delivers to a callback
            ServerError: If the server rejected the subscription
        """
        if not isinstance(self._delivery, QueueDelivery):
            msg = "Subscription delivers to a callback"
            raise RuntimeError(msg)

        queue = self._delivery.queue
        try:
            if timeout is not None:
                message = await asyncio.wait_for(queue.get(), timeout)
            else:
                message = await queue.get()
        except asyncio.QueueShutDown:
            if self._error is not None:
                raise self._error from None
            msg = "Subscription is closed"
            raise RuntimeError(msg) from None

        self._pending_messages -= 1
        self._pending_bytes -= len(message.data)

        return message

    async def __anext__(self) -> Message:
        """Get the next message from the subscription.

        This allows using the subscription as an async iterator:
            async for msg in subscription:
                ...
        """
        try:
            return await self.next()
        except RuntimeError:
            raise StopAsyncIteration from None

    async def unsubscribe(self) -> None:
        """Unsubscribe from this subscription.

        This sends an UNSUB command to the server (when connected), removes the
        subscription from the client so it is not replayed, and discards any
        pending messages.
        """
        if not self._closed:
            self._client._unsubscribe(self, immediate=True)

    async def drain(self) -> None:
        """Drain the subscription.

        This unsubscribes from the server (stopping new messages), allowing all pending
        messages that are already in the queue to be processed.
        """
        if not self._closed:
            self._client._unsubscribe(self, immediate=False)

    async def __aenter__(self) -> Self:
        """Enter the async context manager."""
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: types.TracebackType | None
    ) -> None:
        """Exit the async context manager, closing the subscription."""
        await self.unsubscribe()
