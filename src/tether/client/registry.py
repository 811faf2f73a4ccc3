"""Table of active subscriptions.

The registry is the source of truth for what the server should know about:
after every successful handshake the client replays one SUB per entry, so
nothing about subscriptions needs to survive in the outbound buffer across a
reconnect.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

from tether.client.protocol.command import encode_sub

if TYPE_CHECKING:
    from tether.client.subscription import Subscription


class SubscriptionRegistry:
    """Active subscriptions keyed by subscription id."""

    _subscriptions: dict[int, Subscription]
    _next_sid: int

    def __init__(self) -> None:
        self._subscriptions = {}
        self._next_sid = 1

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __iter__(self) -> Iterator[Subscription]:
        return iter(list(self._subscriptions.values()))

    def __contains__(self, sid: object) -> bool:
        return sid in self._subscriptions

    def allocate_sid(self) -> int:
        """Reserve the next subscription id. Ids are never reused."""
        sid = self._next_sid
        self._next_sid += 1
        return sid

    def add(self, subscription: Subscription) -> None:
        if subscription.sid in self._subscriptions:
            msg = f"Subscription id {subscription.sid} is already registered"
            raise ValueError(msg)
        self._subscriptions[subscription.sid] = subscription

    def get(self, sid: int) -> Subscription | None:
        return self._subscriptions.get(sid)

    def remove(self, sid: int) -> Subscription | None:
        return self._subscriptions.pop(sid, None)

    def by_subject(self, subject: str) -> list[Subscription]:
        return [sub for sub in self._subscriptions.values() if sub.subject == subject]

    def replay(self) -> list[bytes]:
        """Build one SUB frame per open subscription, in sid order."""
        return [
            encode_sub(sub.subject, sub.sid, sub.queue_group)
            for sub in self._subscriptions.values()
            if not sub.closed
        ]

    def clear(self) -> list[Subscription]:
        """Remove and return every subscription."""
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        return subscriptions
