"""Outbound write buffer.

Frames are queued here before they reach the transport. While connected the
buffer coalesces writes for the write loop; while not connected it stages
frames until the next handshake. Every entry is tagged with its class so the
handshake can drop subscription traffic (which the registry replays) and keep
or drop publishes according to the reconnect policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FrameKind(Enum):
    """Class of an outbound frame."""

    CONTROL = "control"  # SUB, UNSUB, PING
    DATA = "data"  # PUB, HPUB


@dataclass(slots=True)
class _Entry:
    kind: FrameKind
    data: bytes


class OutboundBuffer:
    """Ordered queue of encoded frames waiting to be written."""

    _entries: list[_Entry]
    _pending_bytes: int
    _max_pending_bytes: int
    _max_pending_messages: int

    def __init__(self, *, max_pending_bytes: int = 1024 * 1024, max_pending_messages: int = 512):
        self._entries = []
        self._pending_bytes = 0
        self._max_pending_bytes = max_pending_bytes
        self._max_pending_messages = max_pending_messages

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    def would_overflow(self, size: int) -> bool:
        """Whether adding ``size`` more bytes would exceed the buffer limits."""
        return (
            self._pending_bytes + size > self._max_pending_bytes
            or len(self._entries) >= self._max_pending_messages
        )

    def append(self, kind: FrameKind, data: bytes) -> None:
        self._entries.append(_Entry(kind, data))
        self._pending_bytes += len(data)

    def count(self, kind: FrameKind) -> int:
        return sum(1 for entry in self._entries if entry.kind is kind)

    def discard(self, kind: FrameKind) -> int:
        """Drop every entry of one class, keeping the order of the rest.

        Returns:
            The number of entries dropped.
        """
        kept = [entry for entry in self._entries if entry.kind is not kind]
        dropped = len(self._entries) - len(kept)
        self._entries = kept
        self._pending_bytes = sum(len(entry.data) for entry in kept)
        return dropped

    def take(self) -> bytes:
        """Remove and return all entries as one contiguous write."""
        data = b"".join(entry.data for entry in self._entries)
        self.clear()
        return data

    def clear(self) -> None:
        self._entries = []
        self._pending_bytes = 0
