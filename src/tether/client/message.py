"""Messages delivered to subscribers."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass


class Headers(Mapping[str, str]):
    """Message headers.

    A header may carry several values. Mapping access (``headers["key"]``)
    returns the first value; use `get_all` for every value.
    """

    _data: dict[str, list[str]]

    def __init__(self, data: Mapping[str, str | list[str]] | None = None):
        self._data = {}
        if data:
            for key, value in data.items():
                self._data[key] = list(value) if isinstance(value, list) else [value]

    def __getitem__(self, key: str) -> str:
        return self._data[key][0]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Headers):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self == Headers(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Headers({self._data!r})"

    def get_all(self, key: str) -> list[str]:
        """Get every value for a header, or an empty list."""
        return list(self._data.get(key, []))

    def set(self, key: str, value: str) -> None:
        """Replace all values of a header with a single value."""
        self._data[key] = [value]

    def append(self, key: str, value: str) -> None:
        """Add a value to a header, keeping existing values."""
        self._data.setdefault(key, []).append(value)

    def asdict(self) -> dict[str, list[str]]:
        return {key: list(values) for key, values in self._data.items()}


@dataclass(frozen=True, slots=True)
class Status:
    """Status carried in the header version line of a reply (e.g. 503)."""

    code: str
    description: str | None = None


@dataclass(slots=True)
class Message:
    """A message received on a subscription."""

    subject: str
    data: bytes
    reply_to: str | None = None
    headers: Headers | None = None
    status: Status | None = None
