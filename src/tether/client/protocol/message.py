"""Parser for server-to-client protocol frames.

Each frame is returned as a small named tuple whose first field is the
operation name, so callers can either inspect ``msg.op`` or destructure with
structural pattern matching::

    match await parse(connection):
        case ("MSG", subject, sid, reply_to, payload):
            ...
        case ("PING",):
            ...
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Literal, NamedTuple, TypeAlias

from tether.client.protocol.command import HEADER_LINE

if TYPE_CHECKING:
    from tether.client.connection import Connection
    from tether.client.protocol.types import ServerInfo


class ParseError(Exception):
    """Raised when the byte stream cannot be parsed as protocol frames."""


class Msg(NamedTuple):
    op: Literal["MSG"]
    subject: str
    sid: int
    reply_to: str | None
    payload: bytes


class HMsg(NamedTuple):
    op: Literal["HMSG"]
    subject: str
    sid: int
    reply_to: str | None
    headers: dict[str, list[str]]
    payload: bytes
    status_code: str | None
    status_description: str | None


class Info(NamedTuple):
    op: Literal["INFO"]
    info: ServerInfo


class Err(NamedTuple):
    op: Literal["ERR"]
    error: str


class Ok(NamedTuple):
    op: Literal["OK"]


class Ping(NamedTuple):
    op: Literal["PING"]


class Pong(NamedTuple):
    op: Literal["PONG"]


ServerMessage: TypeAlias = Msg | HMsg | Info | Err | Ok | Ping | Pong


def _parse_sid(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ParseError(f"Invalid subscription id: {raw!r}") from None


def _parse_size(raw: str) -> int:
    try:
        size = int(raw)
    except ValueError:
        raise ParseError(f"Invalid size: {raw!r}") from None
    if size < 0:
        raise ParseError(f"Invalid size: {raw!r}")
    return size


def parse_headers(data: bytes) -> tuple[dict[str, list[str]], str | None, str | None]:
    """Parse a header block into ``(headers, status_code, status_description)``."""
    try:
        text = data.decode()
    except UnicodeDecodeError as e:
        raise ParseError(f"Invalid header encoding: {e}") from None

    lines = text.split("\r\n")
    version_line = lines[0]
    if not version_line.startswith(HEADER_LINE.decode()):
        raise ParseError(f"Invalid header version line: {version_line!r}")

    status_code = None
    status_description = None
    status = version_line[len(HEADER_LINE) :].strip()
    if status:
        status_code, _, description = status.partition(" ")
        status_description = description.strip() or None

    headers: dict[str, list[str]] = {}
    for line in lines[1:]:
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            raise ParseError(f"Invalid header line: {line!r}")
        headers.setdefault(key.strip(), []).append(value.strip())

    return headers, status_code, status_description


async def _read_payload(connection: Connection, size: int) -> bytes:
    data = await connection.readexactly(size + 2)
    if data[-2:] != b"\r\n":
        raise ParseError("Payload is not terminated by CRLF")
    return data[:-2]


async def parse(connection: Connection) -> ServerMessage | None:
    """Read and parse the next frame.

    Returns:
        The parsed frame, or None if the connection was closed cleanly.

    Raises:
        ParseError: If the frame is malformed.
    """
    line = await connection.readline()
    if not line or not line.endswith(b"\r\n"):
        return None

    try:
        control = line[:-2].decode()
    except UnicodeDecodeError as e:
        raise ParseError(f"Invalid control line encoding: {e}") from None

    op, _, rest = control.partition(" ")
    match op.upper():
        case "MSG":
            args = rest.split()
            match args:
                case [subject, sid, size]:
                    reply_to = None
                case [subject, sid, reply_to, size]:
                    pass
                case _:
                    raise ParseError(f"Invalid MSG arguments: {rest!r}")
            payload = await _read_payload(connection, _parse_size(size))
            return Msg("MSG", subject, _parse_sid(sid), reply_to, payload)

        case "HMSG":
            args = rest.split()
            match args:
                case [subject, sid, header_size, total_size]:
                    reply_to = None
                case [subject, sid, reply_to, header_size, total_size]:
                    pass
                case _:
                    raise ParseError(f"Invalid HMSG arguments: {rest!r}")
            header_len = _parse_size(header_size)
            total_len = _parse_size(total_size)
            if header_len > total_len:
                raise ParseError(f"Header size {header_len} exceeds total size {total_len}")
            data = await _read_payload(connection, total_len)
            headers, status_code, status_description = parse_headers(data[:header_len])
            return HMsg(
                "HMSG",
                subject,
                _parse_sid(sid),
                reply_to,
                headers,
                data[header_len:],
                status_code,
                status_description,
            )

        case "PING":
            return Ping("PING")

        case "PONG":
            return Pong("PONG")

        case "+OK":
            return Ok("OK")

        case "-ERR":
            return Err("ERR", rest.strip().strip("'"))

        case "INFO":
            try:
                info = json.loads(rest)
            except json.JSONDecodeError as e:
                raise ParseError(f"Invalid INFO body: {e}") from None
            return Info("INFO", info)

        case _:
            raise ParseError(f"Unknown protocol operation: {op!r}")


__all__ = [
    "Err",
    "HMsg",
    "Info",
    "Msg",
    "Ok",
    "ParseError",
    "Ping",
    "Pong",
    "ServerMessage",
    "parse",
    "parse_headers",
]
