"""Encoders for client-to-server protocol frames."""

from __future__ import annotations

import json

from tether.client.protocol.types import ConnectInfo

CRLF = b"\r\n"
HEADER_LINE = b"NATS/1.0"


def encode_connect(info: ConnectInfo) -> bytes:
    return b"CONNECT " + json.dumps(info, separators=(",", ":")).encode() + CRLF


def encode_ping() -> bytes:
    return b"PING" + CRLF


def encode_pong() -> bytes:
    return b"PONG" + CRLF


def encode_sub(subject: str, sid: int, queue_group: str | None = None) -> bytes:
    if queue_group:
        return f"SUB {subject} {queue_group} {sid}".encode() + CRLF
    return f"SUB {subject} {sid}".encode() + CRLF


def encode_unsub(sid: int, max_messages: int | None = None) -> bytes:
    if max_messages is not None:
        return f"UNSUB {sid} {max_messages}".encode() + CRLF
    return f"UNSUB {sid}".encode() + CRLF


def encode_pub(subject: str, payload: bytes, *, reply_to: str | None = None) -> list[bytes]:
    """Encode a PUB frame.

    Returns the frame as a list of parts so large payloads are not copied
    until the caller joins them.
    """
    if reply_to:
        control = f"PUB {subject} {reply_to} {len(payload)}".encode()
    else:
        control = f"PUB {subject} {len(payload)}".encode()
    return [control, CRLF, payload, CRLF]


def encode_headers(headers: dict[str, str | list[str]]) -> bytes:
    """Encode a header block, including the version line and the blank terminator."""
    lines = [HEADER_LINE]
    for key, value in headers.items():
        values = value if isinstance(value, list) else [value]
        for item in values:
            lines.append(f"{key}: {item}".encode())
    return CRLF.join(lines) + CRLF + CRLF


def encode_hpub(
    subject: str,
    payload: bytes,
    *,
    headers: dict[str, str | list[str]],
    reply_to: str | None = None,
) -> list[bytes]:
    """Encode an HPUB frame (a publish carrying headers)."""
    header_block = encode_headers(headers)
    total = len(header_block) + len(payload)
    if reply_to:
        control = f"HPUB {subject} {reply_to} {len(header_block)} {total}".encode()
    else:
        control = f"HPUB {subject} {len(header_block)} {total}".encode()
    return [control, CRLF, header_block, payload, CRLF]
