"""Transport used by the client.

A `Connection` is an ordered byte stream to a single server. The client only
needs line reads (control lines), exact reads (payloads), writes, and close;
everything about DNS, TCP and TLS lives behind `open_tcp_connection`.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

# INFO frames from large clusters can carry long connect_urls lists.
READ_LIMIT = 1024 * 1024


class Connection(ABC):
    """Byte stream to a server."""

    @abstractmethod
    async def readline(self) -> bytes:
        """Read up to and including the next CRLF; returns b"" on EOF."""

    @abstractmethod
    async def readexactly(self, n: int) -> bytes:
        """Read exactly ``n`` bytes.

        Raises:
            ConnectionResetError: If the stream ends first.
        """

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write ``data`` and wait until the transport accepts it."""

    @abstractmethod
    async def close(self) -> None:
        """Close the stream. Safe to call more than once."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the stream is still open."""


class TcpConnection(Connection):
    """Connection over an asyncio stream pair (plain TCP or TLS)."""

    _reader: asyncio.StreamReader
    _writer: asyncio.StreamWriter
    _closed: bool

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def readline(self) -> bytes:
        try:
            return await self._reader.readuntil(b"\r\n")
        except asyncio.IncompleteReadError as e:
            # EOF; a partial line without CRLF is treated as a closed stream
            return e.partial

    async def readexactly(self, n: int) -> bytes:
        try:
            return await self._reader.readexactly(n)
        except asyncio.IncompleteReadError:
            msg = "Connection closed while reading payload"
            raise ConnectionResetError(msg) from None

    async def write(self, data: bytes) -> None:
        if self._closed:
            msg = "Connection is closed"
            raise ConnectionResetError(msg)
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            logger.debug("Error waiting for connection to close", exc_info=True)

    def is_connected(self) -> bool:
        return not self._closed and not self._writer.is_closing()


async def open_tcp_connection(
    host: str,
    port: int,
    ssl_context: ssl.SSLContext | None = None,
) -> TcpConnection:
    """Open a TCP (or TLS, when ``ssl_context`` is given) connection."""
    reader, writer = await asyncio.open_connection(
        host,
        port,
        ssl=ssl_context,
        server_hostname=host if ssl_context is not None else None,
        limit=READ_LIMIT,
    )
    logger.debug("Opened connection to %s:%s", host, port)
    return TcpConnection(reader, writer)
