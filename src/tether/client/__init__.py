"""Session client implementation.

This module provides a high-level, asyncio-based client that owns a single
logical connection to a message broker speaking the NATS text protocol.
It implements:
- Publish/Subscribe messaging over one multiplexed connection
- Request/Reply pattern
- Queue groups for load balancing
- Message headers
- Automatic reconnection with subscription replay
- A status event stream observable by any number of readers

Subscriptions survive reconnects: after every successful handshake the client
replays exactly one SUB per active subscription. Publishes do not: a message
published while the client is reconnecting is dropped and never replayed.

The primary entry point is the `connect()` function which returns a `Client` instance.
"""

from __future__ import annotations

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("tether-client")
except (ImportError, PackageNotFoundError):
    __version__ = "unknown"

import asyncio
import base64
import json
import logging
import random
import ssl
import time
import uuid
from collections import deque
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Self

import nkeys
from tether.client.buffer import FrameKind, OutboundBuffer
from tether.client.connection import Connection, open_tcp_connection
from tether.client.errors import (
    AuthorizationError,
    BadSubjectError,
    ClientError,
    ConnectionClosedError,
    ConnectionDrainingError,
    ConnectionLostError,
    MaxPayloadError,
    NoRespondersError,
    NoServersError,
    OutboundBufferFullError,
    PermissionsError,
    ProtocolError,
    ServerError,
    SlowConsumerError,
    StaleConnectionError,
    StatusError,
)
from tether.client.message import Headers, Message, Status
from tether.client.protocol.command import (
    encode_connect,
    encode_hpub,
    encode_ping,
    encode_pong,
    encode_pub,
    encode_sub,
    encode_unsub,
)
from tether.client.protocol.message import ParseError, parse
from tether.client.protocol.types import (
    ConnectInfo,
)
from tether.client.protocol.types import (
    ServerInfo as ProtocolServerInfo,
)
from tether.client.registry import SubscriptionRegistry
from tether.client.servers import Server, ServerPool
from tether.client.status import EventType, StatusEvent, StatusLog, StatusObserver
from tether.client.subjects import validate_publish_subject, validate_queue_group, validate_subject
from tether.client.subscription import Subscription

if TYPE_CHECKING:
    import types
    from collections.abc import Callable

logger = logging.getLogger("tether.client")

_SECRET_CONNECT_FIELDS = ("auth_token", "password", "sig")
_REQUIRED_INFO_FIELDS = ("server_id", "version")


class ClientState(Enum):
    """Client connection state. Exactly one holds at a time; CLOSED is terminal."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


@dataclass
class ServerInfo:
    """Server information received during connection."""

    server_id: str
    version: str
    go_version: str
    host: str
    port: int
    headers: bool
    auth_required: bool
    tls_required: bool
    tls_verify: bool
    max_payload: int
    proto: int
    client_id: int | None = None
    connect_urls: list[str] | None = None
    jetstream: bool | None = None
    nonce: str | None = None
    ldm: bool = False

    @classmethod
    def from_protocol(cls, info: ProtocolServerInfo) -> ServerInfo:
        """Create a ServerInfo instance from protocol info dictionary.

        Raises:
            ProtocolError: If the INFO body is not an object or lacks a required field
        """
        if not isinstance(info, dict):
            msg = f"INFO body must be an object, got {type(info).__name__}"
            raise ProtocolError(msg)
        missing = [key for key in _REQUIRED_INFO_FIELDS if key not in info]
        if missing:
            msg = f"INFO is missing required fields: {', '.join(missing)}"
            raise ProtocolError(msg)

        return cls(
            server_id=info["server_id"],
            version=info["version"],
            go_version=info.get("go", ""),
            host=info.get("host", ""),
            port=info.get("port", 0),
            headers=info.get("headers", False),
            auth_required=info.get("auth_required", False),
            tls_required=info.get("tls_required", False),
            tls_verify=info.get("tls_verify", False),
            max_payload=info.get("max_payload", 1048576),
            proto=info.get("proto", 1),
            client_id=info.get("client_id"),
            connect_urls=info.get("connect_urls"),
            jetstream=info.get("jetstream"),
            nonce=info.get("nonce"),
            ldm=info.get("ldm", False),
        )


@dataclass(slots=True)
class ClientStatistics:
    """Statistics for messages and bytes sent/received on the connection.

    This is a snapshot of the connection statistics at a point in time.
    All fields are monotonically increasing counters.
    """

    in_msgs: int = 0
    """Number of incoming messages received."""

    out_msgs: int = 0
    """Number of outgoing messages published."""

    in_bytes: int = 0
    """Number of bytes received."""

    out_bytes: int = 0
    """Number of bytes sent."""

    reconnects: int = 0
    """Number of successful reconnection attempts."""


def _redact(connect_info: ConnectInfo) -> dict:
    return {key: "***" if key in _SECRET_CONNECT_FIELDS else value for key, value in connect_info.items()}


class Client(AbstractAsyncContextManager["Client"]):
    """High-level client owning one logical connection.

    All mutations of the connection state, the subscription registry and the
    outbound buffer happen on the event loop between awaits, so the loop is
    the single writer for all of them.
    """

    # Connection and server info
    _connection: Connection | None
    _server_info: ServerInfo | None
    _state: ClientState
    _last_error: str | None
    _draining: bool

    # Reconnection configuration
    _allow_reconnect: bool
    _reconnect_max_attempts: int
    _reconnect_time_wait: float
    _reconnect_time_wait_max: float
    _reconnect_jitter: float
    _connect_timeout: float
    _reconnect_timeout: float

    # Server pool management
    _server_pool: ServerPool

    # Reconnection state
    _ever_connected: bool
    _reconnect_attempts: int
    _reconnect_time: float
    _reconnect_task: asyncio.Task[None] | None
    _connected: asyncio.Event

    # Subscriptions
    _registry: SubscriptionRegistry
    _requests: dict[int, str]

    # Write buffering
    _pending: OutboundBuffer
    _min_flush_interval: float
    _last_flush: float
    _flush_waker: asyncio.Event

    # Ping/Pong keep-alive
    _ping_interval: float
    _max_outstanding_pings: int
    _pings_outstanding: int
    _last_pong_received: float
    _last_ping_sent: float
    _pongs: deque[asyncio.Future[None] | None]

    # Status events and callbacks
    _status_log: StatusLog
    _closed_event: asyncio.Event
    _disconnected_callbacks: list[Callable[[], None]]
    _reconnected_callbacks: list[Callable[[], None]]
    _error_callbacks: list[Callable[[Exception], None]]

    # Inbox prefix
    _inbox_prefix: str

    # Identity and authentication
    _name: str | None
    _echo: bool
    _token: str | None
    _user: str | None
    _password: str | None
    _nkey_seed: str | None

    # Statistics
    _stats_in_msgs: int
    _stats_out_msgs: int
    _stats_in_bytes: int
    _stats_out_bytes: int
    _stats_reconnects: int

    # Background tasks
    _read_task: asyncio.Task[None] | None
    _write_task: asyncio.Task[None] | None

    def __init__(
        self,
        server_pool: ServerPool,
        *,
        timeout: float = 2.0,
        allow_reconnect: bool = True,
        reconnect_max_attempts: int = 10,
        reconnect_time_wait: float = 2.0,
        reconnect_time_wait_max: float = 10.0,
        reconnect_jitter: float = 0.1,
        reconnect_timeout: float | None = None,
        inbox_prefix: str = "_INBOX",
        ping_interval: float = 120.0,
        max_outstanding_pings: int = 2,
        max_pending_bytes: int = 1024 * 1024,
        max_pending_messages: int = 512,
        status_history: int = 1024,
        name: str | None = None,
        echo: bool = True,
        token: str | None = None,
        user: str | None = None,
        password: str | None = None,
        nkey_seed: str | None = None,
    ):
        """Initialize the client.

        The client starts in CONNECTING state; use `connect()` to create a
        connected client.

        Args:
            server_pool: Servers to connect to
            timeout: Timeout for the initial connection handshake
            allow_reconnect: Whether to automatically reconnect if the connection is lost
            reconnect_max_attempts: Maximum number of reconnection attempts (-1 for unlimited, 0 disables)
            reconnect_time_wait: Initial wait time between reconnection attempts
            reconnect_time_wait_max: Maximum wait time between reconnection attempts
            reconnect_jitter: Jitter factor for reconnection attempts
            reconnect_timeout: Timeout for reconnection handshakes (defaults to timeout)
            inbox_prefix: Prefix for inbox subjects (default: "_INBOX")
            ping_interval: Interval between PINGs in seconds (default: 120.0)
            max_outstanding_pings: Maximum number of outstanding PINGs before disconnecting (default: 2)
            max_pending_bytes: Bytes buffered before a publish forces a write
            max_pending_messages: Frames buffered before a publish forces a write
            status_history: Number of status events retained for observers
            name: Client name reported to the server
            echo: Whether the server may deliver the client's own publishes back to it
            token: Authentication token for the server
            user: Username for authentication
            password: Password for authentication
            nkey_seed: NKey seed for authentication
        """
        if reconnect_max_attempts < -1:
            raise ValueError("reconnect_max_attempts must be -1 (unlimited), 0 (disabled) or positive")

        # Validate inbox prefix
        if not inbox_prefix:
            raise ValueError("inbox_prefix cannot be empty")
        if ">" in inbox_prefix:
            raise ValueError("inbox_prefix cannot contain '>' wildcard")
        if "*" in inbox_prefix:
            raise ValueError("inbox_prefix cannot contain '*' wildcard")
        if inbox_prefix.endswith("."):
            raise ValueError("inbox_prefix cannot end with '.'")

        self._connection = None
        self._server_info = None
        self._state = ClientState.CONNECTING
        self._last_error = None
        self._draining = False

        self._allow_reconnect = allow_reconnect
        self._reconnect_max_attempts = reconnect_max_attempts
        self._reconnect_time_wait = reconnect_time_wait
        self._reconnect_time_wait_max = max(reconnect_time_wait_max, reconnect_time_wait)
        self._reconnect_jitter = reconnect_jitter
        self._connect_timeout = timeout
        self._reconnect_timeout = reconnect_timeout if reconnect_timeout is not None else timeout

        self._server_pool = server_pool

        self._ever_connected = False
        self._reconnect_attempts = 0
        self._reconnect_time = reconnect_time_wait
        self._reconnect_task = None
        self._connected = asyncio.Event()

        self._registry = SubscriptionRegistry()
        self._requests = {}

        self._pending = OutboundBuffer(max_pending_bytes=max_pending_bytes, max_pending_messages=max_pending_messages)
        self._min_flush_interval = 0.005
        self._last_flush = asyncio.get_event_loop().time() - self._min_flush_interval
        self._flush_waker = asyncio.Event()

        self._ping_interval = ping_interval
        self._max_outstanding_pings = max_outstanding_pings
        self._pings_outstanding = 0
        self._last_pong_received = asyncio.get_event_loop().time()
        self._last_ping_sent = self._last_pong_received
        self._pongs = deque()

        self._status_log = StatusLog(history=status_history)
        self._closed_event = asyncio.Event()
        self._disconnected_callbacks = []
        self._reconnected_callbacks = []
        self._error_callbacks = []

        self._inbox_prefix = inbox_prefix
        self._name = name
        self._echo = echo
        self._token = token
        self._user = user
        self._password = password
        self._nkey_seed = nkey_seed

        self._stats_in_msgs = 0
        self._stats_out_msgs = 0
        self._stats_in_bytes = 0
        self._stats_out_bytes = 0
        self._stats_reconnects = 0

        self._read_task = None
        self._write_task = None

    @property
    def server_info(self) -> ServerInfo | None:
        """Get the server info received during connection."""
        return self._server_info

    @property
    def state(self) -> ClientState:
        """Get the current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether a publish made now would be written to the server."""
        return self._state is ClientState.CONNECTED

    @property
    def last_error(self) -> str | None:
        """Get the last protocol error received from the server."""
        return self._last_error

    @property
    def servers(self) -> list[str]:
        """Get the URLs of the servers in the pool, including discovered ones."""
        return [server.url for server in self._server_pool]

    def stats(self) -> ClientStatistics:
        """Return a snapshot of the current connection statistics.

        Returns a copy of the statistics at the current point in time.
        All counters are monotonically increasing and represent totals
        since the client was created.

        Returns:
            ClientStatistics: Snapshot of messages and bytes sent/received,
                and number of reconnections.
        """
        return ClientStatistics(
            in_msgs=self._stats_in_msgs,
            out_msgs=self._stats_out_msgs,
            in_bytes=self._stats_in_bytes,
            out_bytes=self._stats_out_bytes,
            reconnects=self._stats_reconnects,
        )

    def status(self, *, replay: bool = False) -> StatusObserver:
        """Observe connection status events.

        Every call returns an independent observer. By default it yields events
        emitted from now on; with ``replay`` it starts at the oldest retained
        event. Iteration ends after the CLOSED event.

        Examples:
            async for event in client.status():
                print(event.type, event.server)
        """
        return self._status_log.observe(replay=replay)

    def _emit(self, kind: EventType, *, error: Exception | None = None) -> None:
        """Append a status event and run the matching callbacks."""
        if self._status_log.closed:
            logger.debug("Dropping %s status event after close", kind.value)
            return

        server = self._server_pool.current
        self._status_log.append(
            StatusEvent(kind, time.time(), server=server.url if server else None, error=error)
        )

        if kind is EventType.ERROR:
            for callback in self._error_callbacks:
                try:
                    callback(error)
                except Exception:
                    logger.exception("Error in error callback while handling: %s", error)
            return

        match kind:
            case EventType.DISCONNECT:
                callbacks = self._disconnected_callbacks
            case EventType.RECONNECT:
                callbacks = self._reconnected_callbacks
            case _:
                callbacks = []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Error in %s callback", kind.value)

    def _connect_info(self, server_info: ServerInfo) -> ConnectInfo:
        """Build the CONNECT body, signing the server nonce when an NKey is configured."""
        connect_info = ConnectInfo(
            verbose=False,
            pedantic=False,
            tls_required=False,
            lang="python",
            version=__version__,
            protocol=1,
            headers=True,
            no_responders=True,
            echo=self._echo,
        )

        if self._name:
            connect_info["name"] = self._name
        if self._token:
            connect_info["auth_token"] = self._token
        if self._user:
            connect_info["user"] = self._user
        if self._password:
            connect_info["password"] = self._password
        if self._nkey_seed:
            kp = nkeys.from_seed(self._nkey_seed.encode())
            connect_info["nkey"] = kp.public_key.decode()

            # If server sent a nonce, sign it
            if server_info.nonce:
                sig = kp.sign(server_info.nonce.encode())
                connect_info["sig"] = base64.b64encode(sig).decode()

        return connect_info

    async def _negotiate(self, connection: Connection) -> ServerInfo:
        """Run the INFO/CONNECT exchange and wait for the PONG that confirms it."""
        msg = await parse(connection)
        if msg is None or msg.op != "INFO":
            msg = "Expected INFO message"
            raise ProtocolError(msg)

        logger.debug("<<- INFO %s...", json.dumps(msg.info)[:80])
        server_info = ServerInfo.from_protocol(msg.info)

        connect_info = self._connect_info(server_info)
        logger.debug("->> CONNECT %s", json.dumps(_redact(connect_info)))
        logger.debug("->> PING")
        await connection.write(encode_connect(connect_info) + encode_ping())

        # If auth fails, the server will send -ERR before we get a PONG
        while True:
            match await parse(connection):
                case None:
                    msg = "Connection closed during handshake"
                    raise ConnectionResetError(msg)
                case ("PONG",):
                    logger.debug("<<- PONG")
                    return server_info
                case ("OK",):
                    logger.debug("<<- +OK")
                case ("INFO", info):
                    logger.debug("<<- INFO %s...", json.dumps(info)[:80])
                    server_info = ServerInfo.from_protocol(info)
                case ("PING",):
                    logger.debug("->> PONG")
                    await connection.write(encode_pong())
                case ("ERR", error):
                    logger.error("<<- -ERR '%s'", error)
                    raise ServerError.from_text(error)
                case unexpected:
                    msg = f"Unexpected {unexpected.op} during handshake"
                    raise ProtocolError(msg)

    async def _handshake(self, server: Server, timeout: float) -> tuple[Connection, ServerInfo]:
        """Open a transport to ``server`` and complete the handshake on it."""
        ssl_context = ssl.create_default_context() if server.scheme == "tls" else None
        connection = await asyncio.wait_for(
            open_tcp_connection(server.host, server.port, ssl_context=ssl_context),
            timeout=timeout,
        )
        try:
            server_info = await asyncio.wait_for(self._negotiate(connection), timeout=timeout)
        except (Exception, asyncio.CancelledError):
            await connection.close()
            raise
        return connection, server_info

    async def _activate(self, connection: Connection, server_info: ServerInfo, server: Server) -> None:
        """Make a freshly handshaken connection the live one.

        The registry snapshot, the buffer cleanup and the switch to CONNECTED
        happen without an intervening await: a subscription created before
        the switch is part of the replay, one created after it is written
        through the buffer, and none is sent twice.

        Raises:
            OSError: If the replay could not be written; the client is left
                in its previous state.
        """
        first = not self._ever_connected
        previous_state = self._state

        replay = self._registry.replay()
        dropped = self._pending.discard(FrameKind.CONTROL)
        if dropped:
            logger.debug("Discarded %d control frames staged while disconnected", dropped)
        # Only DATA is left; it exists only before the first connection
        staged = self._pending.take()

        self._connection = connection
        self._server_info = server_info
        self._state = ClientState.CONNECTED
        self._pings_outstanding = 0
        self._pongs.clear()

        try:
            for frame in replay:
                logger.debug("->> %s", frame[:-2].decode())
            if replay or staged:
                await connection.write(b"".join(replay) + staged)
        except OSError:
            logger.debug("Failed to write subscription replay to %s", server, exc_info=True)
            self._state = previous_state
            self._connection = None
            self._pending.clear()
            if first and staged:
                self._pending.append(FrameKind.DATA, staged)
            await connection.close()
            raise

        server.did_connect = True
        self._ever_connected = True
        self._reconnect_attempts = 0
        self._reconnect_time = self._reconnect_time_wait
        self._last_pong_received = asyncio.get_event_loop().time()
        self._last_ping_sent = self._last_pong_received

        if server_info.connect_urls:
            self._server_pool.add_discovered(server_info.connect_urls, default_scheme=server.scheme)

        self._read_task = asyncio.create_task(self._read_loop(connection))
        self._write_task = asyncio.create_task(self._write_loop(connection))
        self._connected.set()
        if self._pending:
            self._flush_waker.set()

        if first:
            logger.info("Connected to %s (version %s)", server_info.server_id, server_info.version)
            self._emit(EventType.CONNECT)
        else:
            self._stats_reconnects += 1
            logger.info(
                "Reconnected to %s (version %s), replayed %d subscriptions",
                server_info.server_id,
                server_info.version,
                len(replay),
            )
            self._emit(EventType.RECONNECT)

    async def _connect(self, *, wait_on_first_connect: bool = False) -> None:
        """Establish the first connection, trying each server in the pool once."""
        error: Exception | None = None
        for _ in range(len(self._server_pool)):
            server = self._server_pool.next()
            if server is None:
                break

            logger.info("Connecting to %s", server)
            try:
                connection, server_info = await self._handshake(server, self._connect_timeout)
                await self._activate(connection, server_info, server)
                return
            except ServerError as e:
                logger.error("Server %s rejected connection: %s", server, e)
                self._last_error = e.text
                error = e
            except (OSError, asyncio.TimeoutError, ClientError, ParseError) as e:
                logger.error("Failed to connect to %s: %s", server, e or type(e).__name__)
                error = e

        if wait_on_first_connect:
            logger.info("Initial connection failed, retrying in the background")
            self._reconnect_task = asyncio.create_task(self._reconnect())
            return

        self._state = ClientState.CLOSED
        self._emit(EventType.CLOSED, error=error)
        self._status_log.close()
        self._closed_event.set()

        match error:
            case asyncio.TimeoutError():
                msg = f"Connection timed out after {self._connect_timeout} seconds"
                raise TimeoutError(msg) from None
            case AuthorizationError():
                msg = f"Authorization failed: {error}"
                raise ConnectionError(msg) from error
            case _:
                msg = f"Failed to connect: {error}"
                raise ConnectionError(msg) from error

    def _connection_lost(self, connection: Connection, error: Exception | None) -> None:
        """Start handling a dropped connection.

        Called from the read and write loops; only the first report for the
        live connection has an effect.
        """
        if self._state is not ClientState.CONNECTED or connection is not self._connection:
            return

        can_reconnect = self._allow_reconnect and self._reconnect_max_attempts != 0
        self._state = ClientState.RECONNECTING if can_reconnect else ClientState.DISCONNECTED
        self._connected.clear()
        logger.info("Connection to %s lost: %s", self._server_pool.current, error or "closed by server")
        self._reconnect_task = asyncio.create_task(self._handle_disconnect(connection, error))

    async def _handle_disconnect(self, connection: Connection, error: Exception | None) -> None:
        await self._stop_io()
        await connection.close()
        self._connection = None

        dropped = self._pending.discard(FrameKind.DATA)
        if dropped:
            logger.warning("Dropped %d unsent messages after disconnect", dropped)
        self._fail_pongs(ConnectionLostError("Connection lost before PONG was received"))

        self._emit(EventType.DISCONNECT, error=error)

        if self._state is ClientState.DISCONNECTED:
            await self._close(error)
            return

        logger.info("Starting reconnection process")
        self._emit(EventType.RECONNECTING)
        await self._reconnect()

    async def _reconnect(self) -> None:
        """Try servers one at a time until one completes a handshake or the policy gives up."""
        self._reconnect_time = self._reconnect_time_wait
        tried_this_pass = 0
        error: Exception | None = None

        while self._state in (ClientState.CONNECTING, ClientState.RECONNECTING):
            if 0 <= self._reconnect_max_attempts <= self._reconnect_attempts:
                error = NoServersError(f"Reconnection failed after {self._reconnect_attempts} attempts")
                break

            server = self._server_pool.next()
            if server is None:
                error = NoServersError("No usable servers left in the pool")
                break

            self._reconnect_attempts += 1
            actual_wait = self._reconnect_time * (1 + random.random() * self._reconnect_jitter)

            tried_this_pass += 1
            if tried_this_pass >= len(self._server_pool):
                tried_this_pass = 0
                self._reconnect_time = min(self._reconnect_time * 2, self._reconnect_time_wait_max)

            logger.info("Reconnection attempt %s to %s in %.2fs", self._reconnect_attempts, server, actual_wait)
            await asyncio.sleep(actual_wait)

            try:
                connection, server_info = await self._handshake(server, self._reconnect_timeout)
            except AuthorizationError as e:
                logger.error("Server %s rejected credentials: %s", server, e)
                self._last_error = e.text
                self._server_pool.mark_failed(server)
                self._emit(EventType.ERROR, error=e)
                continue
            except ProtocolError as e:
                logger.error("Server %s violated the protocol: %s", server, e)
                self._emit(EventType.ERROR, error=e)
                continue
            except (OSError, asyncio.TimeoutError, ClientError, ParseError) as e:
                logger.error("Failed to connect to %s: %s", server, e or type(e).__name__)
                continue

            try:
                await self._activate(connection, server_info, server)
            except OSError as e:
                logger.error("Lost connection to %s during replay: %s", server, e)
                continue
            return

        if self._state is ClientState.CLOSED:
            return

        logger.error("%s", error)
        self._state = ClientState.DISCONNECTED
        self._emit(EventType.ERROR, error=error)
        await self._close(error)

    async def _stop_io(self) -> None:
        """Cancel the read and write loops, except the one calling this."""
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._read_task, self._write_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._read_task = None
        self._write_task = None

    def _fail_pongs(self, error: Exception) -> None:
        while self._pongs:
            waiter = self._pongs.popleft()
            if waiter is not None and not waiter.done():
                waiter.set_exception(error)

    async def _read_loop(self, connection: Connection) -> None:
        """Background task that reads and dispatches incoming protocol messages."""
        error: Exception | None = None
        try:
            while self._state is ClientState.CONNECTED:
                msg = await parse(connection)

                if msg is None:
                    logger.info("Connection closed by server")
                    break

                match msg:
                    case ("MSG", subject, sid, reply_to, payload):
                        logger.debug("<<- MSG %s %s %s %s", subject, sid, reply_to if reply_to else "", len(payload))
                        self._handle_msg(subject, sid, reply_to, payload)
                    case ("HMSG", subject, sid, reply_to, headers, payload, status_code, status_description):
                        logger.debug("<<- HMSG %s %s %s %s %s", subject, sid, reply_to, len(headers), len(payload))
                        self._handle_hmsg(subject, sid, reply_to, headers, payload, status_code, status_description)
                    case ("PING",):
                        logger.debug("<<- PING")
                        await self._handle_ping(connection)
                    case ("PONG",):
                        logger.debug("<<- PONG")
                        self._handle_pong()
                    case ("OK",):
                        logger.debug("<<- +OK")
                    case ("INFO", info):
                        logger.debug("<<- INFO %s...", json.dumps(info)[:80])
                        self._handle_info(info)
                    case ("ERR", text):
                        logger.error("<<- -ERR '%s'", text)
                        await self._handle_error(text)
        except asyncio.CancelledError:
            logger.debug("Read loop cancelled")
            return
        except (ParseError, ProtocolError) as e:
            logger.error("Protocol error: %s", e)
            error = e if isinstance(e, ProtocolError) else ProtocolError(str(e))
            self._emit(EventType.ERROR, error=error)
        except OSError as e:
            logger.info("Read loop exiting: %s", e)
            error = e
        except Exception as e:
            logger.exception("Error in read loop")
            error = e

        self._connection_lost(connection, error)

    async def _write_loop(self, connection: Connection) -> None:
        """Background task that handles periodic flushes and PINGs."""
        loop = asyncio.get_event_loop()
        try:
            while self._state is ClientState.CONNECTED:
                try:
                    await asyncio.wait_for(self._flush_waker.wait(), timeout=self._ping_interval)
                    self._flush_waker.clear()

                    current_time = loop.time()
                    since_last_flush = current_time - self._last_flush
                    if since_last_flush < self._min_flush_interval:
                        await asyncio.sleep(self._min_flush_interval - since_last_flush)

                    if self._pending:
                        await self._force_flush()
                        self._last_flush = current_time

                except asyncio.TimeoutError:
                    if loop.time() - self._last_ping_sent >= self._ping_interval:
                        if not self._queue_ping(connection):
                            break
                        await self._force_flush()

        except asyncio.CancelledError:
            logger.debug("Write loop cancelled")
            return

    def _queue_ping(self, connection: Connection) -> bool:
        """Queue a keep-alive PING.

        Returns:
            bool: True if a PING was queued, False if max outstanding PINGs reached.
        """
        if self._pings_outstanding >= self._max_outstanding_pings:
            logger.error("Max outstanding PINGs reached")
            self._connection_lost(connection, StaleConnectionError("Stale Connection"))
            return False

        self._pings_outstanding += 1
        self._last_ping_sent = asyncio.get_event_loop().time()
        self._pongs.append(None)
        logger.debug("->> PING")
        self._pending.append(FrameKind.CONTROL, encode_ping())
        return True

    async def _force_flush(self) -> None:
        """Write everything in the outbound buffer to the live connection."""
        connection = self._connection
        if not self._pending or connection is None or self._state is not ClientState.CONNECTED:
            return

        data = self._pending.take()
        try:
            await connection.write(data)
        except OSError as e:
            logger.error("Write failed: %s", e)
            self._connection_lost(connection, e)

    async def _handle_ping(self, connection: Connection) -> None:
        """Handle PING from server."""
        logger.debug("->> PONG")
        await connection.write(encode_pong())

    def _handle_pong(self) -> None:
        """Handle PONG from server; PONGs answer PINGs in order."""
        self._last_pong_received = asyncio.get_event_loop().time()
        self._pings_outstanding = 0
        if self._pongs:
            waiter = self._pongs.popleft()
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

    def _handle_msg(self, subject: str, sid: int, reply_to: str | None, payload: bytes) -> None:
        """Handle MSG from server."""
        self._stats_in_msgs += 1
        self._stats_in_bytes += len(payload)

        subscription = self._registry.get(sid)
        if subscription is None:
            logger.debug("Dropping message on %s for unknown sid %s", subject, sid)
            return

        self._dispatch(subscription, Message(subject=subject, data=payload, reply_to=reply_to))

    def _handle_hmsg(
        self,
        subject: str,
        sid: int,
        reply_to: str | None,
        headers: dict[str, list[str]],
        payload: bytes,
        status_code: str | None = None,
        status_description: str | None = None,
    ) -> None:
        """Handle HMSG from server."""
        self._stats_in_msgs += 1
        self._stats_in_bytes += len(payload)

        subscription = self._registry.get(sid)
        if subscription is None:
            logger.debug("Dropping message on %s for unknown sid %s", subject, sid)
            return

        status = None
        if status_code is not None:
            status = Status(code=status_code, description=status_description)

        message = Message(
            subject=subject,
            data=payload,
            reply_to=reply_to,
            headers=Headers(headers) if headers else None,  # type: ignore[arg-type]
            status=status,
        )
        self._dispatch(subscription, message)

    def _dispatch(self, subscription: Subscription, message: Message) -> None:
        """Deliver a message to its subscription, then apply the max_messages limit."""
        try:
            subscription._deliver(message)

            if subscription._slow_consumer_reported:
                subscription._slow_consumer_reported = False

        except (asyncio.QueueFull, ValueError):
            subscription._dropped_messages += 1
            subscription._dropped_bytes += len(message.data)

            pending_messages, pending_bytes = subscription.pending

            logger.warning(
                "Slow consumer on subject %s (sid %s): dropping message, %d pending messages, %d pending bytes",
                message.subject,
                subscription.sid,
                pending_messages,
                pending_bytes,
            )

            if not subscription._slow_consumer_reported:
                subscription._slow_consumer_reported = True
                error = SlowConsumerError(message.subject, subscription.sid, pending_messages, pending_bytes)
                self._emit(EventType.ERROR, error=error)

        if subscription._reached_limit():
            logger.debug("Subscription %s reached max messages (%s)", subscription.sid, subscription.max_messages)
            self._unsubscribe(subscription, immediate=False)

    def _handle_info(self, info: ProtocolServerInfo) -> None:
        """Handle INFO from server."""
        self._server_info = ServerInfo.from_protocol(info)
        # Update server pool with new cluster URLs from INFO
        if self._server_info.connect_urls:
            current = self._server_pool.current
            self._server_pool.add_discovered(
                self._server_info.connect_urls,
                default_scheme=current.scheme if current else "nats",
            )
        if self._server_info.ldm:
            logger.warning("Server %s entered lame duck mode", self._server_info.server_id)

    async def _handle_error(self, text: str) -> None:
        """Handle ERR from server."""
        self._last_error = text
        error = ServerError.from_text(text)

        match error:
            case PermissionsError(operation="subscription", subject=subject):
                for subscription in self._registry.by_subject(subject):
                    self._registry.remove(subscription.sid)
                    subscription._close(error=error)
            case PermissionsError(operation="publish", subject=subject):
                for sid, request_subject in list(self._requests.items()):
                    if request_subject == subject and (subscription := self._registry.get(sid)):
                        self._unsubscribe(subscription, error=error)

        self._emit(EventType.ERROR, error=error)

        if error.fatal:
            logger.error("Closing connection after fatal server error: %s", text)
            self._state = ClientState.DISCONNECTED
            await self._close(error)

    def _send(self, kind: FrameKind, data: bytes) -> bool:
        """Queue a frame for the live connection, or stage it until the next handshake.

        Returns:
            False if the frame was dropped.
        """
        match self._state:
            case ClientState.CONNECTED:
                self._pending.append(kind, data)
                self._flush_waker.set()
                return True
            case ClientState.CLOSED:
                raise ConnectionClosedError()
            case _ if kind is FrameKind.DATA and self._ever_connected:
                logger.debug("Dropping %d bytes published while %s", len(data), self._state.value)
                return False
            case _:
                if kind is FrameKind.DATA and self._pending.would_overflow(len(data)):
                    msg = "Outbound buffer is full, not connected yet"
                    raise OutboundBufferFullError(msg)
                self._pending.append(kind, data)
                return True

    async def flush(self, timeout: float | None = 10.0) -> None:
        """Flush pending writes and wait for the server to process them.

        Sends a PING and waits for the matching PONG. If the client is not
        connected, waits for the next connection first; if the connection
        drops mid-flush, tries again after reconnecting.

        Raises:
            ConnectionClosedError: If the client is or becomes closed
            TimeoutError: If no PONG arrives within ``timeout``
        """
        if self._state is ClientState.CLOSED:
            raise ConnectionClosedError()

        try:
            await asyncio.wait_for(self._flush(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("PONG not received within %ss", timeout)
            msg = f"Flush timed out after {timeout} seconds"
            raise TimeoutError(msg) from None

    async def _flush(self) -> None:
        loop = asyncio.get_event_loop()
        while True:
            await self._connected.wait()
            if self._state is not ClientState.CONNECTED:
                if self._state is ClientState.CLOSED:
                    raise ConnectionClosedError()
                continue

            waiter: asyncio.Future[None] = loop.create_future()
            self._pongs.append(waiter)
            logger.debug("->> PING")
            self._send(FrameKind.CONTROL, encode_ping())
            await self._force_flush()
            try:
                await waiter
                return
            except ConnectionLostError:
                logger.debug("Connection lost during flush, waiting for reconnect")

    async def publish(
        self,
        subject: str,
        payload: bytes = b"",
        *,
        reply_to: str | None = None,
        headers: Headers | dict[str, str | list[str]] | None = None,
    ) -> None:
        """Publish a message to a subject.

        Publishing is fire-and-forget. A message published while the client is
        reconnecting is silently dropped; check `is_connected` or use
        `request()` when delivery matters. Before the very first connection
        (see ``wait_on_first_connect``) messages are buffered instead.

        Raises:
            ConnectionClosedError: If the client is closed
            BadSubjectError: If the subject is empty or contains whitespace
            MaxPayloadError: If the payload exceeds the server's limit
        """
        if self._state is ClientState.CLOSED:
            raise ConnectionClosedError()
        if self._draining:
            raise ConnectionDrainingError()

        validate_publish_subject(subject)
        if reply_to is not None:
            validate_publish_subject(reply_to)
        if self._server_info is not None and len(payload) > self._server_info.max_payload:
            msg = f"Payload of {len(payload)} bytes exceeds server limit of {self._server_info.max_payload}"
            raise MaxPayloadError(msg)

        if headers:
            headers_dict = headers.asdict() if isinstance(headers, Headers) else headers
            command_parts = encode_hpub(
                subject,
                payload,
                reply_to=reply_to,
                headers=headers_dict,  # type: ignore[arg-type]
            )
        else:
            command_parts = encode_pub(
                subject,
                payload,
                reply_to=reply_to,
            )

        message_data = b"".join(command_parts)

        if self._state is ClientState.CONNECTED and self._pending.would_overflow(len(message_data)):
            await self._force_flush()

        if self._send(FrameKind.DATA, message_data):
            self._stats_out_msgs += 1
            self._stats_out_bytes += len(payload)

    async def subscribe(
        self,
        subject: str,
        *,
        queue_group: str = "",
        callback: Callable[[Message], None] | None = None,
        max_messages: int | None = None,
        max_pending_messages: int | None = 65536,
        max_pending_bytes: int | None = 64 * 1024 * 1024,
    ) -> Subscription:
        """Subscribe to a subject.

        The subscription is registered immediately and never waits on the
        network: when connected the SUB is queued for the write loop,
        otherwise it is sent by the replay after the next handshake.

        Args:
            subject: Subject to subscribe to; may contain wildcards
            queue_group: Optional queue group for load balancing
            callback: Deliver messages to this callback instead of the internal queue
            max_messages: Unsubscribe automatically after this many messages
            max_pending_messages: Queued messages before new ones are dropped
                (None for unlimited)
            max_pending_bytes: Queued bytes before new messages are dropped
                (None for unlimited)

        Raises:
            ConnectionClosedError: If the client is closed
            BadSubjectError: If the subject or queue group is malformed
        """
        if self._state is ClientState.CLOSED:
            raise ConnectionClosedError()
        if self._draining:
            raise ConnectionDrainingError()

        validate_subject(subject)
        validate_queue_group(queue_group)
        if max_messages is not None and max_messages < 1:
            raise ValueError("max_messages must be positive")

        sid = self._registry.allocate_sid()
        subscription = Subscription(
            subject,
            sid,
            queue_group,
            self,
            callback=callback,
            max_messages=max_messages,
            max_pending_messages=max_pending_messages,
            max_pending_bytes=max_pending_bytes,
        )
        self._registry.add(subscription)

        if queue_group:
            logger.debug("->> SUB %s %s %s", subject, queue_group, sid)
        else:
            logger.debug("->> SUB %s %s", subject, sid)

        self._send(FrameKind.CONTROL, encode_sub(subject, sid, queue_group))

        return subscription

    def _unsubscribe(
        self, subscription: Subscription, *, immediate: bool = True, error: Exception | None = None
    ) -> None:
        """Remove a subscription and send UNSUB for it.

        Args:
            subscription: The subscription to remove
            immediate: Discard queued messages instead of leaving them readable
            error: Raised to readers of the subscription instead of end-of-subscription
        """
        sid = subscription.sid
        if self._registry.remove(sid) is not None:
            self._requests.pop(sid, None)
            if self._state is not ClientState.CLOSED:
                logger.debug("->> UNSUB %s", sid)
                self._send(FrameKind.CONTROL, encode_unsub(sid))
        subscription._close(immediate=immediate, error=error)

    def new_inbox(self) -> str:
        """Generate a new inbox subject.

        Returns:
            A unique inbox subject using the configured inbox prefix
        """
        return f"{self._inbox_prefix}.{uuid.uuid4().hex}"

    async def request(
        self,
        subject: str,
        payload: bytes = b"",
        *,
        timeout: float = 2.0,
        headers: Headers | dict[str, str | list[str]] | None = None,
        return_on_error: bool = False,
    ) -> Message:
        """Send a request and wait for a response.

        Args:
            subject: The subject to send the request to
            payload: The request payload as bytes
            timeout: How long to wait for a response (default: 2.0 seconds)
            headers: Optional headers to include with the request
            return_on_error: If False (default), raises StatusError for error responses.
                           If True, returns the error response as a normal Message.

        Returns:
            The response message

        Raises:
            ConnectionClosedError: If the connection is closed
            TimeoutError: If no response is received within the timeout
            StatusError: If return_on_error=False and the response contains error status headers
            PermissionsError: If the server refuses the publish
        """
        if self._state is ClientState.CLOSED:
            raise ConnectionClosedError()

        inbox = self.new_inbox()
        logger.debug("Created inbox %s for request to %s", inbox, subject)

        sub = await self.subscribe(inbox, max_messages=1)
        self._requests[sub.sid] = subject
        try:
            await self.publish(subject, payload, reply_to=inbox, headers=headers)

            try:
                response = await sub.next(timeout)
            except asyncio.TimeoutError:
                logger.debug("Request timeout (%ss) on %s", timeout, subject)
                msg = "Request timeout"
                raise TimeoutError(msg) from None
            except RuntimeError:
                if self._state is ClientState.CLOSED:
                    raise ConnectionClosedError() from None
                raise

            if not return_on_error and response.status is not None and response.status.code != "200":
                status = response.status.code
                description = response.status.description or "Unknown error"
                raise StatusError.from_status(status, description, subject=subject)

            return response

        finally:
            self._requests.pop(sub.sid, None)
            if self._state is not ClientState.CLOSED:
                self._unsubscribe(sub)

    async def drain(self, timeout: float = 30.0) -> None:
        """Drain the connection.

        Draining a connection:
        1. Unsubscribes all subscriptions, leaving already queued messages readable
        2. Rejects new publishes and subscriptions
        3. Flushes pending writes
        4. Closes the connection

        This method is idempotent - calling it multiple times is safe and will not raise
        errors.

        Args:
            timeout: Maximum time to wait for drain to complete (default: 30.0 seconds)

        Raises:
            TimeoutError: If drain does not complete within the timeout
        """
        if self._state is ClientState.CLOSED or self._draining:
            return

        logger.info("Draining connection")
        self._draining = True

        # Disable reconnection during drain
        self._allow_reconnect = False

        try:
            subscriptions_to_drain = list(self._registry)
            if subscriptions_to_drain:
                logger.debug("Draining %s subscriptions", len(subscriptions_to_drain))
                for subscription in subscriptions_to_drain:
                    await subscription.drain()

            if self._state is ClientState.CONNECTED:
                await self.flush(timeout)

        except TimeoutError:
            logger.error("Drain timeout after %s seconds", timeout)
            await self.close()
            msg = f"Drain operation timed out after {timeout} seconds"
            raise TimeoutError(msg) from None
        except ConnectionClosedError:
            return

        await self.close()

    async def close(self) -> None:
        """Close the connection.

        Cancels any reconnection in progress, closes every subscription
        (discarding undelivered messages) and releases the transport. Calling
        close more than once is safe; only one CLOSED event is emitted.
        """
        if self._state is ClientState.CLOSED:
            await self._closed_event.wait()
            return

        await self._close()

    async def _close(self, error: Exception | None = None) -> None:
        if self._state is ClientState.CLOSED:
            return

        logger.info("Closing connection")
        self._state = ClientState.CLOSED
        self._allow_reconnect = False
        # Wake flush() waiters so they observe the closed state
        self._connected.set()

        current = asyncio.current_task()
        reconnect_task = self._reconnect_task
        if reconnect_task is not None and reconnect_task is not current and not reconnect_task.done():
            reconnect_task.cancel()
            await asyncio.gather(reconnect_task, return_exceptions=True)

        await self._stop_io()

        if self._connection is not None:
            # Give what is already buffered a last chance to go out
            if self._pending and self._connection.is_connected():
                try:
                    await self._connection.write(self._pending.take())
                except OSError:
                    logger.debug("Error during final flush", exc_info=True)
            await self._connection.close()
            self._connection = None

        subscriptions = self._registry.clear()
        if subscriptions:
            logger.debug("Closing %s subscriptions", len(subscriptions))
        for subscription in subscriptions:
            subscription._close(immediate=True)

        self._requests.clear()
        self._pending.clear()
        self._fail_pongs(ConnectionClosedError())
        self._flush_waker.set()

        self._emit(EventType.CLOSED, error=error)
        self._status_log.close()
        self._closed_event.set()

    async def __aenter__(self) -> Self:
        """Enter the async context manager."""
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: types.TracebackType | None
    ) -> None:
        """Exit the async context manager, closing the client connection."""
        await self.close()

    def add_disconnected_callback(self, callback: Callable[[], None]) -> None:
        """Add a callback to be invoked when the client is disconnected.

        Args:
            callback: Function to be called when disconnected
        """
        self._disconnected_callbacks.append(callback)

    def add_reconnected_callback(self, callback: Callable[[], None]) -> None:
        """Add a callback to be invoked when the client is reconnected.

        Args:
            callback: Function to be called when reconnected
        """
        self._reconnected_callbacks.append(callback)

    def add_error_callback(self, callback: Callable[[Exception], None]) -> None:
        """Add a callback to be invoked when the client encounters an error.

        Args:
            callback: Function to be called with the error
        """
        self._error_callbacks.append(callback)


async def connect(
    servers: str | list[str] = "nats://localhost:4222",
    *,
    timeout: float = 2.0,
    allow_reconnect: bool = True,
    reconnect_max_attempts: int = 10,
    reconnect_time_wait: float = 2.0,
    reconnect_time_wait_max: float = 10.0,
    reconnect_jitter: float = 0.1,
    reconnect_timeout: float | None = None,
    no_randomize: bool = False,
    wait_on_first_connect: bool = False,
    inbox_prefix: str = "_INBOX",
    ping_interval: float = 120.0,
    max_outstanding_pings: int = 2,
    max_pending_bytes: int = 1024 * 1024,
    max_pending_messages: int = 512,
    status_history: int = 1024,
    name: str | None = None,
    echo: bool = True,
    token: str | None = None,
    user: str | None = None,
    password: str | None = None,
    nkey_seed: str | None = None,
) -> Client:
    """Connect to a server.

    Args:
        servers: Server URL or list of URLs (``nats://``, ``tls://`` or bare ``host:port``)
        timeout: Connection timeout in seconds
        allow_reconnect: Whether to automatically reconnect if the connection is lost
        reconnect_max_attempts: Maximum number of reconnection attempts (-1 for unlimited, 0 disables)
        reconnect_time_wait: Initial wait time between reconnection attempts
        reconnect_time_wait_max: Maximum wait time between reconnection attempts
        reconnect_jitter: Jitter factor for reconnection attempts
        reconnect_timeout: Timeout for individual reconnection attempts (defaults to timeout value)
        no_randomize: Whether to disable randomizing the server pool
        wait_on_first_connect: Return a CONNECTING client instead of failing when no
            server is reachable; publishes are buffered until the first connection
        inbox_prefix: Prefix for inbox subjects (default: "_INBOX")
        ping_interval: Interval between PINGs in seconds (default: 120.0)
        max_outstanding_pings: Maximum number of outstanding PINGs before disconnecting (default: 2)
        max_pending_bytes: Bytes buffered before a publish forces a write
        max_pending_messages: Frames buffered before a publish forces a write
        status_history: Number of status events retained for observers
        name: Client name reported to the server
        echo: Whether the server may deliver the client's own publishes back to it
        token: Authentication token for the server
        user: Username for authentication
        password: Password for authentication
        nkey_seed: NKey seed for authentication

    Returns:
        Client instance

    Raises:
        TimeoutError: Connection timed out
        ConnectionError: Failed to connect
        ValueError: Invalid URL or option
    """
    urls = [servers] if isinstance(servers, str) else list(servers)
    server_pool = ServerPool(urls, randomize=not no_randomize)

    client = Client(
        server_pool,
        timeout=timeout,
        allow_reconnect=allow_reconnect,
        reconnect_max_attempts=reconnect_max_attempts,
        reconnect_time_wait=reconnect_time_wait,
        reconnect_time_wait_max=reconnect_time_wait_max,
        reconnect_jitter=reconnect_jitter,
        reconnect_timeout=reconnect_timeout,
        inbox_prefix=inbox_prefix,
        ping_interval=ping_interval,
        max_outstanding_pings=max_outstanding_pings,
        max_pending_bytes=max_pending_bytes,
        max_pending_messages=max_pending_messages,
        status_history=status_history,
        name=name,
        echo=echo,
        token=token,
        user=user,
        password=password,
        nkey_seed=nkey_seed,
    )

    await client._connect(wait_on_first_connect=wait_on_first_connect)

    return client


__all__ = [
    "__version__",
    "AuthorizationError",
    "BadSubjectError",
    "Client",
    "ClientError",
    "ClientState",
    "ClientStatistics",
    "ConnectionClosedError",
    "ConnectionDrainingError",
    "EventType",
    "Headers",
    "MaxPayloadError",
    "Message",
    "NoRespondersError",
    "NoServersError",
    "PermissionsError",
    "ServerError",
    "ServerInfo",
    "SlowConsumerError",
    "Status",
    "StatusError",
    "StatusEvent",
    "Subscription",
    "connect",
]
