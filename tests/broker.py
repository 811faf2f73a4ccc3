"""In-process broker for tests.

Speaks enough of the server side of the protocol to exercise the client:
INFO/CONNECT/PING handshake, SUB/UNSUB with wildcards and queue groups,
PUB/HPUB routing, no-responders replies, token and NKey authentication and
permission violations. Every client operation is recorded in ``log`` so
tests can assert on what actually reached the wire.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import random
import uuid
from dataclasses import dataclass, field

import nkeys

NO_RESPONDERS_HEADER = b"NATS/1.0 503\r\n\r\n"


def subject_matches(pattern: str, subject: str) -> bool:
    pattern_tokens = pattern.split(".")
    subject_tokens = subject.split(".")
    for i, token in enumerate(pattern_tokens):
        if token == ">":
            return len(subject_tokens) > i
        if i >= len(subject_tokens):
            return False
        if token != "*" and token != subject_tokens[i]:
            return False
    return len(pattern_tokens) == len(subject_tokens)


def encode_msg(subject: str, sid: str, reply_to: str | None, headers: bytes | None, payload: bytes) -> bytes:
    reply = f"{reply_to} " if reply_to else ""
    if headers is None:
        return f"MSG {subject} {sid} {reply}{len(payload)}\r\n".encode() + payload + b"\r\n"
    total = len(headers) + len(payload)
    return f"HMSG {subject} {sid} {reply}{len(headers)} {total}\r\n".encode() + headers + payload + b"\r\n"


@dataclass
class BrokerConnection:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    subs: dict[str, tuple[str, str | None]] = field(default_factory=dict)
    connect_info: dict = field(default_factory=dict)

    @property
    def echo(self) -> bool:
        return self.connect_info.get("echo", True)

    def send(self, data: bytes) -> None:
        if not self.writer.is_closing():
            self.writer.write(data)


class Broker:
    """A single-node broker listening on localhost."""

    def __init__(
        self,
        *,
        token: str | None = None,
        nkey_seed: str | None = None,
        deny_subscribe: tuple[str, ...] = (),
        deny_publish: tuple[str, ...] = (),
        connect_urls: list[str] | None = None,
        answer_pings: bool = True,
        max_payload: int = 1048576,
    ):
        self.token = token
        self.nkey = nkeys.from_seed(nkey_seed.encode()) if nkey_seed else None
        self.nonce = uuid.uuid4().hex if nkey_seed else None
        self.deny_subscribe = set(deny_subscribe)
        self.deny_publish = set(deny_publish)
        self.connect_urls = connect_urls
        self.answer_pings = answer_pings
        self.max_payload = max_payload
        self.server_id = uuid.uuid4().hex
        self.log: list[tuple[str, str]] = []
        self.connects: list[dict] = []
        self.connections: list[BrokerConnection] = []
        self.port = 0
        self._server: asyncio.Server | None = None

    @property
    def client_url(self) -> str:
        return f"nats://127.0.0.1:{self.port}"

    def ops(self, op: str) -> list[str]:
        """Arguments of every logged operation named ``op``."""
        return [args for logged_op, args in self.log if logged_op == op]

    async def start(self, port: int = 0) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]

    async def shutdown(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        self.drop_connections()
        await server.wait_closed()

    def drop_connections(self) -> None:
        """Close every client connection while continuing to accept new ones."""
        for connection in list(self.connections):
            connection.writer.close()

    def send_raw(self, data: bytes) -> None:
        for connection in list(self.connections):
            connection.send(data)

    async def wait_for_op(self, op: str, count: int = 1, timeout: float = 1.0) -> list[str]:
        async def poll() -> list[str]:
            while len(self.ops(op)) < count:
                await asyncio.sleep(0.01)
            return self.ops(op)

        return await asyncio.wait_for(poll(), timeout)

    def _info(self) -> bytes:
        info = {
            "server_id": self.server_id,
            "version": "2.10.0",
            "go": "go1.22",
            "host": "127.0.0.1",
            "port": self.port,
            "headers": True,
            "max_payload": self.max_payload,
            "proto": 1,
            "auth_required": self.token is not None or self.nkey is not None,
        }
        if self.nonce:
            info["nonce"] = self.nonce
        if self.connect_urls:
            info["connect_urls"] = self.connect_urls
        return b"INFO " + json.dumps(info).encode() + b"\r\n"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection = BrokerConnection(reader, writer)
        self.connections.append(connection)
        try:
            connection.send(self._info())
            await writer.drain()
            while True:
                line = await reader.readline()
                if not line:
                    break
                op, _, args = line.rstrip(b"\r\n").decode().partition(" ")
                op = op.upper()
                self.log.append((op, args))
                if not await self._dispatch(connection, op, args):
                    break
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            self.connections.remove(connection)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def _dispatch(self, connection: BrokerConnection, op: str, args: str) -> bool:
        match op:
            case "CONNECT":
                connection.connect_info = json.loads(args)
                self.connects.append(connection.connect_info)
                if not self._authorized(connection.connect_info):
                    connection.send(b"-ERR 'Authorization Violation'\r\n")
                    await connection.writer.drain()
                    return False
            case "PING":
                if self.answer_pings:
                    connection.send(b"PONG\r\n")
            case "SUB":
                parts = args.split()
                subject, sid = parts[0], parts[-1]
                queue = parts[1] if len(parts) == 3 else None
                if subject in self.deny_subscribe:
                    connection.send(f"-ERR 'Permissions Violation for Subscription to \"{subject}\"'\r\n".encode())
                else:
                    connection.subs[sid] = (subject, queue)
            case "UNSUB":
                connection.subs.pop(args.split()[0], None)
            case "PUB":
                parts = args.split()
                size = int(parts[-1])
                reply_to = parts[1] if len(parts) == 3 else None
                payload = (await connection.reader.readexactly(size + 2))[:-2]
                self._route(connection, parts[0], reply_to, None, payload)
            case "HPUB":
                parts = args.split()
                header_size, total_size = int(parts[-2]), int(parts[-1])
                reply_to = parts[1] if len(parts) == 4 else None
                data = (await connection.reader.readexactly(total_size + 2))[:-2]
                self._route(connection, parts[0], reply_to, data[:header_size], data[header_size:])
        return True

    def _authorized(self, connect_info: dict) -> bool:
        if self.token is not None and connect_info.get("auth_token") != self.token:
            return False
        if self.nkey is not None:
            if connect_info.get("nkey") != self.nkey.public_key.decode() or "sig" not in connect_info:
                return False
            try:
                self.nkey.verify(self.nonce.encode(), base64.b64decode(connect_info["sig"]))
            except Exception:
                return False
        return True

    def _route(
        self,
        sender: BrokerConnection,
        subject: str,
        reply_to: str | None,
        headers: bytes | None,
        payload: bytes,
    ) -> None:
        if subject in self.deny_publish:
            sender.send(f"-ERR 'Permissions Violation for Publish to \"{subject}\"'\r\n".encode())
            return

        delivered = False
        groups: dict[str, list[tuple[BrokerConnection, str]]] = {}
        for connection in list(self.connections):
            if connection is sender and not connection.echo:
                continue
            for sid, (pattern, queue) in connection.subs.items():
                if not subject_matches(pattern, subject):
                    continue
                if queue:
                    groups.setdefault(queue, []).append((connection, sid))
                    continue
                connection.send(encode_msg(subject, sid, reply_to, headers, payload))
                delivered = True

        for members in groups.values():
            connection, sid = random.choice(members)
            connection.send(encode_msg(subject, sid, reply_to, headers, payload))
            delivered = True

        if not delivered and reply_to and sender.connect_info.get("no_responders"):
            for sid, (pattern, _) in sender.subs.items():
                if subject_matches(pattern, reply_to):
                    sender.send(encode_msg(reply_to, sid, None, NO_RESPONDERS_HEADER, b""))


async def run(port: int = 0, **options) -> Broker:
    broker = Broker(**options)
    await broker.start(port)
    return broker
