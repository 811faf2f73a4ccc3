"""Server pool management.

The pool is an ordered list of candidate servers walked round-robin. Servers
learned from INFO ``connect_urls`` are appended, and a server that rejects the
client's credentials during a reconnect is marked failed and skipped from
then on.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4222
SCHEMES = ("nats", "tls")


@dataclass(slots=True)
class Server:
    """A candidate server address."""

    scheme: str
    host: str
    port: int
    discovered: bool = False
    failed: bool = False
    did_connect: bool = False

    @property
    def address(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.address}"

    def __str__(self) -> str:
        return self.url


def parse_server_url(server: str, *, default_scheme: str = "nats") -> Server:
    """Parse a server URL or bare ``host[:port]`` into a Server.

    Bare IPv6 literals with a port (``::1:4222``) are accepted as well as the
    bracketed form.

    Raises:
        ValueError: If the scheme is unsupported or the host is missing.
    """
    if "://" not in server:
        if not server.startswith("[") and server.count(":") > 1:
            last_colon = server.rfind(":")
            try:
                port_val = int(server[last_colon + 1 :])
                if 0 <= port_val <= 65535:
                    server = f"[{server[:last_colon]}]:{port_val}"
                else:
                    server = f"[{server}]"
            except ValueError:
                server = f"[{server}]"
        server = f"{default_scheme}://{server}"

    parsed_url = urlparse(server)
    if parsed_url.scheme not in SCHEMES:
        msg = "URL scheme must be 'nats://' or 'tls://'"
        raise ValueError(msg)

    host = parsed_url.hostname
    if not host:
        msg = f"Failed to parse hostname from server URL: {server}"
        raise ValueError(msg)

    return Server(scheme=parsed_url.scheme, host=host, port=parsed_url.port or DEFAULT_PORT)


class ServerPool:
    """Ordered, round-robin pool of servers."""

    _servers: list[Server]
    _index: int

    def __init__(self, urls: list[str], *, randomize: bool = True):
        if not urls:
            msg = "At least one server URL is required"
            raise ValueError(msg)

        servers = []
        for url in urls:
            server = parse_server_url(url)
            if not any(existing.address == server.address for existing in servers):
                servers.append(server)

        if randomize and len(servers) > 1:
            # Keep the first server, shuffle the rest
            tail = servers[1:]
            random.shuffle(tail)
            servers = [servers[0], *tail]

        self._servers = servers
        self._index = -1

    def __len__(self) -> int:
        return len(self._servers)

    def __iter__(self):
        return iter(list(self._servers))

    @property
    def current(self) -> Server | None:
        if self._index < 0:
            return None
        return self._servers[self._index]

    def next(self) -> Server | None:
        """Advance to the next usable server, or None if every server has failed."""
        for _ in range(len(self._servers)):
            self._index = (self._index + 1) % len(self._servers)
            server = self._servers[self._index]
            if not server.failed:
                return server
        return None

    def mark_failed(self, server: Server) -> None:
        logger.warning("Marking server %s as failed", server)
        server.failed = True

    def add_discovered(self, urls: list[str], *, default_scheme: str = "nats") -> list[Server]:
        """Add servers learned from INFO, skipping known addresses.

        Returns:
            The servers that were added.
        """
        added = []
        known = {server.address for server in self._servers}
        for url in urls:
            try:
                server = parse_server_url(url, default_scheme=default_scheme)
            except ValueError:
                logger.warning("Ignoring invalid discovered server URL: %s", url)
                continue
            if server.address in known:
                continue
            server.discovered = True
            known.add(server.address)
            self._servers.append(server)
            added.append(server)
        if added:
            logger.info("Discovered servers: %s", ", ".join(str(server) for server in added))
        return added
