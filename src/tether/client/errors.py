"""Client error classes."""

from __future__ import annotations

import re


class ClientError(Exception):
    """Base class for errors raised by the client."""


class ConnectionClosedError(ClientError):
    """Raised when operating on a closed client."""

    def __init__(self, message: str = "Connection is closed") -> None:
        super().__init__(message)


class ConnectionDrainingError(ClientError):
    """Raised when publishing or subscribing while the client drains."""

    def __init__(self, message: str = "Connection is draining") -> None:
        super().__init__(message)


class ConnectionLostError(ClientError):
    """The connection dropped before an in-flight operation completed."""


class BadSubjectError(ClientError, ValueError):
    """Raised for an empty or malformed subject or queue group."""


class MaxPayloadError(ClientError, ValueError):
    """Raised when a payload exceeds the server's max_payload."""


class OutboundBufferFullError(ClientError):
    """Raised when the staging buffer cannot take more data before the first connect."""


class ProtocolError(ClientError):
    """The server sent bytes that could not be parsed."""


class NoServersError(ClientError):
    """No server could be reached within the reconnection policy."""


class SlowConsumerError(ClientError):
    """A subscription dropped messages because its pending limits were reached."""

    subject: str
    sid: int
    pending_messages: int
    pending_bytes: int

    def __init__(self, subject: str, sid: int, pending_messages: int, pending_bytes: int) -> None:
        self.subject = subject
        self.sid = sid
        self.pending_messages = pending_messages
        self.pending_bytes = pending_bytes
        super().__init__(
            f"Slow consumer on subject {subject} (sid {sid}): "
            f"{pending_messages} pending messages, {pending_bytes} pending bytes"
        )


_PERMISSIONS_PATTERN = re.compile(r'^permissions violation for (publish|subscription) to "([^"]+)"', re.IGNORECASE)

_AUTHORIZATION_ERRORS = (
    "authorization violation",
    "authentication timeout",
    "user authentication expired",
    "user authentication revoked",
    "account authentication expired",
)

_RECOVERABLE_ERRORS = ("invalid subject",)


class ServerError(ClientError):
    """An error reported by the server in an ERR frame.

    Attributes:
        text: The error text as sent by the server.
        fatal: Whether the error terminates the client.
    """

    text: str
    fatal: bool = True

    def __init__(self, text: str, *, fatal: bool | None = None) -> None:
        self.text = text
        if fatal is not None:
            self.fatal = fatal
        super().__init__(text)

    @classmethod
    def from_text(cls, text: str) -> ServerError:
        """Classify an ERR frame's text into the appropriate ServerError subclass."""
        lowered = text.strip().strip("'").lower()

        if match := _PERMISSIONS_PATTERN.match(text.strip().strip("'")):
            operation, subject = match.groups()
            return PermissionsError(text, operation=operation.lower(), subject=subject)

        if lowered.startswith("stale connection"):
            return StaleConnectionError(text)

        if lowered.startswith(_AUTHORIZATION_ERRORS):
            return AuthorizationError(text)

        if lowered.startswith(_RECOVERABLE_ERRORS):
            return cls(text, fatal=False)

        return cls(text)


class AuthorizationError(ServerError):
    """The server rejected the client's credentials."""

    fatal = True


class PermissionsError(ServerError):
    """The server refused a publish or subscription for lack of permission."""

    fatal = False
    operation: str
    subject: str

    def __init__(self, text: str, *, operation: str, subject: str) -> None:
        self.operation = operation
        self.subject = subject
        super().__init__(text)


class StaleConnectionError(ServerError):
    """The connection stopped answering PINGs."""

    fatal = False


class StatusError(Exception):
    """Base class for status-related errors carried in reply headers."""

    status: str
    description: str
    subject: str | None

    def __init__(self, status: str, description: str, subject: str | None = None) -> None:
        """Initialize StatusError.

        Args:
            status: The error status code
            description: Human-readable error description
            subject: The subject that caused the error (optional)
        """
        self.status = status
        self.description = description
        self.subject = subject
        super().__init__(f"{status}: {description}")

    @classmethod
    def from_status(cls, status: str, description: str, *, subject: str | None = None) -> StatusError:
        """Create appropriate StatusError subclass based on status code.

        Args:
            status: The error status code
            description: Human-readable error description
            subject: The subject that caused the error (optional)

        Returns:
            Appropriate StatusError subclass instance
        """
        match status:
            case "503":
                return NoRespondersError(status, description, subject)
            case _:
                return cls(status, description, subject)


class NoRespondersError(StatusError):
    """Error raised when no responders are available (503)."""
