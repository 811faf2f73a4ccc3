"""Subject and queue group validation.

Subjects are dot-separated tokens. ``*`` matches exactly one token and ``>``
matches one or more trailing tokens; both must occupy a whole token, and
``>`` may only be the last one. Matching itself is done by the server.
"""

from __future__ import annotations

from tether.client.errors import BadSubjectError

_WHITESPACE = frozenset(" \t\r\n")


def _check_whitespace(value: str, what: str) -> None:
    if any(ch in _WHITESPACE for ch in value):
        raise BadSubjectError(f"{what} cannot contain whitespace: {value!r}")


def validate_subject(subject: str) -> None:
    """Validate a subscription subject, which may contain wildcards."""
    if not subject:
        raise BadSubjectError("Subject cannot be empty")
    _check_whitespace(subject, "Subject")

    tokens = subject.split(".")
    for index, token in enumerate(tokens):
        if not token:
            raise BadSubjectError(f"Subject contains an empty token: {subject!r}")
        if token == ">":
            if index != len(tokens) - 1:
                raise BadSubjectError(f"'>' must be the last token: {subject!r}")
        elif ("*" in token or ">" in token) and token != "*":
            raise BadSubjectError(f"Wildcards must occupy a full token: {subject!r}")


def validate_publish_subject(subject: str) -> None:
    """Validate a subject used for publishing or as a reply address."""
    if not subject:
        raise BadSubjectError("Subject cannot be empty")
    _check_whitespace(subject, "Subject")


def validate_queue_group(queue_group: str) -> None:
    if queue_group:
        _check_whitespace(queue_group, "Queue group")
