"""Typed dictionaries for the JSON bodies carried by INFO and CONNECT."""

from __future__ import annotations

from typing import NotRequired, TypedDict


class ServerInfo(TypedDict):
    """Body of the INFO frame sent by the server."""

    server_id: str
    version: str
    go: str
    host: str
    port: int
    headers: bool
    max_payload: int
    proto: NotRequired[int]
    auth_required: NotRequired[bool]
    tls_required: NotRequired[bool]
    tls_verify: NotRequired[bool]
    client_id: NotRequired[int]
    connect_urls: NotRequired[list[str]]
    jetstream: NotRequired[bool]
    nonce: NotRequired[str]
    ldm: NotRequired[bool]


class ConnectInfo(TypedDict):
    """Body of the CONNECT frame sent by the client."""

    verbose: bool
    pedantic: bool
    tls_required: bool
    lang: str
    version: str
    protocol: int
    headers: bool
    no_responders: NotRequired[bool]
    echo: NotRequired[bool]
    name: NotRequired[str]
    auth_token: NotRequired[str]
    user: NotRequired[str]
    password: NotRequired[str]
    nkey: NotRequired[str]
    sig: NotRequired[str]
