#!/usr/bin/env python3
"""
Shared-secret bearer authentication.

Only paths under a protected prefix need the token; the web app itself
(index page, script, manifest) stays public so a phone can load it and
pick the token up from the URL fragment.
"""

from __future__ import annotations

import secrets
from typing import Iterable, Tuple

from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from relay_common import log_debug

PROTECTED_PREFIXES: Tuple[str, ...] = ("/message/", "/children", "/api/")

_BEARER = "bearer "


class EntropyError(RuntimeError):
    """The OS random source is unavailable; no service should run with a broken secret."""


def generate_token() -> str:
    """32 random bytes as lowercase hex (64 characters)."""
    try:
        return secrets.token_hex(32)
    except NotImplementedError as e:
        raise EntropyError(f"generating auth token: {e}") from e


def is_protected(path: str, prefixes: Iterable[str]) -> bool:
    return any(path.startswith(p) for p in prefixes)


def extract_bearer_token(value: str) -> str:
    """Credential from an Authorization header value, "" if missing or malformed."""
    if len(value) > len(_BEARER) and value[:len(_BEARER)].lower() == _BEARER:
        return value[len(_BEARER):]
    return ""


def _authorization_header(scope: Scope) -> str:
    for name, value in scope.get("headers", ()):
        if name.lower() == b"authorization":
            return value.decode("latin-1")
    return ""


class BearerAuthMiddleware:
    """ASGI middleware: 401 on protected paths unless the bearer token matches."""

    def __init__(self, app: ASGIApp, token: str, protected_prefixes: Iterable[str] = PROTECTED_PREFIXES):
        self.app = app
        self._token = token.encode("utf-8")
        self.protected_prefixes = tuple(protected_prefixes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not is_protected(scope["path"], self.protected_prefixes):
            await self.app(scope, receive, send)
            return

        provided = extract_bearer_token(_authorization_header(scope)).encode("utf-8")
        if not secrets.compare_digest(provided, self._token):
            client = scope.get("client") or ("?", 0)
            log_debug(f"[Auth] Rejected {scope['method']} {scope['path']} from {client[0]}")
            response = PlainTextResponse("unauthorized", status_code=401)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
