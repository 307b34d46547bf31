#!/usr/bin/env python3
"""
Generic pass-through to the controller API: /api/<anything> -> <controller>/<anything>.

Used by clients that talk to the controller API directly (the named-action
relay in message_relay covers the phone UI).
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from message_relay import DEFAULT_TIMEOUT, ClientDisconnected, until_disconnect
from relay_common import log_debug, log_error

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "trailers", "transfer-encoding", "upgrade",
}
# Never forwarded upstream: recomputed by the client, or our own credential
REQUEST_DROP = HOP_BY_HOP | {"host", "content-length", "authorization"}
# httpx hands us the decoded body, so length/encoding are recomputed here
RESPONSE_DROP = HOP_BY_HOP | {"content-length", "content-encoding"}


def rewrite_path(path: str, raw_path: Optional[bytes], prefix: str) -> Tuple[str, bytes]:
    """
    Strip prefix from the decoded path and from the percent-encoded path.
    "/api/v1/message/Name%20X/clear" -> ("/v1/message/Name X/clear", b"/v1/message/Name%20X/clear")
    """
    def strip(p: str) -> str:
        if p == prefix:
            return "/"
        if p.startswith(prefix + "/"):
            return p[len(prefix):]
        return p

    new_path = strip(path)
    if raw_path:
        new_raw = strip(raw_path.decode("latin-1")).encode("latin-1")
    else:
        new_raw = quote(new_path, safe="/:@!$&'()*+,;=-._~").encode("ascii")
    return new_path, new_raw


def _filter(pairs, drop) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers, including any named in Connection."""
    pairs = list(pairs)
    connection_tokens = set()
    for key, value in pairs:
        if key.lower() == "connection":
            connection_tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return [
        (k, v) for k, v in pairs
        if k.lower() not in drop and k.lower() not in connection_tokens
    ]


class ApiProxy:
    def __init__(self, controller_url: str, client: httpx.AsyncClient,
                 prefix: str = "/api", timeout: float = DEFAULT_TIMEOUT):
        self.controller_url = httpx.URL(controller_url)
        self.prefix = prefix.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _target(self, request: Request) -> httpx.URL:
        _, raw = rewrite_path(request.scope["path"], request.scope.get("raw_path"), self.prefix)
        query = request.scope.get("query_string") or b""
        if query:
            raw += b"?" + query
        return self.controller_url.copy_with(raw_path=raw)

    def _upstream_headers(self, request: Request) -> List[Tuple[str, str]]:
        headers = _filter(request.headers.items(), REQUEST_DROP)
        client_ip = request.client.host if request.client else None
        if client_ip:
            prior = request.headers.get("x-forwarded-for")
            headers = [(k, v) for k, v in headers if k.lower() != "x-forwarded-for"]
            headers.append(("x-forwarded-for", f"{prior}, {client_ip}" if prior else client_ip))
        return headers

    async def _send(self, method: str, url: httpx.URL, headers, body: bytes) -> httpx.Response:
        return await asyncio.wait_for(
            self._client.request(method, url, headers=headers, content=body, timeout=self.timeout),
            self.timeout,
        )

    async def forward(self, request: Request) -> Response:
        body = await request.body()
        try:
            url = self._target(request)
            upstream = await until_disconnect(
                request, self._send(request.method, url, self._upstream_headers(request), body)
            )
        except ClientDisconnected:
            log_debug(f"[Proxy] {request.method} {request.url.path}: client went away")
            return Response(status_code=499)
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            log_error(f"[Proxy] {request.method} {request.url.path}: {type(e).__name__}: {e}")
            return JSONResponse({"error": "display controller is not reachable"}, status_code=502)

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for key, value in _filter(upstream.headers.multi_items(), RESPONSE_DROP):
            response.headers.append(key, value)
        return response


def build_api_router(proxy: ApiProxy) -> APIRouter:
    router = APIRouter()

    @router.api_route(proxy.prefix + "/{path:path}", methods=PROXY_METHODS)
    async def forward(request: Request):
        return await proxy.forward(request)

    return router
