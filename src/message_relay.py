#!/usr/bin/env python3
"""
Named-action relay to the presentation controller.

The phone only ever says "send <name>", "clear" or "test"; this module turns
those into the controller's message API calls:

    POST <controller>/v1/message/<message>/trigger   [{"name":"Name","text":{"text":"<child>"}}]
    GET  <controller>/v1/message/<message>/clear
    GET  <controller>/v1/messages

Every outbound call runs under one deadline and is cancelled when the phone
goes away before the controller answers.
"""

from __future__ import annotations

import asyncio
import json
from typing import Tuple
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from relay_common import log_debug, log_info, log_warning, read_name

DEFAULT_TIMEOUT = 10.0
DISCONNECT_POLL_INTERVAL = 0.25

# Shown to the phone; fixed texts so nothing from the controller leaks through
MSG_UNREACHABLE = "display controller is not reachable"
MSG_SEND_REJECTED = "display controller rejected the message"
MSG_CLEAR_REJECTED = "display controller could not clear the message"
MSG_TEST_REJECTED = "display controller refused the connection test"
MSG_INTERNAL = "could not build controller request"


class RelayError(Exception):
    status_code = 503


class UpstreamUnavailable(RelayError):
    """Controller unreachable or too slow."""


class UpstreamRejected(RelayError):
    """Controller answered with status >= 400."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class RelayInternalError(RelayError):
    status_code = 500


class ClientDisconnected(Exception):
    pass


def build_trigger_payload(name: str) -> bytes:
    """Body for the trigger call; the encoder takes care of quotes, backslashes and control characters."""
    payload = [{"name": "Name", "text": {"text": name}}]
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class MessageRelay:
    def __init__(self, controller_url: str, message_name: str, client: httpx.AsyncClient,
                 activity=None, timeout: float = DEFAULT_TIMEOUT):
        self.controller_url = controller_url.rstrip("/")
        self.message_name = message_name
        self.timeout = timeout
        self._client = client
        self._activity = activity

    def _message_url(self, action: str) -> str:
        return f"{self.controller_url}/v1/message/{quote(self.message_name, safe='')}/{action}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await asyncio.wait_for(
                self._client.request(method, url, timeout=self.timeout, **kwargs),
                self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(f"{method} {url}: no answer within {self.timeout:g}s") from e
        except httpx.InvalidURL as e:
            raise RelayInternalError(f"{method} {url}: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"{method} {url}: {e}") from e
        if response.status_code >= 400:
            raise UpstreamRejected(f"{method} {url}: status {response.status_code}", response.status_code)
        return response

    def _record(self, action: str, name: str = "") -> None:
        if self._activity is None:
            return
        try:
            self._activity.log(action, name)
        except Exception as e:
            log_debug(f"[Activity] {action!r} not recorded: {e}")

    async def send(self, name: str) -> None:
        await self._request(
            "POST", self._message_url("trigger"),
            content=build_trigger_payload(name),
            headers={"Content-Type": "application/json"},
        )
        self._record("send", name)

    async def clear(self) -> None:
        await self._request("GET", self._message_url("clear"))
        self._record("clear")

    async def list_messages(self) -> Tuple[int, bytes]:
        """(status, body) of the controller's message list.

        A body that is not valid JSON (an empty 204 included) becomes "[]"
        with status 200.
        """
        response = await self._request("GET", f"{self.controller_url}/v1/messages")
        body = response.content
        try:
            json.loads(body)
        except ValueError:
            return 200, b"[]"
        return response.status_code, body


async def until_disconnect(request: Request, coro):
    """Await coro, cancelling it if the client disconnects first."""
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


async def _relay(request: Request, coro, action: str, rejected_message: str):
    """Run a relay call; returns (result, None) or (None, error response)."""
    try:
        return await until_disconnect(request, coro), None
    except ClientDisconnected:
        log_debug(f"[Relay] {action}: client went away, controller call cancelled")
        return None, Response(status_code=499)
    except UpstreamRejected as e:
        log_warning(f"[Relay] {action} rejected: {e}")
        return None, JSONResponse({"error": rejected_message}, status_code=e.status_code)
    except UpstreamUnavailable as e:
        log_warning(f"[Relay] {action} failed: {e}")
        return None, JSONResponse({"error": MSG_UNREACHABLE}, status_code=e.status_code)
    except RelayInternalError as e:
        log_warning(f"[Relay] {action} failed: {e}")
        return None, JSONResponse({"error": MSG_INTERNAL}, status_code=e.status_code)


def build_message_router(relay: MessageRelay, auto_clear_seconds: int) -> APIRouter:
    router = APIRouter(prefix="/message")

    @router.post("/send")
    async def send_message(request: Request):
        name, error = await read_name(request)
        if error is not None:
            return error
        _, error = await _relay(request, relay.send(name), "send", MSG_SEND_REJECTED)
        if error is not None:
            return error
        log_info(f"[Relay] Shown: {name!r}")
        return Response(status_code=204)

    @router.post("/clear")
    async def clear_message(request: Request):
        _, error = await _relay(request, relay.clear(), "clear", MSG_CLEAR_REJECTED)
        if error is not None:
            return error
        log_info("[Relay] Cleared")
        return Response(status_code=204)

    @router.get("/test")
    async def test_connection(request: Request):
        result, error = await _relay(request, relay.list_messages(), "test", MSG_TEST_REJECTED)
        if error is not None:
            return error
        status, body = result
        return Response(content=body, status_code=status, media_type="application/json")

    @router.get("/config")
    def client_config():
        return {"autoClearSeconds": auto_clear_seconds}

    return router
