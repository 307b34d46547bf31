from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

SRC = str(Path(__file__).resolve().parents[1] / "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

TOKEN = "0123456789abcdef" * 4


class StubController:
    """Stands in for the display controller's HTTP API."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.body = b"[]"
        self.headers = {"content-type": "application/json"}
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status, content=self.body, headers=self.headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def last(self) -> httpx.Request:
        assert self.requests, "controller was never called"
        return self.requests[-1]


@pytest.fixture
def controller() -> StubController:
    return StubController()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def make_app(tmp_path, controller):
    from build_info import BuildInfo
    from config_store import Config
    from server_async import create_app

    def _make(**overrides):
        activity = overrides.pop("activity", None)
        cfg = Config(children_file=str(tmp_path / "children.json"), **overrides)
        build = BuildInfo(version="1.3.0", commit="abc1234", date="2026-01-01")
        return create_app(cfg, TOKEN, build, client=controller.client(), activity=activity)

    return _make


@pytest.fixture
def client(make_app):
    from fastapi.testclient import TestClient

    with TestClient(make_app()) as c:
        yield c
