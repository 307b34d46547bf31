from __future__ import annotations

import re

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import auth_gate
from auth_gate import BearerAuthMiddleware, EntropyError, extract_bearer_token, generate_token, is_protected


def _app(token: str = "secret") -> TestClient:
    app = FastAPI()
    app.add_middleware(BearerAuthMiddleware, token=token, protected_prefixes=("/message/", "/children"))

    @app.get("/children")
    def children():
        return ["Anna"]

    @app.get("/message/config")
    def config():
        return {"ok": True}

    @app.get("/")
    def index():
        return {"page": "index"}

    return TestClient(app)


def test_generated_token_is_64_hex_chars():
    token = generate_token()

    assert re.fullmatch(r"[0-9a-f]{64}", token)
    assert generate_token() != token


def test_entropy_failure_is_reported(monkeypatch):
    def broken(nbytes=None):
        raise NotImplementedError("no random source")

    monkeypatch.setattr(auth_gate.secrets, "token_hex", broken)

    with pytest.raises(EntropyError):
        generate_token()


@pytest.mark.parametrize("header,expected", [
    ("Bearer abc", "abc"),
    ("bearer abc", "abc"),
    ("BEARER abc", "abc"),
    ("Bearer ", ""),
    ("Bearer", ""),
    ("Basic abc", ""),
    ("", ""),
    ("Bearer  abc", " abc"),
])
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_is_protected_is_a_plain_prefix_match():
    prefixes = ("/message/", "/children")

    assert is_protected("/children", prefixes)
    assert is_protected("/childrenfoo", prefixes)
    assert is_protected("/message/send", prefixes)
    assert not is_protected("/message", prefixes)
    assert not is_protected("/", prefixes)


def test_protected_path_requires_token():
    c = _app()

    r = c.get("/children")
    assert r.status_code == 401
    assert r.text == "unauthorized"

    assert c.get("/children", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert c.get("/children", headers={"Authorization": "secret"}).status_code == 401


def test_correct_token_passes_any_case_scheme():
    c = _app()

    for scheme in ("Bearer", "bearer", "BeArEr"):
        r = c.get("/message/config", headers={"Authorization": f"{scheme} secret"})
        assert r.status_code == 200
        assert r.json() == {"ok": True}


def test_unprotected_path_needs_no_token():
    c = _app()

    assert c.get("/").json() == {"page": "index"}


def test_token_comparison_is_exact():
    c = _app("secret")

    assert c.get("/children", headers={"Authorization": "Bearer secre"}).status_code == 401
    assert c.get("/children", headers={"Authorization": "Bearer SECRET"}).status_code == 401
