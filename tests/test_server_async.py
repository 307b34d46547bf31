from __future__ import annotations

import re

import pytest

import config_store
import server_async


# ----------------------------------------------------------------------------
# App
# ----------------------------------------------------------------------------

def test_index_is_public_html(client):
    r = client.get("/")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    assert "<title>Calling Parents</title>" in r.text
    assert "#token=" in client.get("/app.js").text


@pytest.mark.parametrize("path,ctype", [
    ("/index.html", "text/html"),
    ("/app.js", "application/javascript"),
    ("/sw.js", "application/javascript"),
    ("/manifest.json", "application/manifest+json"),
])
def test_static_assets(client, path, ctype):
    r = client.get(path)

    assert r.status_code == 200
    assert r.headers["content-type"].startswith(ctype)


def test_unknown_path_is_404(client):
    assert client.get("/nope.html").status_code == 404
    assert client.get("/docs").status_code == 404
    assert client.get("/openapi.json").status_code == 404


def test_security_headers_everywhere(client):
    for r in (client.get("/"), client.get("/children"), client.get("/missing")):
        assert r.headers["referrer-policy"] == "no-referrer"
        assert r.headers["x-content-type-options"] == "nosniff"


def test_large_responses_are_compressed(client):
    r = client.get("/", headers={"Accept-Encoding": "gzip"})

    assert r.headers["content-encoding"] == "gzip"
    assert "<html" in r.text


def test_small_responses_are_not_compressed(client):
    r = client.get("/version", headers={"Accept-Encoding": "gzip"})

    assert "content-encoding" not in r.headers


def test_lifespan_closes_outbound_client(make_app):
    from fastapi.testclient import TestClient

    app = make_app()
    with TestClient(app):
        pass

    assert app.state.relay._client.is_closed


# ----------------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------------

@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Run main() with uvicorn, logging setup and interface lookup stubbed out."""
    for env in config_store.ENV_KEYS:
        monkeypatch.delenv(env, raising=False)
    monkeypatch.chdir(tmp_path)

    calls = {"run": [], "qr": []}
    monkeypatch.setattr(server_async, "setup_logging", lambda **kw: None)
    monkeypatch.setattr(server_async.uvicorn, "run", lambda app, **kw: calls["run"].append((app, kw)))
    monkeypatch.setattr(server_async, "lan_url", lambda addr: "http://192.168.1.42:9000")
    monkeypatch.setattr(server_async, "print_qr",
                        lambda url, svg_path=None: calls["qr"].append((url, svg_path)))
    return calls


def _write_config(tmp_path, extra=""):
    path = tmp_path / "config.toml"
    path.write_text(
        "listen_addr = '127.0.0.1:9000'\n"
        f"children_file = '{tmp_path / 'children.json'}'\n" + extra,
        encoding="utf-8",
    )
    return path


def test_main_starts_server(cli, tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("AUTH_TOKEN", "fixed-token")
    path = _write_config(tmp_path)

    assert server_async.main(["-c", str(path)]) == 0

    (app, kw), = cli["run"]
    assert kw["host"] == "127.0.0.1"
    assert kw["port"] == 9000
    assert cli["qr"] == [("http://192.168.1.42:9000#token=fixed-token", None)]
    assert "http://192.168.1.42:9000#token=fixed-token" in capsys.readouterr().out


def test_main_generates_token(cli, tmp_path):
    path = _write_config(tmp_path)

    assert server_async.main(["-c", str(path)]) == 0

    (url, _), = cli["qr"]
    assert re.search(r"#token=[0-9a-f]{64}$", url)


def test_main_creates_missing_config(cli, tmp_path):
    assert server_async.main([]) == 0

    assert (tmp_path / "config.toml").exists()
    (_, kw), = cli["run"]
    assert kw["host"] == "0.0.0.0"
    assert kw["port"] == 8080


def test_main_background_saves_svg(cli, tmp_path):
    path = _write_config(tmp_path)

    assert server_async.main(["-c", str(path), "--background", "--log-dir", str(tmp_path / "logs")]) == 0

    (_, svg_path), = cli["qr"]
    assert svg_path == str(tmp_path / "logs" / server_async.QR_SVG_NAME)
    (_, kw), = cli["run"]
    assert kw["log_level"] == "warning"


def test_main_bad_config_exits_1(cli, tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("listen_addr = \n", encoding="utf-8")

    assert server_async.main(["-c", str(path)]) == 1
    assert cli["run"] == []


def test_main_bad_listen_addr_exits_1(cli, tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("listen_addr = 'nowhere'\n", encoding="utf-8")

    assert server_async.main(["-c", str(path)]) == 1
    assert cli["run"] == []


def test_main_bad_roster_exits_1(cli, tmp_path):
    (tmp_path / "children.json").write_text("{broken", encoding="utf-8")
    path = _write_config(tmp_path)

    assert server_async.main(["-c", str(path)]) == 1
    assert cli["run"] == []


def test_main_entropy_failure_exits_1(cli, tmp_path, monkeypatch):
    def broken():
        raise server_async.EntropyError("no random source")

    monkeypatch.setattr(server_async, "generate_token", broken)
    path = _write_config(tmp_path)

    assert server_async.main(["-c", str(path)]) == 1
    assert cli["run"] == []


def test_main_runs_without_activity_log_it_cannot_open(cli, tmp_path):
    bad = tmp_path / "no-such-dir" / "activity.jsonl"
    path = _write_config(tmp_path, f"activity_log = '{bad}'\n")

    assert server_async.main(["-c", str(path)]) == 0
    assert len(cli["run"]) == 1


def test_version_flag(cli, capsys):
    assert server_async.main(["--version"]) == 0

    assert capsys.readouterr().out.startswith("calling-parents ")
    assert cli["run"] == []
