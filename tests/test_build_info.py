from __future__ import annotations

import build_info
from build_info import BuildInfo


def test_defaults():
    info = BuildInfo()

    assert info.as_dict() == {"version": "dev", "commit": "unknown", "date": "unknown"}
    assert info.info() == "dev (unknown) built unknown"


def test_current_reads_build_stamp(monkeypatch):
    monkeypatch.setattr(build_info, "dist_version", lambda name: "1.3.0")

    info = BuildInfo.current({"BUILD_COMMIT": "abc1234", "BUILD_DATE": "2026-01-01"})

    assert info == BuildInfo("1.3.0", "abc1234", "2026-01-01")
    assert info.info() == "1.3.0 (abc1234) built 2026-01-01"


def test_current_without_installed_distribution(monkeypatch):
    def not_installed(name):
        raise build_info.PackageNotFoundError(name)

    monkeypatch.setattr(build_info, "dist_version", not_installed)

    assert BuildInfo.current({}) == BuildInfo()


def test_version_route_is_public(client):
    r = client.get("/version")

    assert r.status_code == 200
    assert r.json() == {"version": "1.3.0", "commit": "abc1234", "date": "2026-01-01"}
