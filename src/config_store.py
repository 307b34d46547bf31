#!/usr/bin/env python3
"""
Configuration for the relay server.

Merge order (last wins):
    compiled-in defaults < config.toml < environment overrides

The TOML file is meant to be edited by hand. When a release adds a new
setting, the missing block is added to the user's file at top level (after a
byte-for-byte backup to <file>.bak) so existing edits are never lost.
"""

from __future__ import annotations

import os
import re
import shutil
import tempfile
import tomllib
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from relay_common import log_debug, log_warning


class ConfigError(Exception):
    """Fatal startup error: configuration cannot be used."""


class ConfigIOError(ConfigError):
    pass


class ConfigParseError(ConfigError):
    pass


# =============================================================================
#                              CONFIG RECORD
# =============================================================================

@dataclass(frozen=True, repr=False)
class Config:
    propresenter_host: str = "localhost"
    propresenter_port: str = "50001"
    listen_addr: str = ":8080"
    children_file: str = "children.json"
    message_name: str = "Eltern rufen"
    auto_clear_seconds: int = 30
    activity_log: str = ""
    auth_token: str = field(default="", repr=False)

    @property
    def propresenter_url(self) -> str:
        return f"http://{self.propresenter_host}:{self.propresenter_port}"

    def __repr__(self) -> str:
        # Token never ends up in logs
        shown = ", ".join(
            f"{f.name}={getattr(self, f.name)!r}" for f in fields(self) if f.name != "auth_token"
        )
        token = "<redacted>" if self.auth_token else "''"
        return f"Config({shown}, auth_token={token})"


@dataclass
class EvolutionReport:
    created: bool = False
    merged_keys: List[str] = field(default_factory=list)
    backup_path: str = ""


# Environment variable -> config key
ENV_KEYS: Dict[str, str] = {
    "PROPRESENTER_HOST": "propresenter_host",
    "PROPRESENTER_PORT": "propresenter_port",
    "LISTEN_ADDR": "listen_addr",
    "CHILDREN_FILE": "children_file",
    "MESSAGE_NAME": "message_name",
    "AUTO_CLEAR_SECONDS": "auto_clear_seconds",
    "ACTIVITY_LOG": "activity_log",
    "AUTH_TOKEN": "auth_token",
}

_INT_KEYS = {"auto_clear_seconds"}


# =============================================================================
#                          SCHEMA EVOLUTION (MIGRATIONS)
# =============================================================================

@dataclass(frozen=True)
class Migration:
    """One known setting: the release that introduced it and its canonical block."""
    key: str
    since: str
    block: str

    def _commented(self) -> "re.Pattern[str]":
        return re.compile(rf"^{re.escape(self.key)}(\s|=)")

    def is_applied(self, parsed: Mapping[str, Any], text: str) -> bool:
        """True if the file already defines the key, either active or as a commented-out default."""
        if self.key in parsed:
            return True
        pattern = self._commented()
        for line in text.splitlines():
            line = line.strip()
            if not line.startswith("#"):
                continue
            if pattern.match(line.lstrip("#").strip()):
                return True
        return False

    def render(self) -> str:
        return self.block.strip("\n") + "\n"


CONFIG_HEADER = """\
# Calling Parents - configuration
#
# Every setting can also be given as an environment variable
# (e.g. PROPRESENTER_HOST, AUTH_TOKEN); the environment wins.
# Settings introduced by newer releases are added to this file
# automatically. The previous version is kept as <file>.bak.
"""

# Append-only: new settings go at the end, existing blocks never change.
MIGRATIONS: Tuple[Migration, ...] = (
    Migration("propresenter_host", "1.0", """
# Hostname or IP address of the computer running ProPresenter.
propresenter_host = "localhost"
"""),
    Migration("propresenter_port", "1.0", """
# Network API port (ProPresenter > Settings > Network).
propresenter_port = "50001"
"""),
    Migration("listen_addr", "1.0", """
# Address the phone web app is served on, e.g. ":8080" or "0.0.0.0:8080".
listen_addr = ":8080"
"""),
    Migration("children_file", "1.0", """
# JSON file with the list of names shown on the phone.
children_file = "children.json"
"""),
    Migration("message_name", "1.1", """
# Name of the ProPresenter message template. Its text token must be
# called "Name"; it is replaced with the child's name.
message_name = "Eltern rufen"
"""),
    Migration("auto_clear_seconds", "1.2", """
# Seconds after which the phone clears the message again (0 = never).
auto_clear_seconds = 30
"""),
    Migration("activity_log", "1.3", """
# Append every send/clear to this file (one JSON object per line).
# activity_log = "activity.jsonl"
"""),
    Migration("auth_token", "1.3", """
# Fixed access token for the phones. Without it a new random token is
# generated on every start and the QR code changes.
# auth_token = ""
"""),
)


def default_config_text() -> str:
    return CONFIG_HEADER + "".join("\n" + m.render() for m in MIGRATIONS)


def missing_migrations(parsed: Mapping[str, Any], text: str) -> List[Migration]:
    return [m for m in MIGRATIONS if not m.is_applied(parsed, text)]


# =============================================================================
#                              LOADING
# =============================================================================

def _coerce(key: str, value: Any, source: str) -> Any:
    if key in _INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigParseError(f"{source}: {key} must be an integer, got {value!r}")
        return value
    if key == "propresenter_port" and isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ConfigParseError(f"{source}: {key} must be a string, got {value!r}")
    return value


def _apply_parsed(cfg: Config, parsed: Mapping[str, Any], source: str) -> Config:
    known = {f.name for f in fields(Config)}
    values = {k: _coerce(k, v, source) for k, v in parsed.items() if k in known}
    return replace(cfg, **values)


def env_overrides(environ: Mapping[str, str]) -> Dict[str, str]:
    """Map environment variables to config keys. Empty values count as unset."""
    return {key: environ[env] for env, key in ENV_KEYS.items() if environ.get(env)}


def _apply_overrides(cfg: Config, overrides: Mapping[str, Any]) -> Config:
    values: Dict[str, Any] = {}
    for key, raw in overrides.items():
        if raw is None or raw == "":
            continue
        if key in _INT_KEYS:
            try:
                values[key] = int(raw)
            except (TypeError, ValueError):
                log_warning(f"[Config] Ignoring override {key}={raw!r}: not an integer")
            continue
        if key in ENV_KEYS.values():
            values[key] = str(raw)
    return replace(cfg, **values)


def _write_default(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(default_config_text())
        if os.name != "nt":
            os.chmod(path, 0o600)
    except OSError as e:
        raise ConfigIOError(f"writing default config {path}: {e}") from e


# Start of a line that may open a [table] or [[array of tables]]
_TABLE_HEADER = re.compile(rb"^[ \t]*\[", re.MULTILINE)


def _settles(candidate: bytes, missing: List[Migration]) -> bool:
    """True if candidate parses and no longer lacks any of the missing settings."""
    try:
        text = candidate.decode("utf-8")
        parsed = tomllib.loads(text)
    except (UnicodeDecodeError, tomllib.TOMLDecodeError):
        return False
    return all(m.is_applied(parsed, text) for m in missing)


def _insert_missing(raw: bytes, missing: List[Migration]) -> bytes:
    """Place the missing blocks at top level, before the first table header.

    Files without tables get them at the end. Lines starting with "[" inside
    a multi-line array look like headers too, so every position is checked
    by parsing the result.
    """
    keys = ", ".join(m.key for m in missing)
    section = f"\n# --- settings added automatically: {keys} ---\n".encode("utf-8")
    section += "".join("\n" + m.render() for m in missing).encode("utf-8")

    positions = [m.start() for m in _TABLE_HEADER.finditer(raw)] + [len(raw)]
    for pos in positions:
        head, tail = raw[:pos], raw[pos:]
        if head and not head.endswith(b"\n"):
            head += b"\n"
        candidate = head + section + (b"\n" + tail if tail else b"")
        if _settles(candidate, missing):
            return candidate
    raise ConfigIOError(f"no place to add settings {keys} at top level")


def _merge_missing(path: str, raw: bytes, missing: List[Migration]) -> str:
    """Insert missing blocks into path. All-or-nothing: on failure nothing on disk changes."""
    backup_path = path + ".bak"
    try:
        merged = _insert_missing(raw, missing)
    except ConfigIOError as e:
        raise ConfigIOError(f"merging new settings into {path}: {e}") from e

    try:
        with open(backup_path, "wb") as f:
            f.write(raw)
    except OSError as e:
        _remove_quietly(backup_path)
        raise ConfigIOError(f"writing config backup {backup_path}: {e}") from e

    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=os.path.dirname(os.path.abspath(path)),
            prefix="." + os.path.basename(path) + ".",
            suffix=".tmp",
        )
        with os.fdopen(fd, "wb") as f:
            f.write(merged)
        shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path:
            _remove_quietly(tmp_path)
        _remove_quietly(backup_path)
        raise ConfigIOError(f"merging new settings into {path}: {e}") from e
    return backup_path


def _remove_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        log_warning(f"[Config] Could not remove {path}: {e}")


def load(path: str, overrides: Optional[Mapping[str, Any]] = None) -> Tuple[Config, EvolutionReport]:
    """Resolve the configuration.

    overrides maps config keys to values; None means "take them from the
    environment". Raises ConfigIOError / ConfigParseError, never because
    the file is simply absent.
    """
    if overrides is None:
        overrides = env_overrides(os.environ)

    cfg = Config()
    report = EvolutionReport()

    if not path:
        return _apply_overrides(cfg, overrides), report

    if not os.path.exists(path):
        _write_default(path)
        report.created = True
        log_debug(f"[Config] Wrote default config to {path}")
        return _apply_overrides(cfg, overrides), report

    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigIOError(f"reading config {path}: {e}") from e

    try:
        text = raw.decode("utf-8")
        parsed = tomllib.loads(text)
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigParseError(f"parsing config {path}: {e}") from e

    cfg = _apply_parsed(cfg, parsed, path)

    missing = missing_migrations(parsed, text)
    if missing:
        report.backup_path = _merge_missing(path, raw, missing)
        report.merged_keys = [m.key for m in missing]

    return _apply_overrides(cfg, overrides), report
