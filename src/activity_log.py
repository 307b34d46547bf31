#!/usr/bin/env python3
"""
Append-only activity log (one JSON object per line).
Writes never fail the caller: a full disk must not stop a parent being called.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import IO, Optional

from relay_common import log_debug


class ActivityLog:
    def __init__(self, handle: IO[str], path: str = ""):
        self._file: Optional[IO[str]] = handle
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: str) -> "ActivityLog":
        """Open (or create) path for appending. Raises OSError."""
        handle = open(path, "a", encoding="utf-8")
        return cls(handle, path)

    def log(self, action: str, name: str = "") -> None:
        entry = {
            "time": datetime.now().astimezone().isoformat(timespec="seconds"),
            "action": action,
        }
        if name:
            entry["name"] = name
        line = json.dumps(entry, ensure_ascii=False) + "\n"
        with self._lock:
            if self._file is None:
                return
            try:
                self._file.write(line)
                self._file.flush()
            except (OSError, ValueError) as e:
                log_debug(f"[Activity] Dropped {action!r} entry: {e}")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
