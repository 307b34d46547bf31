#!/usr/bin/env python3
"""
Roster of children's names, persisted as a JSON array of strings.

Writers are serialized by a lock and the file is replaced atomically; the
in-memory list only changes once the new version is on disk.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from typing import List, Tuple

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from relay_common import log_error, log_info, read_name


class RosterError(Exception):
    pass


class ChildrenStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._names: List[str] = self._load()

    def _load(self) -> List[str]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise RosterError(f"reading children file {self.path!r}: {e}") from e
        except json.JSONDecodeError as e:
            raise RosterError(f"parsing children file {self.path!r}: {e}") from e
        if not isinstance(data, list) or not all(isinstance(n, str) for n in data):
            raise RosterError(f"children file {self.path!r} must contain a JSON array of strings")
        return sorted(data)

    def _save(self, names: List[str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".children.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(names, f, ensure_ascii=False, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise RosterError(f"writing children file {self.path!r}: {e}") from e

    def names(self) -> List[str]:
        with self._lock:
            return list(self._names)

    def add(self, name: str) -> Tuple[bool, List[str]]:
        """Add name (case-sensitive). Returns (added, names); duplicates are a no-op."""
        with self._lock:
            if name in self._names:
                return False, list(self._names)
            updated = sorted(self._names + [name])
            self._save(updated)
            self._names = updated
            return True, list(updated)

    def remove(self, name: str) -> Tuple[bool, List[str]]:
        with self._lock:
            if name not in self._names:
                return False, list(self._names)
            updated = [n for n in self._names if n != name]
            self._save(updated)
            self._names = updated
            return True, list(updated)


def build_children_router(store: ChildrenStore) -> APIRouter:
    router = APIRouter()

    @router.get("/children")
    def list_children():
        return store.names()

    @router.post("/children")
    async def add_child(request: Request):
        name, error = await read_name(request)
        if error is not None:
            return error
        try:
            added, names = await run_in_threadpool(store.add, name)
        except RosterError as e:
            log_error(f"[Roster] {e}")
            return JSONResponse({"error": "failed to persist name"}, status_code=500)
        if added:
            log_info(f"[Roster] Added {name!r}")
        return JSONResponse(names, status_code=201 if added else 200)

    @router.delete("/children")
    async def remove_child(request: Request):
        name, error = await read_name(request)
        if error is not None:
            return error
        try:
            removed, names = await run_in_threadpool(store.remove, name)
        except RosterError as e:
            log_error(f"[Roster] {e}")
            return JSONResponse({"error": "failed to persist deletion"}, status_code=500)
        if removed:
            log_info(f"[Roster] Removed {name!r}")
        return JSONResponse(names)

    return router
