#!/usr/bin/env python3
"""Version descriptor, built once at startup and handed to the app."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from importlib.metadata import PackageNotFoundError, version as dist_version
from typing import Dict, Mapping, Optional

DIST_NAME = "calling-parents"


@dataclass(frozen=True)
class BuildInfo:
    version: str = "dev"
    commit: str = "unknown"
    date: str = "unknown"

    @classmethod
    def current(cls, environ: Optional[Mapping[str, str]] = None) -> "BuildInfo":
        """Installed distribution version; commit/date stamped by the release build (BUILD_COMMIT, BUILD_DATE)."""
        env = os.environ if environ is None else environ
        try:
            ver = dist_version(DIST_NAME)
        except PackageNotFoundError:
            ver = "dev"
        return cls(
            version=ver,
            commit=env.get("BUILD_COMMIT") or "unknown",
            date=env.get("BUILD_DATE") or "unknown",
        )

    def info(self) -> str:
        return f"{self.version} ({self.commit}) built {self.date}"

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)
