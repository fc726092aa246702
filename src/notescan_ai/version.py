from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None


def get_version() -> VersionInfo:
    return VersionInfo(
        service="notescan-ai",
        version=_pkg_version(),
        build=os.getenv("BUILD_ID"),
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA"),
    )


def _pkg_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("notescan-ai")
    except PackageNotFoundError as exc:
        from .logging import get_logger

        # Running from a source tree without an install
        get_logger().warning("pkg_version_fallback error=%s", exc)
        return "0.0.0+local"
