from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from ..errors import AssetLoadError, UnknownValidationSetError
from ..logging import get_logger, log_event
from .types import PageRecord, ValidationSetInfo

_BACKGROUND_RE: Final[re.Pattern[str]] = re.compile(r"^background_(\d+)\.(jpeg|jpg|png)$")
_SET_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_\-]+$")


@dataclass(frozen=True)
class _PagePair:
    index: int
    background: Path
    overlay: Path | None


class ValidationCatalog:
    """Reference page sets stored as directories under one root.

    Layout::

        <root>/<set_id>/set.json            optional {"name": ..., "count": ...}
        <root>/<set_id>/background_000.jpeg
        <root>/<set_id>/overlay_000.png
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._logger = get_logger()

    def list_available_sets(self) -> list[ValidationSetInfo]:
        if not self._root.is_dir():
            return []
        out: list[ValidationSetInfo] = []
        for d in sorted(p for p in self._root.iterdir() if p.is_dir()):
            if not _SET_ID_RE.match(d.name):
                continue
            pairs = _scan_pairs(d)
            if not pairs:
                continue
            name, limit = self._read_meta(d)
            # Same pages load_set returns: capped pairs that have an overlay
            capped = pairs[: _count(len(pairs), limit)]
            complete = sum(1 for pp in capped if pp.overlay is not None)
            if complete == 0:
                continue
            out.append(ValidationSetInfo(id=d.name, name=name, count=complete))
        return out

    def load_set(self, set_id: str) -> list[PageRecord]:
        set_dir = self._set_dir(set_id)
        _, limit = self._read_meta(set_dir)
        pairs = _scan_pairs(set_dir)
        pages: list[PageRecord] = []
        for pair in pairs[: _count(len(pairs), limit)]:
            if pair.overlay is None:
                # Pages without ground truth are dropped, not fatal
                self._logger.warning(
                    "validation_page_skipped set=%s index=%d reason=missing_overlay",
                    set_id,
                    pair.index,
                )
                continue
            pages.append(
                PageRecord(
                    id=f"{set_id}/{pair.index:03d}",
                    background_ref=pair.background.as_posix(),
                    overlay_ref=pair.overlay.as_posix(),
                )
            )
        if not pages:
            raise AssetLoadError(f"validation set {set_id!r} has no loadable pages")
        log_event("validation_set_loaded", {"set_id": set_id, "total": len(pages)})
        return pages

    def _set_dir(self, set_id: str) -> Path:
        if not _SET_ID_RE.match(set_id):
            raise UnknownValidationSetError(f"Unknown validation set: {set_id}")
        d = self._root / set_id
        if not d.is_dir():
            raise UnknownValidationSetError(f"Unknown validation set: {set_id}")
        return d

    def _read_meta(self, set_dir: Path) -> tuple[str, int | None]:
        meta_path = set_dir / "set.json"
        default_name = set_dir.name.replace("_", " ").title()
        if not meta_path.is_file():
            return default_name, None
        try:
            obj: object = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            self._logger.warning("validation_meta_unreadable path=%s", meta_path.as_posix())
            return default_name, None
        if not isinstance(obj, dict):
            return default_name, None
        name = obj.get("name")
        count = obj.get("count")
        return (
            name if isinstance(name, str) and name.strip() else default_name,
            count if isinstance(count, int) and not isinstance(count, bool) and count > 0 else None,
        )


def _scan_pairs(set_dir: Path) -> list[_PagePair]:
    pairs: list[_PagePair] = []
    for p in set_dir.iterdir():
        m = _BACKGROUND_RE.match(p.name)
        if m is None or not p.is_file():
            continue
        digits = m.group(1)
        overlay = set_dir / f"overlay_{digits}.png"
        pairs.append(
            _PagePair(
                index=int(digits),
                background=p,
                overlay=overlay if overlay.is_file() else None,
            )
        )
    pairs.sort(key=lambda pp: pp.index)
    return pairs


def _count(available: int, limit: int | None) -> int:
    return available if limit is None else min(available, limit)
