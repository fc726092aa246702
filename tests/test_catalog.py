from __future__ import annotations

import json
from pathlib import Path

import pytest

from notescan_ai.errors import AssetLoadError, UnknownValidationSetError
from notescan_ai.validation.catalog import ValidationCatalog


def _write_set(root: Path, set_id: str, n: int, *, meta: object | None = None) -> Path:
    d = root / set_id
    d.mkdir(parents=True)
    for i in range(n):
        (d / f"background_{i:03d}.jpeg").write_bytes(b"jpeg")
        (d / f"overlay_{i:03d}.png").write_bytes(b"png")
    if meta is not None:
        (d / "set.json").write_text(json.dumps(meta), encoding="utf-8")
    return d


def test_lists_sets_sorted_with_names_and_counts(tmp_path: Path) -> None:
    _write_set(tmp_path, "pop_songs", 2)
    _write_set(tmp_path, "classical", 5, meta={"name": "Classical Etudes", "count": 3})
    (tmp_path / "empty").mkdir()
    (tmp_path / "bad id").mkdir()
    sets = ValidationCatalog(tmp_path).list_available_sets()
    assert [(s.id, s.name, s.count) for s in sets] == [
        ("classical", "Classical Etudes", 3),
        ("pop_songs", "Pop Songs", 2),
    ]


def test_missing_root_lists_nothing(tmp_path: Path) -> None:
    assert ValidationCatalog(tmp_path / "nope").list_available_sets() == []


def test_load_set_pairs_pages_in_index_order(tmp_path: Path) -> None:
    d = _write_set(tmp_path, "demo", 3)
    pages = ValidationCatalog(tmp_path).load_set("demo")
    assert [p.id for p in pages] == ["demo/000", "demo/001", "demo/002"]
    assert pages[1].background_ref == (d / "background_001.jpeg").as_posix()
    assert pages[1].overlay_ref == (d / "overlay_001.png").as_posix()
    assert all(not p.processed and p.predictions is None for p in pages)


def test_load_set_honours_count_limit(tmp_path: Path) -> None:
    _write_set(tmp_path, "demo", 4, meta={"count": 2})
    assert len(ValidationCatalog(tmp_path).load_set("demo")) == 2


def test_pages_without_overlay_are_dropped(tmp_path: Path) -> None:
    d = _write_set(tmp_path, "demo", 3)
    (d / "overlay_001.png").unlink()
    pages = ValidationCatalog(tmp_path).load_set("demo")
    assert [p.id for p in pages] == ["demo/000", "demo/002"]


def test_unreadable_meta_falls_back_to_defaults(tmp_path: Path) -> None:
    d = _write_set(tmp_path, "demo_set", 1)
    (d / "set.json").write_text("{oops", encoding="utf-8")
    sets = ValidationCatalog(tmp_path).list_available_sets()
    assert sets[0].name == "Demo Set" and sets[0].count == 1


@pytest.mark.parametrize("set_id", ["missing", "../escape", ""])
def test_unknown_set_raises(tmp_path: Path, set_id: str) -> None:
    with pytest.raises(UnknownValidationSetError):
        ValidationCatalog(tmp_path).load_set(set_id)


def test_set_with_no_loadable_pages_raises(tmp_path: Path) -> None:
    d = tmp_path / "demo"
    d.mkdir()
    (d / "background_000.png").write_bytes(b"png")
    with pytest.raises(AssetLoadError):
        ValidationCatalog(tmp_path).load_set("demo")


def test_listed_count_matches_loadable_pages(tmp_path: Path) -> None:
    d = _write_set(tmp_path, "demo", 3)
    (d / "overlay_001.png").unlink()
    catalog = ValidationCatalog(tmp_path)
    [info] = catalog.list_available_sets()
    assert info.count == 2
    assert info.count == len(catalog.load_set("demo"))


def test_set_without_any_overlay_is_not_listed(tmp_path: Path) -> None:
    d = tmp_path / "demo"
    d.mkdir()
    (d / "background_000.png").write_bytes(b"png")
    assert ValidationCatalog(tmp_path).list_available_sets() == []
