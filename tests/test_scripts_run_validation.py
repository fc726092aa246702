from __future__ import annotations

import json
from pathlib import Path

import pytest
from PIL import Image

from _artifacts import artifact_for
from notescan_ai.config import AppConfig, ModelsConfig, SecurityConfig, Settings, ValidationConfig
from notescan_ai.errors import UnknownValidationSetError
from notescan_ai.inference.types import ModelKind
from scripts import run_validation as rv


def _prepare(root: Path, n_pages: int) -> Settings:
    cfg = ModelsConfig(model_dir=root / "models")
    cfg.model_dir.mkdir()
    files = {
        ModelKind.ocr: cfg.ocr_artifact,
        ModelKind.key_sig_type: cfg.key_sig_type_artifact,
        ModelKind.key_sig_digit_count: cfg.key_sig_digit_artifact,
    }
    for kind, fname in files.items():
        (cfg.model_dir / fname).write_text(
            json.dumps(artifact_for(kind).to_dict()), encoding="utf-8"
        )
    d = root / "sets" / "demo"
    d.mkdir(parents=True)
    for i in range(n_pages):
        Image.new("L", (40, 30), 255).save(d / f"background_{i:03d}.png")
        Image.new("L", (40, 30), 255).save(d / f"overlay_{i:03d}.png")
    return Settings(
        app=AppConfig(),
        models=cfg,
        validation=ValidationConfig(sets_root=root / "sets"),
        security=SecurityConfig(),
    )


def test_parse_args(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "sys.argv",
        ["run_validation.py", "--set", "demo", "--start", "2", "--no-resume", "--on-error", "skip"],
    )
    args = rv.parse_args()
    assert args == rv.RunArgs(set_id="demo", start=2, resume=False, on_error="skip")


def test_parse_args_defaults() -> None:
    args = rv.parse_args(["--set", "demo"])
    assert args.start == 0 and args.resume is True and args.on_error is None


def test_run_processes_whole_set(tmp_path: Path) -> None:
    s = _prepare(tmp_path, 3)
    stats = rv.run(rv.RunArgs(set_id="demo", start=0, resume=True, on_error=None), s)
    assert stats is not None
    assert stats.total == 3 and stats.processed_count == 3


def test_run_from_start_index(tmp_path: Path) -> None:
    s = _prepare(tmp_path, 3)
    stats = rv.run(rv.RunArgs(set_id="demo", start=2, resume=True, on_error="skip"), s)
    assert stats is not None and stats.processed_count == 1


def test_run_unknown_set_raises(tmp_path: Path) -> None:
    s = _prepare(tmp_path, 1)
    with pytest.raises(UnknownValidationSetError):
        rv.run(rv.RunArgs(set_id="other", start=0, resume=True, on_error=None), s)
