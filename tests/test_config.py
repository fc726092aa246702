from __future__ import annotations

from pathlib import Path

import pytest

from notescan_ai.config import Limits, Settings


def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Point at a missing TOML so only env values apply
    monkeypatch.setenv("NOTESCAN_CONFIG", (tmp_path / "missing.toml").as_posix())


def test_defaults_without_env_or_toml(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    for k in ("VALIDATION__ON_PAGE_ERROR", "MODELS__MODEL_DIR", "SECURITY__API_KEY"):
        monkeypatch.delenv(k, raising=False)
    s = Settings.load()
    assert s.models.ocr_artifact == "ocr_model.json"
    assert s.models.key_sig_type_artifact == "keySignatures_c_model.json"
    assert s.models.key_sig_digit_artifact == "keySignatures_digit_model.json"
    assert s.validation.on_page_error == "abort"
    assert s.security.api_key == ""


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("MODELS__MODEL_DIR", (tmp_path / "models").as_posix())
    monkeypatch.setenv("MODELS__REQUIRE_FULL_LOAD", "true")
    monkeypatch.setenv("VALIDATION__PAGE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("VALIDATION__ON_PAGE_ERROR", "SKIP")
    monkeypatch.setenv("VALIDATION__TOP_K", "5")
    monkeypatch.setenv("APP__PORT", "9000")
    s = Settings.load()
    assert s.models.model_dir.as_posix().endswith("models")
    assert s.models.require_full_load is True
    assert s.validation.page_timeout_seconds == 2.5
    assert s.validation.on_page_error == "skip"
    assert s.validation.top_k == 5
    assert s.app.port == 9000


def test_toml_overrides_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text(
        """
[validation]
sets_root = "/srv/sets"
on_page_error = "skip"
max_image_mb = 2

[models]
require_full_load = true
""".strip(),
        encoding="utf-8",
    )
    monkeypatch.setenv("NOTESCAN_CONFIG", p.as_posix())
    monkeypatch.setenv("VALIDATION__ON_PAGE_ERROR", "abort")
    s = Settings.load()
    assert s.validation.sets_root == Path("/srv/sets")
    assert s.validation.on_page_error == "skip"
    assert s.models.require_full_load is True
    assert Limits.from_settings(s).max_bytes == 2 * 1024 * 1024


def test_api_key_enabled_false_disables_key(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text('[security]\napi_key = "secret"\napi_key_enabled = false\n', encoding="utf-8")
    monkeypatch.setenv("NOTESCAN_CONFIG", p.as_posix())
    assert Settings.load().security.api_key == ""


def test_port_out_of_range_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("APP__PORT", "70000")
    with pytest.raises(RuntimeError):
        Settings.load()


def test_unknown_error_policy_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("VALIDATION__ON_PAGE_ERROR", "retry")
    with pytest.raises(RuntimeError):
        Settings.load()


def test_invalid_toml_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text("[validation\n", encoding="utf-8")
    monkeypatch.setenv("NOTESCAN_CONFIG", p.as_posix())
    with pytest.raises(RuntimeError):
        Settings.load()
