from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final, Literal

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/notescan.toml")

PageErrorPolicy = Literal["abort", "skip"]


@dataclass(frozen=True)
class AppConfig:
    data_root: Path = Path("/data")
    port: int = 8081


@dataclass(frozen=True)
class ModelsConfig:
    model_dir: Path = Path("/data/models")
    ocr_artifact: str = "ocr_model.json"
    key_sig_type_artifact: str = "keySignatures_c_model.json"
    key_sig_digit_artifact: str = "keySignatures_digit_model.json"
    # Fail initialization when any layer in an artifact is left unapplied
    require_full_load: bool = False


@dataclass(frozen=True)
class ValidationConfig:
    sets_root: Path = Path("/data/validation")
    page_timeout_seconds: float = 30.0
    on_page_error: PageErrorPolicy = "abort"
    top_k: int = 3
    max_image_mb: int = 8
    max_image_side_px: int = 4096


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    models: ModelsConfig
    validation: ValidationConfig
    security: SecurityConfig

    @staticmethod
    def default() -> Settings:
        return Settings(
            app=AppConfig(),
            models=ModelsConfig(),
            validation=ValidationConfig(),
            security=SecurityConfig(),
        )

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("NOTESCAN_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Env first, then TOML overrides when the file exists.
        base = cls(
            app=_load_app_from_env(),
            models=_load_models_from_env(),
            validation=_load_validation_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            models=_merge_models(base.models, _toml_table(raw, "models")),
            validation=_merge_validation(base.validation, _toml_table(raw, "validation")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _truthy(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes"}


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _check_policy(v: str) -> PageErrorPolicy:
    val = v.strip().lower()
    if val == "abort":
        return "abort"
    if val == "skip":
        return "skip"
    raise RuntimeError(f"on_page_error must be 'abort' or 'skip', got {v!r}")


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    dr = os.getenv("APP__DATA_ROOT")
    pt = os.getenv("APP__PORT")
    if dr:
        a = replace(a, data_root=Path(dr))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt)))
    return a


def _load_models_from_env() -> ModelsConfig:
    m = ModelsConfig()
    md = os.getenv("MODELS__MODEL_DIR")
    ocr = os.getenv("MODELS__OCR_ARTIFACT")
    kt = os.getenv("MODELS__KEY_SIG_TYPE_ARTIFACT")
    kd = os.getenv("MODELS__KEY_SIG_DIGIT_ARTIFACT")
    full = os.getenv("MODELS__REQUIRE_FULL_LOAD")
    if md:
        m = replace(m, model_dir=Path(md))
    if ocr:
        m = replace(m, ocr_artifact=ocr)
    if kt:
        m = replace(m, key_sig_type_artifact=kt)
    if kd:
        m = replace(m, key_sig_digit_artifact=kd)
    if full is not None:
        m = replace(m, require_full_load=_truthy(full))
    return m


def _load_validation_from_env() -> ValidationConfig:
    v = ValidationConfig()
    sr = os.getenv("VALIDATION__SETS_ROOT")
    to = os.getenv("VALIDATION__PAGE_TIMEOUT_SECONDS")
    pe = os.getenv("VALIDATION__ON_PAGE_ERROR")
    tk = os.getenv("VALIDATION__TOP_K")
    mb = os.getenv("VALIDATION__MAX_IMAGE_MB")
    mx = os.getenv("VALIDATION__MAX_IMAGE_SIDE_PX")
    if sr:
        v = replace(v, sets_root=Path(sr))
    if to is not None:
        v = replace(v, page_timeout_seconds=float(to))
    if pe is not None:
        v = replace(v, on_page_error=_check_policy(pe))
    if tk is not None:
        v = replace(v, top_k=int(tk))
    if mb is not None:
        v = replace(v, max_image_mb=int(mb))
    if mx is not None:
        v = replace(v, max_image_side_px=int(mx))
    return v


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "data_root" in data:
        out = replace(out, data_root=Path(str(data["data_root"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"]))))
    return out


def _merge_models(base: ModelsConfig, data: dict[str, object]) -> ModelsConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "ocr_artifact" in data:
        out = replace(out, ocr_artifact=str(data["ocr_artifact"]))
    if "key_sig_type_artifact" in data:
        out = replace(out, key_sig_type_artifact=str(data["key_sig_type_artifact"]))
    if "key_sig_digit_artifact" in data:
        out = replace(out, key_sig_digit_artifact=str(data["key_sig_digit_artifact"]))
    if "require_full_load" in data:
        out = replace(out, require_full_load=bool(data["require_full_load"]))
    return out


def _merge_validation(base: ValidationConfig, data: dict[str, object]) -> ValidationConfig:
    out = base
    if "sets_root" in data:
        out = replace(out, sets_root=Path(str(data["sets_root"])))
    if "page_timeout_seconds" in data:
        out = replace(out, page_timeout_seconds=float(str(data["page_timeout_seconds"])))
    if "on_page_error" in data:
        out = replace(out, on_page_error=_check_policy(str(data["on_page_error"])))
    if "top_k" in data:
        out = replace(out, top_k=int(str(data["top_k"])))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.validation.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.validation.max_image_side_px),
        )
