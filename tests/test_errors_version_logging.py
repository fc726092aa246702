from __future__ import annotations

import io
import logging

import pytest

from notescan_ai.errors import (
    AppError,
    Base64DecodeError,
    DecodeError,
    ErrorCode,
    ModelNotInitializedError,
    PageProcessingError,
    UnknownValidationSetError,
    new_error,
    status_for,
)
from notescan_ai.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    get_logger,
    log_event,
    request_id_var,
)
from notescan_ai.version import get_version


def _capture(formatter: logging.Formatter) -> tuple[io.StringIO, logging.Handler]:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(formatter)
    return buf, h


def test_status_mapping() -> None:
    assert status_for(ErrorCode.timeout) == 504
    assert status_for(ErrorCode.service_not_ready) == 503
    assert status_for(ErrorCode.unknown_validation_set) == 404
    assert status_for(ErrorCode.invalid_transition) == 409
    assert status_for(ErrorCode.unsupported_media_type) == 415
    assert status_for(ErrorCode.inference_failed) == 500


def test_new_error_default_message() -> None:
    e = new_error(ErrorCode.timeout, "abc-123")
    assert e.message != "" and e.request_id == "abc-123"
    assert e.to_dict()["code"] == "timeout"


def test_coded_errors_carry_code_and_status() -> None:
    err = ModelNotInitializedError()
    assert isinstance(err, AppError)
    assert err.code is ErrorCode.service_not_ready and err.http_status == 503
    assert issubclass(Base64DecodeError, DecodeError)
    assert UnknownValidationSetError("x").http_status == 404


def test_page_processing_error_keeps_page_and_stage() -> None:
    err = PageProcessingError("set/004", "infer", "boom")
    assert err.page_id == "set/004" and err.stage == "infer"
    assert "set/004" in err.message and "infer" in err.message
    assert err.code is ErrorCode.page_failed and err.http_status == 500
    late = PageProcessingError("set/004", "timeout", "no result")
    assert late.code is ErrorCode.timeout and late.http_status == 504


def test_version_fallback_logs_and_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    import importlib

    class _PNF(Exception):
        pass

    def _raise(_: str) -> str:
        raise _PNF()

    meta = importlib.import_module("importlib.metadata")
    monkeypatch.setattr(meta, "version", _raise, raising=False)
    monkeypatch.setattr(meta, "PackageNotFoundError", _PNF, raising=False)

    buf, h = _capture(_JsonFormatter())
    logger = get_logger()
    logger.addHandler(h)
    try:
        v = get_version()
    finally:
        logger.removeHandler(h)
    assert v.service == "notescan-ai"
    assert v.version == "0.0.0+local"
    assert "pkg_version_fallback" in buf.getvalue()


def test_log_event_json_fields_are_typed() -> None:
    buf, h = _capture(_JsonFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    token = request_id_var.set("rid-1")
    try:
        log_event(
            "page_processed",
            fields={
                "page_id": "set/001",
                "latency_ms": 7,
                "class_index": 3,
                "confidence": 81.5,
                "applied": False,
                "note": "has spaces",
            },
        )
    finally:
        request_id_var.reset(token)
        logger.removeHandler(h)
        logger.setLevel(old_level)
    out = buf.getvalue()
    assert '"message": "page_processed"' in out
    assert '"latency_ms": 7' in out and '"class_index": 3' in out
    assert '"confidence": 81.5' in out and '"applied": false' in out
    assert '"page_id": "set/001"' in out
    assert '"request_id": "rid-1"' in out
    assert "has spaces" not in out


def test_console_formatter_renders_event_and_pairs() -> None:
    buf, h = _capture(_ConsoleFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        log_event("batch_progress", {"total": 3, "processed": 1}, level=logging.WARNING)
        logger.info("plain_message key=value trailing")
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)
    out = buf.getvalue()
    assert "[WARN]" in out and "batch_progress" in out
    assert "total" in out and "processed" in out
    assert "plain_message" in out and "trailing" in out
