from __future__ import annotations

import asyncio
import io
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile, UnidentifiedImageError

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, new_error, status_for
from ..inference.engine import InferenceEngine
from ..inference.registry import ModelRegistry
from ..inference.types import MODEL_KINDS, ModelKind, PredictionResult, label_for
from ..logging import get_logger, init_logging, log_event, request_id_var
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import Preprocessor, image_to_tensor
from ..validation.catalog import ValidationCatalog
from ..validation.orchestrator import ValidationOrchestrator
from ..validation.types import BatchStats, PagePredictions
from ..version import get_version
from .schemas import ReadResponse, RunResponse, ValidationSetResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_registry(settings: Settings) -> ModelRegistry:
    registry = ModelRegistry.from_config(settings.models)
    try:
        registry.initialize()
    except AppError as exc:
        # Serve anyway; readiness reports the failure
        get_logger().warning("models_not_ready code=%s", exc.code.value)
    return registry


def _register_basic(app: FastAPI, registry: ModelRegistry) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if registry.ready:
            return {"status": "ready"}
        return {"status": "not_ready", "models_loaded": False, "build": get_version().build}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, registry: ModelRegistry) -> None:
    async def _models() -> dict[str, object]:
        out: dict[str, object] = {}
        for kind in MODEL_KINDS:
            report = registry.reports.get(kind)
            if not registry.ready or report is None:
                out[kind.value] = None
                continue
            model = registry.get(kind)
            out[kind.value] = {
                "input_shape": list(model.input_shape),
                "output_shape": list(model.output_shape),
                "complete": report.complete,
                "layers": [
                    {"layer": r.layer, "applied": r.applied, "reason": r.reason}
                    for r in report.layers
                ],
            }
        return {"ready": registry.ready, "models": out}

    app.add_api_route("/v1/models", _models, methods=["GET"])


def _register_validation(
    app: FastAPI,
    dep: DependsParamType,
    catalog: ValidationCatalog,
    orchestrator: ValidationOrchestrator,
) -> None:
    async def _list_sets() -> list[dict[str, object]]:
        sets = catalog.list_available_sets()
        return [{"id": s.id, "name": s.name, "count": s.count} for s in sets]

    async def _run_set(set_id: str, start: int = 0, resume: bool = True) -> dict[str, object]:
        pages = catalog.load_set(set_id)
        snapshots: list[BatchStats] = []
        stats = await orchestrator.process_batch(
            pages, start=start, resume_from_processed=resume, on_stats=snapshots.append
        )
        return {
            "set_id": set_id,
            "pages": [p.to_dict() for p in pages],
            "stats": stats.to_dict() if stats is not None else None,
            "snapshots": len(snapshots),
        }

    app.add_api_route(
        "/v1/validation/sets",
        _list_sets,
        methods=["GET"],
        response_model=list[ValidationSetResponse],
    )
    app.add_api_route(
        "/v1/validation/sets/{set_id}/run",
        _run_set,
        methods=["POST"],
        response_model=RunResponse,
        dependencies=[dep],
    )


def _open_image_bytes(raw: bytes, limits: Limits) -> Image.Image:
    if len(raw) > limits.max_bytes:
        raise AppError(
            ErrorCode.too_large, status_for(ErrorCode.too_large), "File exceeds size limit"
        )
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise AppError(
            ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), "Failed to decode image"
        ) from None
    except Image.DecompressionBombError:
        raise AppError(
            ErrorCode.too_large, status_for(ErrorCode.too_large), "Decompression bomb triggered"
        ) from None
    except OSError:
        raise AppError(
            ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), "Truncated image"
        ) from None
    if max(img.size) > limits.max_side_px:
        raise AppError(
            ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), "Image too large"
        )
    return img


def _register_read(
    app: FastAPI,
    dep: DependsParamType,
    registry: ModelRegistry,
    engine: InferenceEngine,
    limits: Limits,
) -> None:
    def _predict_all(img: Image.Image) -> PagePredictions:
        results: dict[ModelKind, PredictionResult] = {}
        for kind in MODEL_KINDS:
            model = registry.get(kind)
            tensor = image_to_tensor(img, kind)
            try:
                pred = engine.infer(model, tensor)
            finally:
                del tensor
            results[kind] = replace(pred, label=label_for(kind, pred.class_index))
        return PagePredictions(
            ocr=results[ModelKind.ocr],
            key_sig_type=results[ModelKind.key_sig_type],
            key_sig_digit_count=results[ModelKind.key_sig_digit_count],
        )

    async def _read(
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        ctype = (file.content_type or "").lower()
        if ctype not in ("image/png", "image/jpeg", "image/jpg"):
            raise AppError(
                ErrorCode.unsupported_media_type,
                status_for(ErrorCode.unsupported_media_type),
                "Only PNG and JPEG are supported",
            )
        if content_length is not None and content_length > limits.max_bytes:
            raise AppError(
                ErrorCode.too_large, status_for(ErrorCode.too_large), "Request body too large"
            )
        img = _open_image_bytes(await file.read(), limits)
        t0 = time.perf_counter()
        preds = await asyncio.to_thread(_predict_all, img)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        log_event(
            "read_finished",
            {
                "latency_ms": dt_ms,
                "class_index": preds.ocr.class_index,
                "confidence": preds.ocr.confidence,
            },
        )
        return {"predictions": preds.to_dict(), "latency_ms": dt_ms}

    app.add_api_route(
        "/v1/read",
        _read,
        methods=["POST"],
        response_model=ReadResponse,
        dependencies=[dep],
    )


def create_app(
    settings: Settings | None = None,
    registry_provider: Callable[[], ModelRegistry] | None = None,
    *,
    preprocessor: Preprocessor | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: optional pre-loaded settings; defaults to `Settings.load()`.
    - `registry_provider`: optional provider for an already built
      `ModelRegistry` (tests inject stub models this way). Without it the
      registry loads artifacts from `settings.models.model_dir`.
    - `preprocessor`: replaces the PIL preprocessor used for validation runs.
    """
    s = settings or Settings.load()
    init_logging()
    app = FastAPI(title="notescan-ai", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)

    registry = registry_provider() if registry_provider is not None else _create_registry(s)
    catalog = ValidationCatalog(s.validation.sets_root)
    orchestrator = ValidationOrchestrator.from_settings(s, registry, preprocessor)
    engine = InferenceEngine(top_k=s.validation.top_k)
    dep: DependsParamType = Depends(api_key_dependency(s))

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    app.state.registry = registry
    app.state.catalog = catalog

    _register_basic(app, registry)
    _register_models(app, registry)
    _register_validation(app, dep, catalog, orchestrator)
    _register_read(app, dep, registry, engine, Limits.from_settings(s))
    return app


# Default ASGI app for uvicorn
app = create_app()
