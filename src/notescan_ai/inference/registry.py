from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from pathlib import Path
from types import MappingProxyType

from torch import Tensor

from ..config import ModelsConfig
from ..errors import AppError, ModelLoadError, ModelNotInitializedError
from ..logging import get_logger, log_event
from .artifact import ModelArtifact
from .engine import InferenceEngine
from .loader import ModelLoader
from .topology import KerasGraph
from .types import MODEL_KINDS, LoadReport, ModelKind

ArtifactSource = Callable[[ModelKind], ModelArtifact]


class ModelRegistry:
    """Holds the three loaded models for the life of the process.

    Construct once at startup and pass it to whatever needs predictions.
    `initialize` is all-or-nothing: either every model is ready or none is.
    """

    def __init__(
        self,
        source: ArtifactSource,
        *,
        loader: ModelLoader | None = None,
        require_full_load: bool = False,
    ) -> None:
        self._source = source
        self._loader = loader or ModelLoader()
        self._require_full_load = require_full_load
        self._engine = InferenceEngine()
        self._models: Mapping[ModelKind, KerasGraph] = MappingProxyType({})
        self._reports: Mapping[ModelKind, LoadReport] = MappingProxyType({})
        self._logger = get_logger()

    @classmethod
    def from_config(cls, cfg: ModelsConfig) -> ModelRegistry:
        return cls(directory_source(cfg), require_full_load=cfg.require_full_load)

    @property
    def ready(self) -> bool:
        return len(self._models) == len(MODEL_KINDS)

    @property
    def reports(self) -> Mapping[ModelKind, LoadReport]:
        return self._reports

    def initialize(self) -> bool:
        if self.ready:
            self._logger.info("models_already_initialized")
            return True
        t0 = time.perf_counter()
        models: dict[ModelKind, KerasGraph] = {}
        reports: dict[ModelKind, LoadReport] = {}
        try:
            for kind in MODEL_KINDS:
                result = self._loader.load(self._source(kind))
                models[kind] = result.model
                reports[kind] = result.report
                if self._require_full_load and not result.report.complete:
                    bad = ", ".join(f"{r.layer}:{r.reason}" for r in result.report.skipped)
                    raise ModelLoadError(f"{kind.value} model loaded partially ({bad})")
                log_event(
                    "model_ready",
                    {
                        "model_kind": kind.value,
                        "input_shape": _shape_str(result.model.input_shape),
                        "output_shape": _shape_str(result.model.output_shape),
                    },
                )
        except AppError:
            _dispose_all(models)
            self._logger.exception("models_initialize_failed")
            raise
        except (OSError, ValueError, RuntimeError) as exc:
            _dispose_all(models)
            self._logger.exception("models_initialize_failed")
            raise ModelLoadError(f"failed to load models: {exc}") from exc
        # Publish only once every model loaded
        self._models = MappingProxyType(models)
        self._reports = MappingProxyType(reports)
        log_event(
            "models_initialized",
            {"latency_ms": int((time.perf_counter() - t0) * 1000.0)},
        )
        return True

    def get(self, kind: ModelKind) -> KerasGraph:
        model = self._models.get(kind)
        if model is None:
            raise ModelNotInitializedError(f"{kind.value} model not initialized")
        return model

    def predict_symbol(self, tensor: Tensor) -> tuple[float, ...]:
        return self._engine.probabilities(self.get(ModelKind.ocr), tensor)

    def predict_key_signature_type(self, tensor: Tensor) -> tuple[float, ...]:
        return self._engine.probabilities(self.get(ModelKind.key_sig_type), tensor)

    def predict_key_signature_digit_count(self, tensor: Tensor) -> tuple[float, ...]:
        return self._engine.probabilities(self.get(ModelKind.key_sig_digit_count), tensor)

    def dispose(self) -> None:
        _dispose_all(self._models)
        self._models = MappingProxyType({})
        self._reports = MappingProxyType({})


def directory_source(cfg: ModelsConfig) -> ArtifactSource:
    files: dict[ModelKind, str] = {
        ModelKind.ocr: cfg.ocr_artifact,
        ModelKind.key_sig_type: cfg.key_sig_type_artifact,
        ModelKind.key_sig_digit_count: cfg.key_sig_digit_artifact,
    }

    def _load(kind: ModelKind) -> ModelArtifact:
        path: Path = cfg.model_dir / files[kind]
        return ModelArtifact.from_path(path)

    return _load


def _dispose_all(models: Mapping[ModelKind, KerasGraph]) -> None:
    for m in models.values():
        m.dispose()


def _shape_str(shape: tuple[int | None, ...]) -> str:
    return "x".join("N" if d is None else str(d) for d in shape)
