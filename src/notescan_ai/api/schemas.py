from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ClassScoreResponse:
    class_index: int
    confidence: float


@pydantic_dataclass(frozen=True)
class PredictionResponse:
    class_index: int
    confidence: float
    label: str | None
    top_k: list[ClassScoreResponse]


@pydantic_dataclass(frozen=True)
class PagePredictionsResponse:
    ocr: PredictionResponse
    key_sig_type: PredictionResponse
    key_sig_digit_count: PredictionResponse


@pydantic_dataclass(frozen=True)
class ReadResponse:
    predictions: PagePredictionsResponse
    latency_ms: int


@pydantic_dataclass(frozen=True)
class ValidationSetResponse:
    id: str
    name: str
    count: int


@pydantic_dataclass(frozen=True)
class BatchStatsResponse:
    total: int
    processed_count: int
    avg_ocr_confidence: float
    avg_key_sig_type_confidence: float
    avg_digit_confidence: float


@pydantic_dataclass(frozen=True)
class PageResponse:
    id: str
    background_ref: str
    overlay_ref: str
    processed: bool
    predictions: PagePredictionsResponse | None


@pydantic_dataclass(frozen=True)
class RunResponse:
    set_id: str
    pages: list[PageResponse]
    stats: BatchStatsResponse | None
    snapshots: int
