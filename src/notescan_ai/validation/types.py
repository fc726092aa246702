from __future__ import annotations

from dataclasses import dataclass

from ..inference.types import PredictionResult


@dataclass(frozen=True)
class ValidationSetInfo:
    id: str
    name: str
    count: int


@dataclass(frozen=True)
class PagePredictions:
    ocr: PredictionResult
    key_sig_type: PredictionResult
    key_sig_digit_count: PredictionResult

    def to_dict(self) -> dict[str, object]:
        return {
            "ocr": self.ocr.to_dict(),
            "key_sig_type": self.key_sig_type.to_dict(),
            "key_sig_digit_count": self.key_sig_digit_count.to_dict(),
        }


@dataclass
class PageRecord:
    """One reference page; mutated in place as it is processed."""

    id: str
    background_ref: str
    overlay_ref: str
    predictions: PagePredictions | None = None
    processed: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "background_ref": self.background_ref,
            "overlay_ref": self.overlay_ref,
            "processed": self.processed,
            "predictions": self.predictions.to_dict() if self.predictions else None,
        }


@dataclass(frozen=True)
class BatchStats:
    total: int
    processed_count: int
    avg_ocr_confidence: float
    avg_key_sig_type_confidence: float
    avg_digit_confidence: float

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "processed_count": self.processed_count,
            "avg_ocr_confidence": self.avg_ocr_confidence,
            "avg_key_sig_type_confidence": self.avg_key_sig_type_confidence,
            "avg_digit_confidence": self.avg_digit_confidence,
        }
