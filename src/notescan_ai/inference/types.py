from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Final, Literal


class ModelKind(str, Enum):
    ocr = "ocr"
    key_sig_type = "key_sig_type"
    key_sig_digit_count = "key_sig_digit_count"


# Load order is fixed: OCR first, then key-signature type, then count
MODEL_KINDS: Final[tuple[ModelKind, ...]] = (
    ModelKind.ocr,
    ModelKind.key_sig_type,
    ModelKind.key_sig_digit_count,
)

# (height, width) of the single-channel input each model expects
INPUT_HW: Final[dict[ModelKind, tuple[int, int]]] = {
    ModelKind.ocr: (24, 24),
    ModelKind.key_sig_type: (30, 15),
    ModelKind.key_sig_digit_count: (30, 27),
}

N_CLASSES: Final[dict[ModelKind, int]] = {
    ModelKind.ocr: 71,
    ModelKind.key_sig_type: 3,
    ModelKind.key_sig_digit_count: 11,
}

KEY_SIG_TYPE_LABELS: Final[tuple[str, ...]] = ("None", "Sharps", "Flats")


def label_for(kind: ModelKind, class_index: int) -> str | None:
    if kind is ModelKind.key_sig_type:
        if 0 <= class_index < len(KEY_SIG_TYPE_LABELS):
            return KEY_SIG_TYPE_LABELS[class_index]
        return "Unknown"
    if kind is ModelKind.key_sig_digit_count:
        # Class index is the accidental count
        return str(class_index)
    return None


def round_tenth(x: float) -> float:
    """Round to one decimal place, exact ties away from zero."""
    # Decimal(float) is exact, so only true binary ties round up
    return float(Decimal(x).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ClassScore:
    class_index: int
    confidence: float


@dataclass(frozen=True)
class PredictionResult:
    class_index: int
    confidence: float  # percent, one decimal place
    top_k: tuple[ClassScore, ...]
    label: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "class_index": self.class_index,
            "confidence": self.confidence,
            "label": self.label,
            "top_k": [
                {"class_index": s.class_index, "confidence": s.confidence} for s in self.top_k
            ],
        }


LoadReason = Literal[
    "applied",
    "unknown_layer",
    "no_weights",
    "weight_count_mismatch",
    "shape_mismatch",
    "not_in_artifact",
]


@dataclass(frozen=True)
class LayerLoadReport:
    layer: str
    applied: bool
    reason: LoadReason


@dataclass(frozen=True)
class LoadReport:
    layers: tuple[LayerLoadReport, ...]

    @property
    def applied(self) -> tuple[str, ...]:
        return tuple(r.layer for r in self.layers if r.applied)

    @property
    def skipped(self) -> tuple[LayerLoadReport, ...]:
        return tuple(r for r in self.layers if not r.applied)

    @property
    def complete(self) -> bool:
        return all(r.applied for r in self.layers)
