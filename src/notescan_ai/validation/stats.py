from __future__ import annotations

from collections.abc import Sequence

from ..inference.types import round_tenth
from .types import BatchStats, PagePredictions, PageRecord


def compute_stats(pages: Sequence[PageRecord]) -> BatchStats | None:
    """Summarize confidences over processed pages.

    Returns None for an empty page list. Recomputed from the pages on every
    call; nothing is cached between calls.
    """
    if not pages:
        return None
    done: list[PagePredictions] = [
        p.predictions for p in pages if p.predictions is not None
    ]
    return BatchStats(
        total=len(pages),
        processed_count=len(done),
        avg_ocr_confidence=_mean([d.ocr.confidence for d in done]),
        avg_key_sig_type_confidence=_mean([d.key_sig_type.confidence for d in done]),
        avg_digit_confidence=_mean([d.key_sig_digit_count.confidence for d in done]),
    )


def _mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return round_tenth(sum(values) / len(values))
