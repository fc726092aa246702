from __future__ import annotations

from notescan_ai.inference.types import PredictionResult
from notescan_ai.validation.stats import compute_stats
from notescan_ai.validation.types import PagePredictions, PageRecord


def _pred(conf: float) -> PredictionResult:
    return PredictionResult(class_index=0, confidence=conf, top_k=())


def _page(i: int, ocr: float | None, ks: float = 50.0, dc: float = 60.0) -> PageRecord:
    p = PageRecord(id=f"s/{i:03d}", background_ref="b", overlay_ref="o")
    if ocr is not None:
        p.predictions = PagePredictions(
            ocr=_pred(ocr), key_sig_type=_pred(ks), key_sig_digit_count=_pred(dc)
        )
        p.processed = True
    return p


def test_empty_input_returns_none() -> None:
    assert compute_stats([]) is None


def test_averages_only_processed_pages() -> None:
    pages = [_page(0, 90.0, 40.0, 70.0), _page(1, 80.0, 61.0, 71.0), _page(2, None)]
    stats = compute_stats(pages)
    assert stats is not None
    assert stats.total == 3
    assert stats.processed_count == 2
    assert stats.avg_ocr_confidence == 85.0
    assert stats.avg_key_sig_type_confidence == 50.5
    assert stats.avg_digit_confidence == 70.5


def test_nothing_processed_gives_zero_averages() -> None:
    stats = compute_stats([_page(0, None), _page(1, None)])
    assert stats is not None
    assert (stats.total, stats.processed_count) == (2, 0)
    assert stats.avg_ocr_confidence == 0.0


def test_averages_round_to_one_decimal() -> None:
    stats = compute_stats([_page(0, 33.3), _page(1, 33.3), _page(2, 33.5)])
    assert stats is not None
    assert stats.avg_ocr_confidence == 33.4


def test_stats_are_recomputed_from_pages() -> None:
    pages = [_page(0, None)]
    first = compute_stats(pages)
    pages[0] = _page(0, 10.0)
    second = compute_stats(pages)
    assert first is not None and second is not None
    assert first.processed_count == 0 and second.processed_count == 1


def test_exact_tie_rounds_up() -> None:
    # (50.5 + 50.0) / 2 is exactly 50.25
    stats = compute_stats([_page(0, 50.5), _page(1, 50.0)])
    assert stats is not None
    assert stats.avg_ocr_confidence == 50.3
