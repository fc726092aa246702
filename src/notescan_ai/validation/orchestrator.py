from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import replace
from typing import Protocol

from ..config import PageErrorPolicy, Settings
from ..errors import AppError, PageProcessingError, StartIndexError
from ..inference.engine import InferenceEngine, RunnableModel
from ..inference.types import MODEL_KINDS, ModelKind, PredictionResult, label_for
from ..logging import log_event
from ..preprocess import PilPreprocessor, Preprocessor
from .stats import compute_stats
from .types import BatchStats, PagePredictions, PageRecord

_STAGE_ERRORS: tuple[type[BaseException], ...] = (OSError, ValueError, RuntimeError, TypeError)


class ModelSource(Protocol):
    def get(self, kind: ModelKind) -> RunnableModel: ...


class ValidationOrchestrator:
    """Runs the three models over reference pages, one page at a time.

    Blocking work (preprocessing, forward passes) happens in a worker thread
    but pages and stages are awaited strictly in order, so at most one
    page's tensors are alive at any moment.
    """

    def __init__(
        self,
        models: ModelSource,
        preprocessor: Preprocessor,
        *,
        engine: InferenceEngine | None = None,
        page_timeout_seconds: float = 0.0,
        on_page_error: PageErrorPolicy = "abort",
    ) -> None:
        self._models = models
        self._preprocessor = preprocessor
        self._engine = engine or InferenceEngine()
        self._timeout = float(page_timeout_seconds)
        self._on_page_error = on_page_error

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        models: ModelSource,
        preprocessor: Preprocessor | None = None,
    ) -> ValidationOrchestrator:
        v = settings.validation
        return cls(
            models,
            preprocessor or PilPreprocessor(),
            engine=InferenceEngine(top_k=v.top_k),
            page_timeout_seconds=v.page_timeout_seconds,
            on_page_error=v.on_page_error,
        )

    async def process_page(self, page: PageRecord) -> PageRecord:
        t0 = time.perf_counter()
        if self._timeout > 0:
            try:
                preds = await asyncio.wait_for(self._run_page(page), timeout=self._timeout)
            except TimeoutError:
                raise PageProcessingError(
                    page.id, "timeout", f"no result within {self._timeout}s"
                ) from None
        else:
            preds = await self._run_page(page)
        page.predictions = preds
        page.processed = True
        log_event(
            "page_processed",
            {
                "page_id": page.id,
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                "class_index": preds.ocr.class_index,
                "confidence": preds.ocr.confidence,
            },
        )
        return page

    async def iter_batch(
        self,
        pages: Sequence[PageRecord],
        *,
        start: int = 0,
        resume_from_processed: bool = True,
    ) -> AsyncIterator[BatchStats]:
        """Process pages from `start` on, yielding fresh stats after each one."""
        if not 0 <= start <= len(pages):
            raise StartIndexError(f"start {start} outside 0..{len(pages)}")
        for i in range(start, len(pages)):
            page = pages[i]
            if resume_from_processed and page.processed:
                continue
            try:
                await self.process_page(page)
            except PageProcessingError as exc:
                log_event(
                    "page_failed",
                    {"page_id": exc.page_id, "page_index": i, "stage": exc.stage},
                    level=logging.ERROR,
                )
                if self._on_page_error == "abort":
                    raise
                continue
            stats = compute_stats(pages)
            if stats is not None:
                log_event(
                    "batch_progress",
                    {
                        "total": stats.total,
                        "processed": stats.processed_count,
                        "avg_ocr": stats.avg_ocr_confidence,
                        "avg_key_sig_type": stats.avg_key_sig_type_confidence,
                        "avg_digit": stats.avg_digit_confidence,
                    },
                )
                yield stats

    async def process_batch(
        self,
        pages: Sequence[PageRecord],
        *,
        start: int = 0,
        resume_from_processed: bool = True,
        on_stats: Callable[[BatchStats], None] | None = None,
    ) -> BatchStats | None:
        async for stats in self.iter_batch(
            pages, start=start, resume_from_processed=resume_from_processed
        ):
            if on_stats is not None:
                on_stats(stats)
        return compute_stats(pages)

    async def _run_page(self, page: PageRecord) -> PagePredictions:
        results: dict[ModelKind, PredictionResult] = {}
        for kind in MODEL_KINDS:
            results[kind] = await self._run_kind(page, kind)
        return PagePredictions(
            ocr=results[ModelKind.ocr],
            key_sig_type=results[ModelKind.key_sig_type],
            key_sig_digit_count=results[ModelKind.key_sig_digit_count],
        )

    async def _run_kind(self, page: PageRecord, kind: ModelKind) -> PredictionResult:
        # Not-initialized propagates as is; it is not a page fault
        model = self._models.get(kind)
        try:
            tensor = await asyncio.to_thread(
                self._preprocessor.prepare, page.background_ref, kind
            )
        except AppError as exc:
            raise PageProcessingError(page.id, "preprocess", exc.message) from exc
        except _STAGE_ERRORS as exc:
            raise PageProcessingError(page.id, "preprocess", str(exc)) from exc
        try:
            pred = await asyncio.to_thread(self._engine.infer, model, tensor)
        except AppError as exc:
            raise PageProcessingError(page.id, "infer", exc.message) from exc
        except _STAGE_ERRORS as exc:
            raise PageProcessingError(page.id, "infer", str(exc)) from exc
        finally:
            del tensor
        return replace(pred, label=label_for(kind, pred.class_index))
