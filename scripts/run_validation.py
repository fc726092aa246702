from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass, replace

from notescan_ai.config import PageErrorPolicy, Settings
from notescan_ai.inference.registry import ModelRegistry
from notescan_ai.validation.catalog import ValidationCatalog
from notescan_ai.validation.orchestrator import ValidationOrchestrator
from notescan_ai.validation.types import BatchStats


@dataclass(frozen=True)
class RunArgs:
    set_id: str
    start: int
    resume: bool
    on_error: PageErrorPolicy | None


def parse_args(argv: list[str] | None = None) -> RunArgs:
    ap = argparse.ArgumentParser(description="Run the recognition models over a validation set")
    ap.add_argument("--set", dest="set_id", required=True, help="Validation set id")
    ap.add_argument("--start", type=int, default=0, help="Page index to start from")
    ap.add_argument(
        "--no-resume", action="store_true", help="Reprocess pages that already have results"
    )
    ap.add_argument(
        "--on-error", choices=["abort", "skip"], default=None, help="Override page error policy"
    )
    a = ap.parse_args(argv)
    on_error: PageErrorPolicy | None = None
    if a.on_error == "abort":
        on_error = "abort"
    elif a.on_error == "skip":
        on_error = "skip"
    return RunArgs(
        set_id=str(a.set_id),
        start=int(a.start),
        resume=not bool(a.no_resume),
        on_error=on_error,
    )


async def run_set(
    args: RunArgs, settings: Settings, registry: ModelRegistry
) -> BatchStats | None:
    if args.on_error is not None:
        settings = replace(
            settings, validation=replace(settings.validation, on_page_error=args.on_error)
        )
    catalog = ValidationCatalog(settings.validation.sets_root)
    orchestrator = ValidationOrchestrator.from_settings(settings, registry)
    pages = catalog.load_set(args.set_id)
    return await orchestrator.process_batch(
        pages, start=args.start, resume_from_processed=args.resume
    )


def run(args: RunArgs, settings: Settings | None = None) -> BatchStats | None:
    s = settings or Settings.load()
    registry = ModelRegistry.from_config(s.models)
    registry.initialize()
    try:
        stats = asyncio.run(run_set(args, s, registry))
    finally:
        registry.dispose()
    logger = logging.getLogger("notescan_ai")
    if stats is None:
        logger.info("validation_run_empty set_id=%s", args.set_id)
    else:
        logger.info(
            "validation_run_finished set_id=%s total=%d processed=%d "
            "avg_ocr=%.1f avg_key_sig_type=%.1f avg_digit=%.1f",
            args.set_id,
            stats.total,
            stats.processed_count,
            stats.avg_ocr_confidence,
            stats.avg_key_sig_type_confidence,
            stats.avg_digit_confidence,
        )
    return stats


def main() -> None:  # pragma: no cover - tiny glue
    from notescan_ai.logging import init_logging

    init_logging()
    run(parse_args())


if __name__ == "__main__":
    main()
