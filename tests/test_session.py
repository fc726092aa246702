from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from _stubs import CountingPreprocessor, StubModels
from notescan_ai.errors import InvalidTransitionError
from notescan_ai.validation.catalog import ValidationCatalog
from notescan_ai.validation.orchestrator import ValidationOrchestrator
from notescan_ai.validation.session import SessionState, ValidationSession


def _session(root: Path, n: int = 3) -> tuple[ValidationSession, StubModels]:
    d = root / "demo"
    d.mkdir()
    for i in range(n):
        (d / f"background_{i:03d}.png").write_bytes(b"png")
        (d / f"overlay_{i:03d}.png").write_bytes(b"png")
    models = StubModels()
    orch = ValidationOrchestrator(models, CountingPreprocessor())
    return ValidationSession(ValidationCatalog(root), orch), models


def test_happy_path_walks_through_states(tmp_path: Path) -> None:
    s, _ = _session(tmp_path)
    assert s.state is SessionState.set_selection
    assert [x.id for x in s.available_sets()] == ["demo"]

    pages = s.select_set("demo")
    assert len(pages) == 3
    assert s.state is SessionState.set_details
    assert s.selected_set is not None and s.selected_set.name == "Demo"

    s.start_validation()
    assert s.state is SessionState.sheet_view
    assert s.current_page.id == "demo/000"

    assert s.back() is SessionState.set_details
    assert s.back() is SessionState.set_selection
    assert s.selected_set is None and s.pages == ()


def test_navigation_is_clamped(tmp_path: Path) -> None:
    s, _ = _session(tmp_path, n=2)
    s.select_set("demo")
    s.start_validation()
    assert s.prev_page() == 0
    assert s.next_page() == 1
    assert s.next_page() == 1
    assert s.current_page.id == "demo/001"


def test_illegal_transitions_raise(tmp_path: Path) -> None:
    s, _ = _session(tmp_path)
    with pytest.raises(InvalidTransitionError):
        s.start_validation()
    with pytest.raises(InvalidTransitionError):
        s.back()
    with pytest.raises(InvalidTransitionError):
        s.next_page()
    with pytest.raises(InvalidTransitionError):
        asyncio.run(s.process_remaining())
    s.select_set("demo")
    with pytest.raises(InvalidTransitionError):
        s.select_set("demo")
    with pytest.raises(InvalidTransitionError):
        _ = s.current_page


def test_process_current_then_remaining_resumes(tmp_path: Path) -> None:
    s, models = _session(tmp_path)
    s.select_set("demo")
    s.start_validation()
    s.next_page()
    stats = asyncio.run(s.process_current())
    assert stats is not None and stats.processed_count == 1
    assert models.total_calls() == 3

    # Processing the same page again is a no-op
    asyncio.run(s.process_current())
    assert models.total_calls() == 3

    # From index 1: page 1 already done, only page 2 runs
    stats = asyncio.run(s.process_remaining())
    assert models.total_calls() == 6
    assert stats is not None and stats.processed_count == 2
    assert [p.processed for p in s.pages] == [False, True, True]


def test_process_remaining_from_details_runs_everything(tmp_path: Path) -> None:
    s, models = _session(tmp_path)
    s.select_set("demo")
    stats = asyncio.run(s.process_remaining())
    assert stats is not None and stats.processed_count == 3
    assert models.total_calls() == 9
    assert s.stats == stats
