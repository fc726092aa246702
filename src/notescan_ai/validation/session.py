from __future__ import annotations

from enum import Enum
from typing import Final

from ..errors import InvalidTransitionError
from ..logging import log_event
from .catalog import ValidationCatalog
from .orchestrator import ValidationOrchestrator
from .stats import compute_stats
from .types import BatchStats, PageRecord, ValidationSetInfo


class SessionState(str, Enum):
    set_selection = "set_selection"
    set_details = "set_details"
    sheet_view = "sheet_view"


# Where `back` leads from each state
_BACK: Final[dict[SessionState, SessionState]] = {
    SessionState.sheet_view: SessionState.set_details,
    SessionState.set_details: SessionState.set_selection,
}


class ValidationSession:
    """In-memory walk through one validation set.

    set_selection --select_set--> set_details --start_validation--> sheet_view
    `back` steps one state up. Pages and stats live only as long as the
    session holds the set.
    """

    def __init__(self, catalog: ValidationCatalog, orchestrator: ValidationOrchestrator) -> None:
        self._catalog = catalog
        self._orchestrator = orchestrator
        self._state = SessionState.set_selection
        self._set: ValidationSetInfo | None = None
        self._pages: list[PageRecord] = []
        self._index = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def selected_set(self) -> ValidationSetInfo | None:
        return self._set

    @property
    def pages(self) -> tuple[PageRecord, ...]:
        return tuple(self._pages)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current_page(self) -> PageRecord:
        self._require(SessionState.sheet_view, "current_page")
        return self._pages[self._index]

    @property
    def stats(self) -> BatchStats | None:
        return compute_stats(self._pages)

    def available_sets(self) -> list[ValidationSetInfo]:
        return self._catalog.list_available_sets()

    def select_set(self, set_id: str) -> list[PageRecord]:
        self._require(SessionState.set_selection, "select_set")
        pages = self._catalog.load_set(set_id)
        info = next((s for s in self._catalog.list_available_sets() if s.id == set_id), None)
        self._set = info or ValidationSetInfo(id=set_id, name=set_id, count=len(pages))
        self._pages = pages
        self._index = 0
        self._move(SessionState.set_details)
        return pages

    def start_validation(self) -> None:
        self._require(SessionState.set_details, "start_validation")
        self._move(SessionState.sheet_view)

    def back(self) -> SessionState:
        target = _BACK.get(self._state)
        if target is None:
            raise InvalidTransitionError(f"cannot go back from {self._state.value}")
        if target is SessionState.set_selection:
            self._set = None
            self._pages = []
            self._index = 0
        self._move(target)
        return self._state

    def next_page(self) -> int:
        self._require(SessionState.sheet_view, "next_page")
        if self._index < len(self._pages) - 1:
            self._index += 1
        return self._index

    def prev_page(self) -> int:
        self._require(SessionState.sheet_view, "prev_page")
        if self._index > 0:
            self._index -= 1
        return self._index

    async def process_current(self) -> BatchStats | None:
        page = self.current_page
        if not page.processed:
            await self._orchestrator.process_page(page)
        return self.stats

    async def process_remaining(self) -> BatchStats | None:
        """Process from the current page to the end, skipping finished pages."""
        if self._state not in (SessionState.set_details, SessionState.sheet_view):
            raise InvalidTransitionError(f"process_remaining not allowed in {self._state.value}")
        return await self._orchestrator.process_batch(
            self._pages, start=self._index, resume_from_processed=True
        )

    def _require(self, state: SessionState, action: str) -> None:
        if self._state is not state:
            raise InvalidTransitionError(f"{action} not allowed in {self._state.value}")

    def _move(self, target: SessionState) -> None:
        log_event("session_transition", {"from": self._state.value, "to": target.value})
        self._state = target
