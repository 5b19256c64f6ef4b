"""Sync session state: phases, cursors and counters carried between invocations."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from engagesync.services.parsers import parse_datetime, parse_int

MAX_RECENT_ERRORS = 20


class Phase(str, Enum):
    CONTACTS = "contacts"
    SESSIONS = "sessions"
    METRICS = "metrics"
    LINKING = "linking"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER = [Phase.CONTACTS, Phase.SESSIONS, Phase.METRICS, Phase.LINKING, Phase.COMPLETE]
CURSOR_PHASES = [Phase.CONTACTS, Phase.SESSIONS, Phase.METRICS, Phase.LINKING]
COUNTERS = ("contacts_synced", "sessions_synced", "calls_synced", "records_synced", "leads_linked")


@dataclass
class Cursor:
    """Resumption point within a phase: next page to fetch, items already done on it."""

    page: int = 1
    offset: int = 0


@dataclass
class SyncSession:
    """
    Resumable state of one sync run.

    Persisted as ``SyncConnection.sync_progress`` after every page so a
    killed invocation loses at most the page in flight.
    """

    phase: Phase = Phase.CONTACTS
    cursors: dict[Phase, Cursor] = field(default_factory=lambda: {p: Cursor() for p in CURSOR_PHASES})
    contacts_synced: int = 0
    sessions_synced: int = 0
    calls_synced: int = 0
    records_synced: int = 0
    leads_linked: int = 0
    heartbeat: Optional[datetime] = None
    started_on: Optional[date] = None  # fixes the remote date window for the whole run
    error: Optional[str] = None
    failed_phase: Optional[Phase] = None
    errors: list[str] = field(default_factory=list)

    def cursor(self, phase: Phase | None = None) -> Cursor:
        return self.cursors.setdefault(phase or self.phase, Cursor())

    @property
    def is_finished(self) -> bool:
        return self.phase in (Phase.COMPLETE, Phase.ERROR)

    def advance(self) -> Phase:
        """Move to the next phase in order. Complete and error are absorbing."""
        if not self.is_finished:
            self.phase = PHASE_ORDER[PHASE_ORDER.index(self.phase) + 1]
        return self.phase

    def fail(self, message: str):
        if self.phase != Phase.ERROR:
            self.failed_phase = self.phase
        self.phase = Phase.ERROR
        self.error = message

    def resume_after_error(self):
        """Explicit retry: re-enter the phase that failed at its saved cursor."""
        if self.phase == Phase.ERROR:
            self.phase = self.failed_phase or Phase.CONTACTS
            self.failed_phase = None
            self.error = None

    def record_error(self, message: str):
        self.errors = (self.errors + [message])[-MAX_RECENT_ERRORS:]

    def add(self, counter: str, amount: int):
        setattr(self, counter, getattr(self, counter) + amount)

    def counters(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in COUNTERS}

    def to_progress(self) -> dict[str, Any]:
        """Serialize to the persisted ``sync_progress`` JSON shape."""
        progress: dict[str, Any] = {"phase": self.phase.value}
        for phase, cursor in self.cursors.items():
            progress[f"{phase.value}_page"] = cursor.page
            progress[f"{phase.value}_offset"] = cursor.offset
        progress.update(self.counters())
        progress["heartbeat"] = self.heartbeat.isoformat() if self.heartbeat else None
        progress["started_on"] = self.started_on.isoformat() if self.started_on else None
        if self.error:
            progress["error"] = self.error
        if self.failed_phase:
            progress["failed_phase"] = self.failed_phase.value
        progress["errors"] = list(self.errors)
        return progress

    @classmethod
    def from_progress(cls, progress: Any) -> "SyncSession":
        """Rebuild a session from persisted JSON; unknown or corrupt fields fall back to defaults."""
        if not isinstance(progress, dict):
            return cls()

        session = cls(phase=_phase(progress.get("phase")) or Phase.CONTACTS)
        for phase in CURSOR_PHASES:
            page = parse_int(progress.get(f"{phase.value}_page"))
            offset = parse_int(progress.get(f"{phase.value}_offset"))
            session.cursors[phase] = Cursor(
                page=page if page and page > 0 else 1,
                offset=offset if offset and offset > 0 else 0,
            )
        for name in COUNTERS:
            setattr(session, name, parse_int(progress.get(name)) or 0)
        session.heartbeat = parse_datetime(progress.get("heartbeat"))
        started_on = parse_datetime(progress.get("started_on"))
        session.started_on = started_on.date() if started_on else None
        session.error = progress.get("error") or None
        session.failed_phase = _phase(progress.get("failed_phase"))
        errors = progress.get("errors")
        session.errors = [str(e) for e in errors][-MAX_RECENT_ERRORS:] if isinstance(errors, list) else []
        return session


def _phase(value: Any) -> Optional[Phase]:
    try:
        return Phase(value)
    except ValueError:
        return None
