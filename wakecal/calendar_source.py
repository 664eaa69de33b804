from __future__ import annotations

import sqlite3
from typing import Iterable, Protocol

from wakecal.errors import PersistenceError
from wakecal.models import DAY_MS, CalendarEvent, now_millis
from wakecal.state_store import StateStore

# All-day events start at UTC midnight of their date but fire later that local
# day, up to a zone offset past the following UTC midnight.
ALL_DAY_LOOKBACK_MS = 2 * DAY_MS


class CalendarSource(Protocol):
    def list_upcoming_events(self, lookahead_ms: int, now: int | None = None) -> list[CalendarEvent]: ...


class SnapshotCalendarSource:
    """Serves whatever event snapshot was last pushed through the admin API."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def replace_events(self, events: Iterable[CalendarEvent]) -> int:
        try:
            return self.state_store.replace_event_snapshots(events)
        except sqlite3.Error as exc:
            raise PersistenceError(f"failed to store event snapshots: {exc}") from exc

    def list_upcoming_events(self, lookahead_ms: int, now: int | None = None) -> list[CalendarEvent]:
        """Timed events starting in ``[now, now + lookahead)`` plus all-day events that may still fire.

        The rule matcher makes the exact all-day cut against the computed fire time.
        """
        start = now_millis() if now is None else now
        try:
            events = self.state_store.event_snapshots_between(start - ALL_DAY_LOOKBACK_MS, start + lookahead_ms)
        except sqlite3.Error as exc:
            raise PersistenceError(f"failed to read event snapshots: {exc}") from exc
        return [event for event in events if event.is_all_day or event.start_time_utc >= start]
