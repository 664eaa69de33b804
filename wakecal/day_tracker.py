from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date
from typing import Callable, Iterator
from zoneinfo import ZoneInfo

from wakecal.errors import PersistenceError
from wakecal.models import local_midnight_after, now_millis, to_datetime
from wakecal.state_store import StateStore

logger = logging.getLogger(__name__)

LAST_RESET_META_KEY = "day_tracker.last_reset_date"
ZONE_META_KEY = "day_tracker.zone"


@contextmanager
def _tracking_io(what: str, rule_id: str = "") -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise PersistenceError(f"failed to {what}: {exc}", rule_id=rule_id) from exc


class DayTracker:
    """Remembers which event consumed a first-event-of-day rule on a local date.

    Rows live in the ``day_tracking`` table keyed by (rule_id, local_date) and
    carry the zone the date was computed under. A row recorded under another
    zone is treated as absent.
    """

    def __init__(
        self,
        state_store: StateStore,
        zone_provider: Callable[[], ZoneInfo],
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.state_store = state_store
        self.zone_provider = zone_provider
        self.clock = clock

    def zone(self) -> ZoneInfo:
        return self.zone_provider()

    def today(self, zone: ZoneInfo | None = None) -> date:
        return to_datetime(self.clock()).astimezone(zone or self.zone()).date()

    def consumed_by(self, rule_id: str, local_date: date) -> str | None:
        with _tracking_io("read day tracking", rule_id):
            entry = self.state_store.get_day_entry(rule_id, local_date.isoformat())
        if entry is None or entry["zone"] != self.zone().key:
            return None
        return str(entry["event_id"])

    def is_first_event_consumed(self, rule_id: str, local_date: date) -> bool:
        return self.consumed_by(rule_id, local_date) is not None

    def mark_consumed(self, rule_id: str, local_date: date, event_id: str) -> None:
        with _tracking_io("record first event of day", rule_id):
            self.state_store.put_day_entry(
                rule_id=rule_id,
                local_date=local_date.isoformat(),
                zone=self.zone().key,
                event_id=event_id,
            )

    def reset(self) -> int:
        today = self.today()
        with _tracking_io("reset day tracking"):
            removed = self.state_store.delete_day_entries(before_date=today.isoformat())
            self.state_store.set_meta(LAST_RESET_META_KEY, today.isoformat())
        logger.info("Day tracker reset for %s, dropped %d stale entries", today.isoformat(), removed)
        return removed

    def handle_timezone_change(self, new_zone: ZoneInfo | None = None) -> int:
        zone = new_zone or self.zone()
        today = self.today(zone)
        with _tracking_io("move day tracking to a new zone"):
            removed = self.state_store.delete_day_entries(before_date=today.isoformat(), keep_zone=zone.key)
            self.state_store.set_meta(ZONE_META_KEY, zone.key)
            self.state_store.set_meta(LAST_RESET_META_KEY, today.isoformat())
        logger.info("Day tracker moved to %s, dropped %d entries", zone.key, removed)
        return removed

    def needs_reset(self) -> bool:
        with _tracking_io("read day tracking reset date"):
            last = self.state_store.get_meta(LAST_RESET_META_KEY)
        return last is None or last < self.today().isoformat()

    def next_reset_at(self) -> int:
        zone = self.zone()
        return local_midnight_after(self.today(zone), zone)
