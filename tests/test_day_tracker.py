import sqlite3
import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

from wakecal.day_tracker import LAST_RESET_META_KEY, ZONE_META_KEY, DayTracker
from wakecal.errors import PersistenceError
from wakecal.models import DAY_MS, to_millis
from wakecal.state_store import StateStore

NEW_YORK = ZoneInfo("America/New_York")
PARIS = ZoneInfo("Europe/Paris")


class DayTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.zone = NEW_YORK
        # 08:00 in New York.
        self.now = to_millis(datetime(2024, 6, 14, 12, 0, tzinfo=timezone.utc))
        self.tracker = DayTracker(self.state_store, lambda: self.zone, lambda: self.now)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_mark_and_query(self) -> None:
        today = self.tracker.today()
        self.assertEqual(today, date(2024, 6, 14))
        self.assertFalse(self.tracker.is_first_event_consumed("r1", today))

        self.tracker.mark_consumed("r1", today, "e1")

        self.assertTrue(self.tracker.is_first_event_consumed("r1", today))
        self.assertEqual(self.tracker.consumed_by("r1", today), "e1")
        self.assertIsNone(self.tracker.consumed_by("r2", today))

    def test_entries_from_another_zone_are_ignored(self) -> None:
        self.tracker.mark_consumed("r1", date(2024, 6, 14), "e1")
        self.zone = PARIS
        self.assertIsNone(self.tracker.consumed_by("r1", date(2024, 6, 14)))

    def test_reset_drops_past_days_only(self) -> None:
        self.tracker.mark_consumed("r1", date(2024, 6, 13), "yesterday")
        self.tracker.mark_consumed("r1", date(2024, 6, 14), "today")
        self.assertTrue(self.tracker.needs_reset())

        removed = self.tracker.reset()

        self.assertEqual(removed, 1)
        self.assertEqual([entry["event_id"] for entry in self.state_store.list_day_entries()], ["today"])
        self.assertEqual(self.state_store.get_meta(LAST_RESET_META_KEY), "2024-06-14")
        self.assertFalse(self.tracker.needs_reset())

        self.now += DAY_MS
        self.assertTrue(self.tracker.needs_reset())

    def test_timezone_change_discards_other_zones(self) -> None:
        self.tracker.mark_consumed("r1", date(2024, 6, 14), "ny")
        self.zone = PARIS
        self.tracker.mark_consumed("r2", date(2024, 6, 14), "paris")

        removed = self.tracker.handle_timezone_change(PARIS)

        self.assertEqual(removed, 1)
        self.assertEqual([entry["event_id"] for entry in self.state_store.list_day_entries()], ["paris"])
        self.assertEqual(self.state_store.get_meta(ZONE_META_KEY), "Europe/Paris")

    def test_next_reset_is_local_midnight(self) -> None:
        expected = to_millis(datetime(2024, 6, 15, 0, 0, tzinfo=NEW_YORK))
        self.assertEqual(self.tracker.next_reset_at(), expected)

    def test_storage_errors_surface_as_persistence_errors(self) -> None:
        with sqlite3.connect(self.state_store.db_path) as conn:
            conn.execute("DROP TABLE day_tracking")
            conn.execute("DROP TABLE app_meta")
        today = self.tracker.today()

        with self.assertRaises(PersistenceError) as caught:
            self.tracker.consumed_by("r1", today)
        self.assertEqual(caught.exception.rule_id, "r1")
        with self.assertRaises(PersistenceError):
            self.tracker.mark_consumed("r1", today, "e1")
        with self.assertRaises(PersistenceError):
            self.tracker.reset()
        with self.assertRaises(PersistenceError):
            self.tracker.handle_timezone_change(PARIS)
        with self.assertRaises(PersistenceError):
            self.tracker.needs_reset()


if __name__ == "__main__":
    unittest.main()
