import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from wakecal.alarm_time import compute_fire_time, local_date_of, local_wall_clock
from wakecal.models import CalendarEvent, Rule, to_millis

NEW_YORK = ZoneInfo("America/New_York")


def _utc(*parts: int) -> int:
    return to_millis(datetime(*parts, tzinfo=timezone.utc))


def _event(start: int, *, all_day: bool = False, zone: str | None = None) -> CalendarEvent:
    return CalendarEvent(
        id="e1",
        title="Team meeting",
        start_time_utc=start,
        end_time_utc=start + 3_600_000,
        calendar_id="1",
        is_all_day=all_day,
        timezone=zone,
    )


class AlarmTimeTests(unittest.TestCase):
    def test_timed_event_subtracts_lead_time(self) -> None:
        start = _utc(2024, 6, 15, 9, 0)
        rule = Rule(id="r1", name="meeting", keyword_pattern="meeting", lead_time_minutes=15)
        self.assertEqual(compute_fire_time(_event(start), rule, 20, 0, NEW_YORK), start - 900_000)

    def test_all_day_event_uses_default_time_in_device_zone(self) -> None:
        event = _event(_utc(2024, 6, 15, 0, 0), all_day=True)
        short = Rule(id="r1", name="a", keyword_pattern="a", lead_time_minutes=15)
        long = Rule(id="r2", name="b", keyword_pattern="b", lead_time_minutes=600)

        fire_at = compute_fire_time(event, short, 21, 0, NEW_YORK)

        self.assertEqual(fire_at, to_millis(datetime(2024, 6, 15, 21, 0, tzinfo=NEW_YORK)))
        self.assertEqual(fire_at, _utc(2024, 6, 16, 1, 0))
        self.assertEqual(compute_fire_time(event, long, 21, 0, NEW_YORK), fire_at)

    def test_all_day_date_is_read_in_event_zone(self) -> None:
        # Midnight in Tokyo on the 15th is still the 14th in UTC.
        event = _event(_utc(2024, 6, 14, 15, 0), all_day=True, zone="Asia/Tokyo")
        self.assertEqual(local_date_of(event, NEW_YORK), date(2024, 6, 15))

    def test_spring_forward_gap_resolves_forward(self) -> None:
        fire_at = local_wall_clock(date(2024, 3, 10), 2, 30, NEW_YORK)
        self.assertEqual(fire_at, _utc(2024, 3, 10, 7, 30))
        self.assertEqual(datetime.fromtimestamp(fire_at / 1000, NEW_YORK).hour, 3)

    def test_fall_back_ambiguity_takes_first_occurrence(self) -> None:
        self.assertEqual(local_wall_clock(date(2024, 11, 3), 1, 30, NEW_YORK), _utc(2024, 11, 3, 5, 30))

    def test_compute_fire_time_is_idempotent(self) -> None:
        rule = Rule(id="r1", name="a", keyword_pattern="a", lead_time_minutes=45)
        for event in (_event(_utc(2024, 6, 15, 9, 0)), _event(_utc(2024, 6, 15, 0, 0), all_day=True)):
            first = compute_fire_time(event, rule, 20, 0, NEW_YORK)
            self.assertEqual(compute_fire_time(event, rule, 20, 0, NEW_YORK), first)

    def test_local_date_of_timed_event_uses_device_zone(self) -> None:
        event = _event(_utc(2024, 6, 15, 2, 0))
        self.assertEqual(local_date_of(event, NEW_YORK), date(2024, 6, 14))
        self.assertEqual(local_date_of(event, ZoneInfo("UTC")), date(2024, 6, 15))


if __name__ == "__main__":
    unittest.main()
