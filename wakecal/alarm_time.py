from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from wakecal.models import MINUTE_MS, CalendarEvent, Rule, resolve_zone, to_datetime, to_millis


def event_own_date(event: CalendarEvent) -> date:
    """Date an all-day event falls on, read in the event's own zone."""
    return to_datetime(event.start_time_utc).astimezone(resolve_zone(event.timezone)).date()


def local_date_of(event: CalendarEvent, zone: ZoneInfo) -> date:
    if event.is_all_day:
        return event_own_date(event)
    return to_datetime(event.start_time_utc).astimezone(zone).date()


def local_wall_clock(day: date, hour: int, minute: int, zone: ZoneInfo) -> int:
    # fold=0: a gap time lands after the jump, an ambiguous time takes the first occurrence.
    return to_millis(datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone))


def all_day_fire_time(event: CalendarEvent, all_day_hour: int, all_day_minute: int, zone: ZoneInfo) -> int:
    return local_wall_clock(event_own_date(event), all_day_hour, all_day_minute, zone)


def compute_fire_time(
    event: CalendarEvent,
    rule: Rule,
    all_day_hour: int,
    all_day_minute: int,
    zone: ZoneInfo,
) -> int:
    if event.is_all_day:
        return all_day_fire_time(event, all_day_hour, all_day_minute, zone)
    return event.start_time_utc - rule.lead_time_minutes * MINUTE_MS
