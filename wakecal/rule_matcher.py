from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Protocol
from zoneinfo import ZoneInfo

from wakecal.alarm_time import all_day_fire_time, compute_fire_time, local_date_of
from wakecal.identity import derive_key, derive_request_code
from wakecal.models import CalendarEvent, MatchResult, Rule, ScheduledAlarm

logger = logging.getLogger(__name__)


class DayLedger(Protocol):
    def consumed_by(self, rule_id: str, local_date: date) -> str | None: ...


@dataclass
class Suppression:
    event_id: str
    rule_id: str
    local_date: date
    held_by: str


@dataclass
class MatchReport:
    matches: list[MatchResult] = field(default_factory=list)
    invalid_rules: list[tuple[Rule, list[str]]] = field(default_factory=list)
    suppressed: list[Suppression] = field(default_factory=list)


def compile_pattern(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def validate_pattern(pattern: str, is_regex: bool) -> str | None:
    if not str(pattern or "").strip():
        return "keyword pattern is blank"
    if is_regex:
        try:
            re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            return f"keyword pattern does not compile: {exc}"
    return None


def matches_title(title: str, pattern: str, is_regex: bool, compiled: re.Pattern[str] | None = None) -> bool:
    if not is_regex:
        return pattern.casefold() in (title or "").casefold()
    compiled = compiled or compile_pattern(pattern)
    if compiled is None:
        return False
    try:
        return compiled.search(title or "") is not None
    except (re.error, RecursionError):
        return False


def _in_window(event: CalendarEvent, now: int, lookahead_ms: int, all_day_fire_at: int | None = None) -> bool:
    """Timed events must start inside the window; all-day events stay eligible until their alarm fires."""
    if event.start_time_utc >= now + lookahead_ms:
        return False
    if event.is_all_day and all_day_fire_at is not None:
        return all_day_fire_at > now
    return event.start_time_utc >= now


def _candidate(event: CalendarEvent, rule: Rule, fire_at: int, now: int) -> ScheduledAlarm:
    return ScheduledAlarm(
        id=derive_key(event.id, rule.id),
        event_id=event.id,
        rule_id=rule.id,
        event_title=event.title,
        event_start_time_utc=event.start_time_utc,
        alarm_time_utc=fire_at,
        request_code=derive_request_code(event.id, rule.id),
        last_event_modified=event.last_modified,
        scheduled_at=now,
        user_dismissed=False,
        is_all_day=event.is_all_day,
        lead_time_minutes=rule.lead_time_minutes,
    )


def _first_of_day(
    rule: Rule,
    events: list[CalendarEvent],
    day_tracker: DayLedger | None,
    zone: ZoneInfo,
    report: MatchReport,
) -> list[CalendarEvent]:
    by_day: dict[date, list[CalendarEvent]] = defaultdict(list)
    for event in events:
        by_day[local_date_of(event, zone)].append(event)

    kept: list[CalendarEvent] = []
    for day, day_events in by_day.items():
        day_events.sort(key=lambda item: (item.start_time_utc, item.id))
        holder = day_tracker.consumed_by(rule.id, day) if day_tracker is not None else None
        winner_id = holder or day_events[0].id
        for event in day_events:
            if event.id == winner_id:
                kept.append(event)
            else:
                report.suppressed.append(
                    Suppression(event_id=event.id, rule_id=rule.id, local_date=day, held_by=winner_id)
                )
    return kept


def match_report(
    events: Iterable[CalendarEvent],
    rules: Iterable[Rule],
    day_tracker: DayLedger | None = None,
    *,
    now: int,
    lookahead_ms: int,
    zone: ZoneInfo,
    all_day_hour: int = 20,
    all_day_minute: int = 0,
) -> MatchReport:
    report = MatchReport()
    window = [
        event
        for event in events
        if event.id
        and _in_window(
            event,
            now,
            lookahead_ms,
            all_day_fire_time(event, all_day_hour, all_day_minute, zone) if event.is_all_day else None,
        )
    ]

    for rule in rules:
        if not rule.enabled:
            continue
        reasons = rule.validate()
        if reasons:
            logger.warning("Skipping invalid rule %s (%s): %s", rule.id, rule.name, "; ".join(reasons))
            report.invalid_rules.append((rule, reasons))
            continue

        compiled = compile_pattern(rule.keyword_pattern) if rule.is_regex else None
        calendars = set(rule.calendar_ids)
        hits = [
            event
            for event in window
            if (not calendars or event.calendar_id in calendars)
            and matches_title(event.title, rule.keyword_pattern, rule.is_regex, compiled)
        ]
        if rule.first_event_of_day_only:
            hits = _first_of_day(rule, hits, day_tracker, zone, report)

        for event in hits:
            fire_at = compute_fire_time(event, rule, all_day_hour, all_day_minute, zone)
            report.matches.append(MatchResult(event=event, rule=rule, alarm=_candidate(event, rule, fire_at, now)))

    report.matches.sort(key=lambda item: (item.alarm.alarm_time_utc, item.event.id, item.rule.id))
    return report


def match(
    events: Iterable[CalendarEvent],
    rules: Iterable[Rule],
    day_tracker: DayLedger | None = None,
    *,
    now: int,
    lookahead_ms: int,
    zone: ZoneInfo,
    all_day_hour: int = 20,
    all_day_minute: int = 0,
) -> list[MatchResult]:
    return match_report(
        events,
        rules,
        day_tracker,
        now=now,
        lookahead_ms=lookahead_ms,
        zone=zone,
        all_day_hour=all_day_hour,
        all_day_minute=all_day_minute,
    ).matches
