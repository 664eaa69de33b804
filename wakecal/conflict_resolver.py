from __future__ import annotations

from collections import defaultdict
from typing import Callable, Iterable

from wakecal.models import DuplicateHandlingMode, MatchResult

Picker = Callable[[list[MatchResult]], MatchResult]


def _tie_break(item: MatchResult) -> tuple[int, str]:
    return (item.rule.created_at, item.rule.id)


def _earliest(group: list[MatchResult]) -> MatchResult:
    return min(group, key=lambda item: (item.alarm.alarm_time_utc, *_tie_break(item)))


def _latest(group: list[MatchResult]) -> MatchResult:
    return min(group, key=lambda item: (-item.alarm.alarm_time_utc, *_tie_break(item)))


def _shortest_lead(group: list[MatchResult]) -> MatchResult:
    return min(group, key=lambda item: (item.rule.lead_time_minutes, *_tie_break(item)))


def _longest_lead(group: list[MatchResult]) -> MatchResult:
    return min(group, key=lambda item: (-item.rule.lead_time_minutes, *_tie_break(item)))


def picker_for(mode: DuplicateHandlingMode) -> Picker | None:
    """None means every match survives."""
    if mode is DuplicateHandlingMode.ALLOW_MULTIPLE:
        return None
    elif mode is DuplicateHandlingMode.EARLIEST_ONLY:
        return _earliest
    elif mode is DuplicateHandlingMode.LATEST_ONLY:
        return _latest
    elif mode is DuplicateHandlingMode.SHORTEST_LEAD_TIME:
        return _shortest_lead
    elif mode is DuplicateHandlingMode.LONGEST_LEAD_TIME:
        return _longest_lead
    raise ValueError(f"unhandled duplicate handling mode: {mode!r}")


def resolve(matches: Iterable[MatchResult], mode: DuplicateHandlingMode | str) -> list[MatchResult]:
    items = list(matches)
    picker = picker_for(DuplicateHandlingMode.parse(mode))
    if picker is None:
        return items

    groups: dict[str, list[MatchResult]] = defaultdict(list)
    for item in items:
        groups[item.event.id].append(item)

    survivors = {(winner.event.id, winner.rule.id) for winner in (picker(group) for group in groups.values())}
    return [item for item in items if (item.event.id, item.rule.id) in survivors]
