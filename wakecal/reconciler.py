from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable

from wakecal.alarm_scheduler import ExactAlarmScheduler
from wakecal.alarm_store import AlarmStoreProtocol
from wakecal.errors import (
    CollisionError,
    PersistenceError,
    PlatformSchedulingError,
    ValidationError,
    WakecalError,
)
from wakecal.identity import RequestCodeRegistry, derive_key
from wakecal.models import MatchResult, RefreshFailure, ScheduledAlarm, serialize_millis

logger = logging.getLogger(__name__)

Validator = Callable[[ScheduledAlarm, int], "str | None"]

SCHEDULE = "schedule"
UPDATE = "update"
REFRESH = "refresh"
CANCEL = "cancel"
REARM = "rearm"
ORPHAN = "orphan"


def reject_past_due(alarm: ScheduledAlarm, now: int) -> str | None:
    if alarm.alarm_time_utc <= now:
        return f"alarm time {serialize_millis(alarm.alarm_time_utc)} is not in the future"
    return None


@dataclass
class AlarmChange:
    action: str
    alarm: ScheduledAlarm
    previous: ScheduledAlarm | None = None
    match: MatchResult | None = None
    reason: str = ""


@dataclass
class Rejection:
    alarm: ScheduledAlarm
    reason: str
    match: MatchResult | None = None


def rejection_error(rejection: Rejection) -> ValidationError:
    alarm = rejection.alarm
    return ValidationError(rejection.reason, alarm_id=alarm.id, event_id=alarm.event_id, rule_id=alarm.rule_id)


@dataclass
class ReconcilePlan:
    to_schedule: list[AlarmChange] = field(default_factory=list)
    to_update: list[AlarmChange] = field(default_factory=list)
    to_cancel: list[AlarmChange] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)
    unchanged: list[ScheduledAlarm] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.to_schedule or self.to_update or self.to_cancel)

    def changes(self) -> list[AlarmChange]:
        # Cancels first so freed request codes are reusable by later schedules.
        return [*self.to_cancel, *self.to_update, *self.to_schedule]


@dataclass
class ItemOutcome:
    action: str
    alarm_id: str
    event_id: str
    rule_id: str
    ok: bool
    message: str = ""
    failure: RefreshFailure | None = None
    change: AlarmChange | None = None


def _survivor(key: tuple[str, str], rows: list[ScheduledAlarm]) -> ScheduledAlarm:
    canonical = derive_key(*key)
    for row in rows:
        if row.id == canonical:
            return row
    return max(rows, key=lambda row: (row.scheduled_at, row.id))


def _plan_item(
    plan: ReconcilePlan,
    match: MatchResult,
    row: ScheduledAlarm | None,
    now: int,
    validator: Validator,
) -> None:
    candidate = match.alarm

    if row is None:
        reason = validator(candidate, now)
        if reason:
            plan.rejected.append(Rejection(candidate, reason, match))
        else:
            plan.to_schedule.append(AlarmChange(SCHEDULE, candidate, None, match, "new_match"))
        return

    if row.user_dismissed:
        if candidate.last_event_modified <= row.last_event_modified:
            plan.unchanged.append(row)
            return
        reason = validator(candidate, now)
        if reason:
            plan.rejected.append(Rejection(candidate, reason, match))
            return
        target = candidate.with_updates(
            id=row.id, request_code=row.request_code, scheduled_at=now, user_dismissed=False
        )
        plan.to_update.append(AlarmChange(UPDATE, target, row, match, "event_modified_after_dismissal"))
        return

    if row.alarm_time_utc == candidate.alarm_time_utc:
        if not row.is_pending(now) or row.same_content(candidate):
            plan.unchanged.append(row)
            return
        target = row.with_updates(
            event_title=candidate.event_title,
            event_start_time_utc=candidate.event_start_time_utc,
            last_event_modified=candidate.last_event_modified,
            is_all_day=candidate.is_all_day,
            lead_time_minutes=candidate.lead_time_minutes,
        )
        plan.to_update.append(AlarmChange(REFRESH, target, row, match, "content_changed"))
        return

    reason = validator(candidate, now)
    if reason:
        plan.rejected.append(Rejection(candidate, reason, match))
        if row.is_pending(now):
            plan.to_cancel.append(AlarmChange(CANCEL, row, row, None, "fire_time_moved_into_past"))
        return
    target = candidate.with_updates(id=row.id, request_code=row.request_code, scheduled_at=now, user_dismissed=False)
    plan.to_update.append(AlarmChange(UPDATE, target, row, match, "fire_time_changed"))


def reconcile(
    desired: Iterable[MatchResult],
    persisted: Iterable[ScheduledAlarm],
    now: int,
    validator: Validator = reject_past_due,
) -> ReconcilePlan:
    """Diff desired matches against persisted rows. Pure; nothing is touched."""
    plan = ReconcilePlan()

    grouped: dict[tuple[str, str], list[ScheduledAlarm]] = defaultdict(list)
    for row in persisted:
        grouped[row.logical_key].append(row)

    rows: dict[tuple[str, str], ScheduledAlarm] = {}
    for key, group in grouped.items():
        keep = _survivor(key, group)
        rows[key] = keep
        for extra in group:
            if extra.id != keep.id:
                plan.to_cancel.append(AlarmChange(CANCEL, extra, extra, None, "duplicate_row"))

    wanted: dict[tuple[str, str], MatchResult] = {}
    for match in desired:
        wanted.setdefault(match.alarm.logical_key, match)

    for key, row in rows.items():
        if key in wanted:
            continue
        if row.is_pending(now):
            plan.to_cancel.append(AlarmChange(CANCEL, row, row, None, "no_longer_matched"))
        else:
            # Elapsed rows are left to the expiry sweep.
            plan.unchanged.append(row)

    for key, match in wanted.items():
        _plan_item(plan, match, rows.get(key), now, validator)

    plan.to_schedule.sort(key=lambda change: (change.alarm.alarm_time_utc, change.alarm.id))
    plan.to_update.sort(key=lambda change: (change.alarm.alarm_time_utc, change.alarm.id))
    plan.to_cancel.sort(key=lambda change: (change.alarm.alarm_time_utc, change.alarm.id))
    return plan


def rearm_missing(plan: ReconcilePlan, scheduler: ExactAlarmScheduler, now: int) -> ReconcilePlan:
    """Move unchanged rows whose platform registration vanished (reboot, process restart) into re-arm changes."""
    rearms: list[AlarmChange] = []
    still: list[ScheduledAlarm] = []
    for row in plan.unchanged:
        if row.is_active(now) and not scheduler.is_scheduled(row.id, row.request_code):
            rearms.append(AlarmChange(REARM, row, row, None, "missing_on_platform"))
        else:
            still.append(row)
    if not rearms:
        return plan
    return replace(plan, to_update=[*plan.to_update, *rearms], unchanged=still)


def _outcome(change: AlarmChange, ok: bool, message: str = "", failure: RefreshFailure | None = None) -> ItemOutcome:
    return ItemOutcome(
        action=change.action,
        alarm_id=change.alarm.id,
        event_id=change.alarm.event_id,
        rule_id=change.alarm.rule_id,
        ok=ok,
        message=message,
        failure=failure,
        change=change,
    )


def _require_exact(scheduler: ExactAlarmScheduler, alarm: ScheduledAlarm) -> None:
    if not scheduler.can_schedule_exact():
        raise PlatformSchedulingError(
            "exact alarms are not permitted on this device",
            alarm_id=alarm.id,
            event_id=alarm.event_id,
            rule_id=alarm.rule_id,
        )


def _arm(scheduler: ExactAlarmScheduler, alarm: ScheduledAlarm) -> None:
    if not scheduler.schedule_exact(alarm.id, alarm.request_code, alarm.alarm_time_utc):
        raise PlatformSchedulingError(
            f"platform refused alarm for {serialize_millis(alarm.alarm_time_utc)}",
            alarm_id=alarm.id,
            event_id=alarm.event_id,
            rule_id=alarm.rule_id,
        )


def _persist_armed(store: AlarmStoreProtocol, scheduler: ExactAlarmScheduler, alarm: ScheduledAlarm) -> None:
    try:
        store.upsert(alarm)
    except PersistenceError:
        # Never leave a platform alarm without a row that can cancel it.
        scheduler.cancel(alarm.id, alarm.request_code)
        raise


def _disarm(scheduler: ExactAlarmScheduler, alarm: ScheduledAlarm) -> None:
    if not scheduler.cancel(alarm.id, alarm.request_code):
        logger.debug("No platform alarm to cancel for %s (code %d)", alarm.id, alarm.request_code)


def _execute(
    change: AlarmChange,
    store: AlarmStoreProtocol,
    scheduler: ExactAlarmScheduler,
    now: int,
    registry: RequestCodeRegistry | None,
) -> list[ItemOutcome]:
    alarm = change.alarm

    if change.action == SCHEDULE:
        _require_exact(scheduler, alarm)
        orphan_id = None
        if registry is not None:
            assignment = registry.assign(alarm.id, alarm.event_id, alarm.rule_id)
            alarm = alarm.with_updates(request_code=assignment.request_code)
            orphan_id = assignment.orphaned_alarm_id
        alarm = alarm.with_updates(scheduled_at=now)
        try:
            _arm(scheduler, alarm)
        except PlatformSchedulingError:
            if registry is not None:
                registry.release(alarm.id)
            raise
        _persist_armed(store, scheduler, alarm)
        done = replace(change, alarm=alarm)
        outcomes = [_outcome(done, True, f"scheduled for {serialize_millis(alarm.alarm_time_utc)}")]
        if orphan_id:
            collision = CollisionError(
                f"request code {alarm.request_code} taken over by {alarm.id}",
                alarm_id=orphan_id,
            )
            outcomes.append(
                ItemOutcome(
                    action=ORPHAN,
                    alarm_id=orphan_id,
                    event_id="",
                    rule_id="",
                    ok=False,
                    message=collision.message,
                    failure=collision.to_failure(),
                    change=None,
                )
            )
        return outcomes

    if change.action == UPDATE:
        _require_exact(scheduler, alarm)
        if change.previous is not None:
            _disarm(scheduler, change.previous)
        _arm(scheduler, alarm)
        _persist_armed(store, scheduler, alarm)
        return [_outcome(change, True, f"moved to {serialize_millis(alarm.alarm_time_utc)}")]

    if change.action == REFRESH:
        store.upsert(alarm)
        return [_outcome(change, True, "row refreshed")]

    if change.action == REARM:
        _require_exact(scheduler, alarm)
        _arm(scheduler, alarm)
        return [_outcome(change, True, "re-armed missing platform alarm")]

    if change.action == CANCEL:
        _disarm(scheduler, alarm)
        store.delete(alarm.id)
        if registry is not None:
            registry.release(alarm.id)
        return [_outcome(change, True, change.reason or "cancelled")]

    raise ValueError(f"unknown alarm change action: {change.action!r}")


def _replan(change: AlarmChange, current: ScheduledAlarm | None, now: int, validator: Validator) -> list[AlarmChange] | Rejection:
    desired = [change.match] if change.match is not None else []
    persisted = [current] if current is not None else []
    fresh = reconcile(desired, persisted, now, validator)
    if fresh.rejected:
        return fresh.rejected[0]
    return fresh.changes()


def apply(
    plan: ReconcilePlan,
    store: AlarmStoreProtocol,
    scheduler: ExactAlarmScheduler,
    *,
    now: int,
    registry: RequestCodeRegistry | None = None,
    validator: Validator = reject_past_due,
) -> list[ItemOutcome]:
    """Apply every change independently under its identity lock."""
    outcomes: list[ItemOutcome] = []
    for change in plan.changes():
        lock = store.lock_for(derive_key(*change.alarm.logical_key))
        with lock:
            try:
                current = store.get_alarm(change.alarm.id)
                if current == change.previous:
                    work = [change]
                else:
                    replanned = _replan(change, current, now, validator)
                    if isinstance(replanned, Rejection):
                        error = rejection_error(replanned)
                        outcomes.append(_outcome(change, False, error.message, error.to_failure()))
                        continue
                    logger.info("Row %s changed since planning; re-planned %s", change.alarm.id, change.action)
                    work = replanned
                for item in work:
                    outcomes.extend(_execute(item, store, scheduler, now, registry))
            except WakecalError as exc:
                logger.warning("%s of %s failed: %s", change.action, change.alarm.id, exc.message)
                if not exc.alarm_id:
                    exc.alarm_id = change.alarm.id
                    exc.event_id = change.alarm.event_id
                    exc.rule_id = change.alarm.rule_id
                outcomes.append(_outcome(change, False, exc.message, exc.to_failure()))
    return outcomes
