from __future__ import annotations

import logging
import sqlite3
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from wakecal.alarm_scheduler import ExactAlarmScheduler
from wakecal.alarm_store import AlarmStoreProtocol
from wakecal.alarm_time import local_date_of
from wakecal.calendar_source import CalendarSource
from wakecal.config_manager import ConfigManager
from wakecal.conflict_resolver import resolve
from wakecal.day_tracker import DayTracker
from wakecal.errors import PersistenceError, PlatformSchedulingError, ValidationError
from wakecal.identity import RequestCodeRegistry, derive_key, new_adhoc_identity
from wakecal.models import (
    HOUR_MS,
    MAX_LEAD_TIME_MINUTES,
    MINUTE_MS,
    CalendarEvent,
    MatchResult,
    RefreshFailure,
    RefreshResult,
    RefreshTrigger,
    Rule,
    ScheduledAlarm,
    SettingsConfig,
    is_valid_timezone,
    now_millis,
    serialize_millis,
)
from wakecal.reconciler import (
    CANCEL,
    REARM,
    REFRESH,
    SCHEDULE,
    UPDATE,
    ItemOutcome,
    apply,
    rearm_missing,
    reconcile,
    rejection_error,
)
from wakecal.rule_matcher import MatchReport, match_report
from wakecal.rule_store import RuleSource
from wakecal.state_store import StateStore

logger = logging.getLogger(__name__)

LAST_REFRESH_META_KEY = "last_refresh_at"

_COUNTER_BY_ACTION = {
    SCHEDULE: "scheduled",
    UPDATE: "updated",
    REFRESH: "updated",
    REARM: "updated",
    CANCEL: "canceled",
}


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class RefreshEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        alarm_store: AlarmStoreProtocol,
        rule_store: RuleSource,
        calendar_source: CalendarSource,
        alarm_scheduler: ExactAlarmScheduler,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.alarm_store = alarm_store
        self.rule_store = rule_store
        self.calendar_source = calendar_source
        self.alarm_scheduler = alarm_scheduler
        self.clock = clock
        self.day_tracker = DayTracker(state_store, lambda: self.config_manager.settings().zone, clock)

    def _audit(
        self,
        action: str,
        details: dict[str, Any],
        *,
        alarm_id: str = "",
        event_id: str = "",
        rule_id: str = "",
        run_id: int | None = None,
    ) -> None:
        try:
            self.state_store.record_audit_event(
                action=action,
                details=details,
                alarm_id=alarm_id,
                event_id=event_id,
                rule_id=rule_id,
                run_id=run_id,
            )
        except sqlite3.Error as exc:
            logger.warning("Could not record audit event %s for %s: %s", action, alarm_id or "system", exc)

    def _desired(
        self,
        settings: SettingsConfig,
        events: Iterable[CalendarEvent],
        rules: Iterable[Rule],
        now: int,
    ) -> tuple[MatchReport, list[MatchResult]]:
        report = match_report(
            events,
            rules,
            self.day_tracker,
            now=now,
            lookahead_ms=settings.lookahead_ms,
            zone=settings.zone,
            all_day_hour=settings.all_day_default_hour,
            all_day_minute=settings.all_day_default_minute,
        )
        return report, resolve(report.matches, settings.duplicate_mode)

    def run_refresh_cycle(self, trigger: RefreshTrigger | str = RefreshTrigger.IMMEDIATE) -> RefreshResult:
        trigger = RefreshTrigger.parse(trigger)
        started_at = datetime.now(timezone.utc)
        counts = {"scheduled": 0, "updated": 0, "canceled": 0}
        swept = 0
        failures: list[RefreshFailure] = []
        run_id = self.state_store.start_refresh_run(trigger=trigger.value)

        def finish(status: str, message: str) -> RefreshResult:
            duration_ms = _elapsed_ms(started_at)
            self.state_store.finish_refresh_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                scheduled_count=counts["scheduled"],
                updated_count=counts["updated"],
                canceled_count=counts["canceled"],
                failure_count=len(failures),
            )
            log = logger.info if status in {"success", "skipped"} else logger.warning
            log("Refresh %s (%s) finished %s: %s", run_id, trigger.value, status, message)
            return RefreshResult(
                trigger=trigger.value,
                status=status,
                message=message,
                scheduled_count=counts["scheduled"],
                updated_count=counts["updated"],
                canceled_count=counts["canceled"],
                swept_count=swept,
                failures=failures,
                duration_ms=duration_ms,
                run_id=run_id,
                run_at=started_at,
            )

        try:
            settings = self.config_manager.settings()
            zone = settings.zone
            now = self.clock()

            try:
                if trigger is RefreshTrigger.TIMEZONE_CHANGE:
                    dropped = self.day_tracker.handle_timezone_change(zone)
                    self._audit(
                        "day_tracker_zone_change",
                        {"zone": zone.key, "dropped_entries": dropped},
                        run_id=run_id,
                    )
                rules = self.rule_store.list_enabled_rules()
                events = self.calendar_source.list_upcoming_events(settings.lookahead_ms, now)
                persisted = self.alarm_store.list_alarms()
                if not rules and not persisted:
                    return finish("skipped", "No enabled rules and no scheduled alarms.")
                # Matching reads the day tracker.
                report, survivors = self._desired(settings, events, rules, now)
            except PersistenceError as exc:
                failures.append(exc.to_failure())
                return finish("failed", f"Could not load refresh inputs: {exc.message}")

            for rule, reasons in report.invalid_rules:
                failures.append(ValidationError("; ".join(reasons), rule_id=rule.id).to_failure())
            for suppression in report.suppressed:
                logger.debug(
                    "Rule %s: %s suppressed on %s, day held by %s",
                    suppression.rule_id,
                    suppression.event_id,
                    suppression.local_date.isoformat(),
                    suppression.held_by,
                )

            registry = RequestCodeRegistry(persisted)
            orphans = set(registry.orphans())
            for orphan_id in sorted(orphans):
                try:
                    self.alarm_store.delete(orphan_id)
                except PersistenceError as exc:
                    failures.append(exc.to_failure())
                    continue
                swept += 1
                self._audit("sweep_orphan", {"reason": "request_code_taken_over"}, alarm_id=orphan_id, run_id=run_id)
            persisted = [row for row in persisted if row.id not in orphans]

            plan = reconcile(survivors, persisted, now)
            for rejection in plan.rejected:
                error = rejection_error(rejection)
                failures.append(error.to_failure())
                self._audit(
                    "reject",
                    {"trigger": trigger.value, "reason": rejection.reason},
                    alarm_id=rejection.alarm.id,
                    event_id=rejection.alarm.event_id,
                    rule_id=rejection.alarm.rule_id,
                    run_id=run_id,
                )

            plan = rearm_missing(plan, self.alarm_scheduler, now)
            outcomes = apply(plan, self.alarm_store, self.alarm_scheduler, now=now, registry=registry)
            for outcome in outcomes:
                self._record_outcome(outcome, trigger, zone, run_id, counts, failures)

            try:
                swept += self.alarm_store.delete_expired(now - settings.expiry_grace_hours * HOUR_MS)
            except PersistenceError as exc:
                failures.append(exc.to_failure())
            self.state_store.set_meta(LAST_REFRESH_META_KEY, serialize_millis(now) or "")

            message = (
                f"Matched {len(survivors)} alarms across {len(events)} events: "
                f"{counts['scheduled']} scheduled, {counts['updated']} updated, "
                f"{counts['canceled']} canceled, {swept} swept."
            )
            return finish("partial" if failures else "success", message)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            self.state_store.finish_refresh_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=_elapsed_ms(started_at),
                scheduled_count=counts["scheduled"],
                updated_count=counts["updated"],
                canceled_count=counts["canceled"],
                failure_count=len(failures),
            )
            self._audit(
                "run_error",
                {
                    "trigger": trigger.value,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            logger.exception("Refresh %s (%s) crashed", run_id, trigger.value)
            raise

    def _record_outcome(
        self,
        outcome: ItemOutcome,
        trigger: RefreshTrigger,
        zone: ZoneInfo,
        run_id: int,
        counts: dict[str, int],
        failures: list[RefreshFailure],
    ) -> None:
        change = outcome.change
        details: dict[str, Any] = {"trigger": trigger.value, "ok": outcome.ok, "message": outcome.message}
        if change is not None:
            details["reason"] = change.reason
            details["alarm_time"] = serialize_millis(change.alarm.alarm_time_utc)
            if change.previous is not None and change.previous.alarm_time_utc != change.alarm.alarm_time_utc:
                details["previous_alarm_time"] = serialize_millis(change.previous.alarm_time_utc)

        if outcome.ok:
            counts[_COUNTER_BY_ACTION[outcome.action]] += 1
            match = change.match if change is not None else None
            if (
                match is not None
                and match.rule.first_event_of_day_only
                and outcome.action in {SCHEDULE, UPDATE}
            ):
                try:
                    self.day_tracker.mark_consumed(match.rule.id, local_date_of(match.event, zone), match.event.id)
                except PersistenceError as exc:
                    exc.alarm_id = outcome.alarm_id
                    exc.event_id = outcome.event_id
                    failures.append(exc.to_failure())
        elif outcome.failure is not None:
            failures.append(outcome.failure)
            details["failure_kind"] = outcome.failure.kind

        self._audit(
            outcome.action if outcome.ok else f"{outcome.action}_failed",
            details,
            alarm_id=outcome.alarm_id,
            event_id=outcome.event_id,
            rule_id=outcome.rule_id,
            run_id=run_id,
        )

    def dismiss_alarm(self, alarm_id: str) -> ScheduledAlarm | None:
        """Mark an alarm as acknowledged. A pending platform wake is left armed."""
        row = self.alarm_store.get_alarm(alarm_id)
        if row is None:
            return None
        with self.alarm_store.lock_for(derive_key(*row.logical_key)):
            if not self.alarm_store.set_dismissed(alarm_id, True):
                return None
        self._audit(
            "dismiss",
            {"alarm_time": serialize_millis(row.alarm_time_utc)},
            alarm_id=row.id,
            event_id=row.event_id,
            rule_id=row.rule_id,
        )
        logger.info("Dismissed alarm %s for event %s", row.id, row.event_id)
        return row.with_updates(user_dismissed=True)

    def _arm_adhoc(self, fire_at_utc: int, label: str) -> dict[str, Any]:
        now = self.clock()
        if fire_at_utc <= now:
            raise ValidationError(f"{label} time {serialize_millis(fire_at_utc)} is not in the future")
        if not self.alarm_scheduler.can_schedule_exact():
            raise PlatformSchedulingError("exact alarms are not permitted on this device")
        alarm_id, request_code = new_adhoc_identity()
        if not self.alarm_scheduler.schedule_exact(alarm_id, request_code, fire_at_utc):
            raise PlatformSchedulingError(f"platform refused {label} alarm", alarm_id=alarm_id)
        return {
            "alarm_id": alarm_id,
            "request_code": request_code,
            "fire_at_utc": fire_at_utc,
            "fire_at": serialize_millis(fire_at_utc),
        }

    def snooze_alarm(self, alarm_id: str, minutes: int | None = None) -> dict[str, Any] | None:
        if minutes is None:
            minutes = self.config_manager.settings().snooze_minutes
        if not 1 <= int(minutes) <= MAX_LEAD_TIME_MINUTES:
            raise ValidationError(f"snooze of {minutes} minutes is out of range", alarm_id=alarm_id)
        row = self.dismiss_alarm(alarm_id)
        if row is None:
            return None
        armed = self._arm_adhoc(self.clock() + int(minutes) * MINUTE_MS, "snooze")
        armed["snoozed_alarm_id"] = row.id
        self._audit(
            "snooze",
            {"minutes": int(minutes), "fire_at": armed["fire_at"], "adhoc_alarm_id": armed["alarm_id"]},
            alarm_id=row.id,
            event_id=row.event_id,
            rule_id=row.rule_id,
        )
        return armed

    def schedule_test_alarm(self, title: str, fire_at_utc: int) -> dict[str, Any]:
        armed = self._arm_adhoc(int(fire_at_utc), "test")
        armed["title"] = title
        self._audit("test_alarm", {"title": title, "fire_at": armed["fire_at"]}, alarm_id=armed["alarm_id"])
        return armed

    def change_timezone(self, zone_name: str) -> RefreshResult:
        zone_name = str(zone_name or "").strip()
        if not is_valid_timezone(zone_name):
            raise ValidationError(f"unknown timezone: {zone_name!r}")
        self.config_manager.update({"settings": {"timezone": zone_name}})
        logger.info("Timezone changed to %s", zone_name)
        return self.run_refresh_cycle(RefreshTrigger.TIMEZONE_CHANGE)

    def preview(self, events: Iterable[CalendarEvent] | None = None) -> list[MatchResult]:
        """Alarms a refresh would want right now, without touching any store."""
        settings = self.config_manager.settings()
        now = self.clock()
        if events is None:
            events = self.calendar_source.list_upcoming_events(settings.lookahead_ms, now)
        _, survivors = self._desired(settings, events, self.rule_store.list_enabled_rules(), now)
        return survivors
