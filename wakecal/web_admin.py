from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from wakecal.alarm_scheduler import InMemoryAlarmScheduler
from wakecal.alarm_store import AlarmStore
from wakecal.calendar_source import SnapshotCalendarSource
from wakecal.config_manager import ConfigManager
from wakecal.day_tracker import LAST_RESET_META_KEY
from wakecal.errors import PersistenceError, PlatformSchedulingError, ValidationError, WakecalError
from wakecal.models import (
    MINUTE_MS,
    CalendarEvent,
    Rule,
    auto_detect_regex,
    coerce_millis,
    now_millis,
)
from wakecal.refresh_engine import LAST_REFRESH_META_KEY, RefreshEngine
from wakecal.rule_matcher import compile_pattern, matches_title, validate_pattern
from wakecal.rule_store import RuleStore
from wakecal.scheduler import RefreshScheduler
from wakecal.state_store import StateStore


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class RuleRequest(BaseModel):
    name: str = ""
    keyword_pattern: str = Field(min_length=1, max_length=500)
    is_regex: bool | None = None
    calendar_ids: list[str] = Field(default_factory=list)
    lead_time_minutes: int = 15
    enabled: bool = True
    first_event_of_day_only: bool = False


class RuleTestRequest(BaseModel):
    keyword_pattern: str
    is_regex: bool | None = None
    titles: list[str] = Field(default_factory=list)


class EventsReplaceRequest(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)


class SnoozeRequest(BaseModel):
    minutes: int | None = None


class TestAlarmRequest(BaseModel):
    title: str = "Test alarm"
    fire_at: str | int | None = None
    delay_seconds: int = Field(default=60, ge=1)


class TimezoneRequest(BaseModel):
    timezone: str = Field(min_length=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        state_path = state_path or self.config_manager.load().storage.state_path
        self.state_store = StateStore(state_path)
        self.alarm_store = AlarmStore(state_path)
        self.rule_store = RuleStore(state_path)
        self.calendar_source = SnapshotCalendarSource(self.state_store)
        self.alarm_scheduler = InMemoryAlarmScheduler()
        self.refresh_engine = RefreshEngine(
            self.config_manager,
            self.state_store,
            self.alarm_store,
            self.rule_store,
            self.calendar_source,
            self.alarm_scheduler,
        )
        self.scheduler = RefreshScheduler(self.refresh_engine, self.config_manager)


def _http_error(exc: WakecalError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, PlatformSchedulingError):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)


def _rule_from_request(request: RuleRequest, *, rule_id: str = "", created_at: int | None = None) -> Rule:
    payload = request.model_dump()
    payload["id"] = rule_id
    if created_at is not None:
        payload["created_at"] = created_at
    rule = Rule.from_dict(payload)
    reasons = rule.validate()
    if reasons:
        raise HTTPException(status_code=400, detail="; ".join(reasons))
    return rule


def create_app() -> FastAPI:
    config_path = os.getenv("WAKECAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("WAKECAL_STATE_PATH") or None
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="wakecal Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current_zone = app.state.context.config_manager.settings().timezone
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if updated.settings.timezone != current_zone:
            result = app.state.context.refresh_engine.run_refresh_cycle("TIMEZONE_CHANGE")
            return {"message": "config updated", "config": updated.to_dict(), "result": result.to_dict()}
        app.state.context.scheduler.trigger_immediate()
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/rules")
    def list_rules() -> dict[str, Any]:
        try:
            rules = app.state.context.rule_store.list_rules()
        except WakecalError as exc:
            raise _http_error(exc) from exc
        return {"rules": [rule.to_dict() for rule in rules]}

    @app.post("/api/rules")
    def create_rule(request: RuleRequest) -> dict[str, Any]:
        rule = _rule_from_request(request)
        try:
            app.state.context.rule_store.upsert_rule(rule)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        app.state.context.scheduler.trigger_immediate()
        return {"message": "rule created", "rule": rule.to_dict()}

    @app.put("/api/rules/{rule_id}")
    def update_rule(rule_id: str, request: RuleRequest) -> dict[str, Any]:
        try:
            existing = app.state.context.rule_store.get_rule(rule_id)
            if existing is None:
                raise HTTPException(status_code=404, detail="rule not found")
            rule = _rule_from_request(request, rule_id=rule_id, created_at=existing.created_at)
            app.state.context.rule_store.upsert_rule(rule)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        app.state.context.scheduler.trigger_immediate()
        return {"message": "rule updated", "rule": rule.to_dict()}

    @app.delete("/api/rules/{rule_id}")
    def delete_rule(rule_id: str) -> dict[str, Any]:
        try:
            deleted = app.state.context.rule_store.delete_rule(rule_id)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        if not deleted:
            raise HTTPException(status_code=404, detail="rule not found")
        app.state.context.scheduler.trigger_immediate()
        return {"message": "rule deleted", "rule_id": rule_id}

    @app.post("/api/rules/test")
    def test_rule(request: RuleTestRequest) -> dict[str, Any]:
        is_regex = auto_detect_regex(request.keyword_pattern) if request.is_regex is None else request.is_regex
        error = validate_pattern(request.keyword_pattern, is_regex)
        if error:
            return {"valid": False, "error": error, "is_regex": is_regex, "results": []}
        compiled = compile_pattern(request.keyword_pattern) if is_regex else None
        results = [
            {"title": title, "matches": matches_title(title, request.keyword_pattern, is_regex, compiled)}
            for title in request.titles
        ]
        return {"valid": True, "error": None, "is_regex": is_regex, "results": results}

    @app.put("/api/events")
    def replace_events(request: EventsReplaceRequest) -> dict[str, Any]:
        try:
            events = [CalendarEvent.from_dict(item) for item in request.events]
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid event: {exc}") from exc
        missing = [index for index, event in enumerate(events) if not event.id]
        if missing:
            raise HTTPException(status_code=400, detail=f"events without id at positions {missing}")
        try:
            count = app.state.context.calendar_source.replace_events(events)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        app.state.context.scheduler.trigger_immediate()
        return {"message": "events replaced", "count": count}

    @app.get("/api/alarms")
    def list_alarms(include_dismissed: bool = True) -> dict[str, Any]:
        context = app.state.context
        try:
            alarms = context.alarm_store.list_alarms(None if include_dismissed else lambda row: not row.user_dismissed)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        output = []
        for alarm in alarms:
            item = alarm.to_dict()
            item["armed"] = context.alarm_scheduler.is_scheduled(alarm.id, alarm.request_code)
            output.append(item)
        return {"alarms": output, "armed": [armed.to_dict() for armed in context.alarm_scheduler.armed()]}

    @app.get("/api/alarms/preview")
    def preview_alarms() -> dict[str, Any]:
        try:
            survivors = app.state.context.refresh_engine.preview()
        except WakecalError as exc:
            raise _http_error(exc) from exc
        return {"alarms": [item.alarm.to_dict() for item in survivors]}

    @app.post("/api/alarms/{alarm_id}/dismiss")
    def dismiss_alarm(alarm_id: str) -> dict[str, Any]:
        try:
            alarm = app.state.context.refresh_engine.dismiss_alarm(alarm_id)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        if alarm is None:
            raise HTTPException(status_code=404, detail="alarm not found")
        return {"message": "alarm dismissed", "alarm": alarm.to_dict()}

    @app.post("/api/alarms/{alarm_id}/snooze")
    def snooze_alarm(alarm_id: str, request: SnoozeRequest | None = None) -> dict[str, Any]:
        minutes = request.minutes if request is not None else None
        try:
            armed = app.state.context.refresh_engine.snooze_alarm(alarm_id, minutes)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        if armed is None:
            raise HTTPException(status_code=404, detail="alarm not found")
        return {"message": "alarm snoozed", "snooze": armed}

    @app.post("/api/alarms/test")
    def test_alarm(request: TestAlarmRequest) -> dict[str, Any]:
        if request.fire_at is None:
            fire_at = now_millis() + request.delay_seconds * 1000
        else:
            try:
                fire_at = coerce_millis(request.fire_at)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"invalid fire_at: {exc}") from exc
        try:
            armed = app.state.context.refresh_engine.schedule_test_alarm(request.title, fire_at)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        return {"message": "test alarm scheduled", "alarm": armed}

    @app.post("/api/refresh/run")
    def trigger_refresh() -> dict[str, str]:
        app.state.context.scheduler.trigger_immediate()
        return {"message": "refresh triggered"}

    @app.post("/api/refresh/run-now")
    def run_refresh_now() -> dict[str, Any]:
        result = app.state.context.refresh_engine.run_refresh_cycle("IMMEDIATE")
        return {"message": "refresh completed", "result": result.to_dict()}

    @app.post("/api/timezone")
    def change_timezone(request: TimezoneRequest) -> dict[str, Any]:
        try:
            result = app.state.context.refresh_engine.change_timezone(request.timezone)
        except WakecalError as exc:
            raise _http_error(exc) from exc
        return {"message": "timezone changed", "timezone": request.timezone.strip(), "result": result.to_dict()}

    @app.get("/api/refresh/status")
    def refresh_status(limit: int = 20) -> dict[str, Any]:
        context = app.state.context
        return {
            "runs": context.state_store.recent_refresh_runs(limit=limit),
            "last_refresh_at": context.state_store.get_meta(LAST_REFRESH_META_KEY),
            "scheduler_running": context.scheduler.is_running(),
            "exact_alarms_allowed": context.alarm_scheduler.can_schedule_exact(),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/day-tracking")
    def day_tracking() -> dict[str, Any]:
        context = app.state.context
        tracker = context.refresh_engine.day_tracker
        return {
            "entries": context.state_store.list_day_entries(),
            "zone": tracker.zone().key,
            "today": tracker.today().isoformat(),
            "last_reset_date": context.state_store.get_meta(LAST_RESET_META_KEY),
            "next_reset_at_ms": tracker.next_reset_at(),
            "next_reset_in_minutes": max(0, (tracker.next_reset_at() - now_millis()) // MINUTE_MS),
        }

    return app


app = create_app()
