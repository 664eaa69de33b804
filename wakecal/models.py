from __future__ import annotations

import re
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


MIN_LEAD_TIME_MINUTES = 1
MAX_LEAD_TIME_MINUTES = 7 * 24 * 60
MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

REGEX_METACHARACTERS = frozenset(".*+?^$()[]{}|\\")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_millis() -> int:
    return time.time_ns() // 1_000_000


def to_datetime(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=int(millis))


def to_millis(value: datetime) -> int:
    return (_ensure_tz(value) - _EPOCH) // timedelta(milliseconds=1)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_millis(millis: int | None) -> str | None:
    if millis is None:
        return None
    return to_datetime(millis).isoformat()


def coerce_millis(value: Any, default: int = 0) -> int:
    """Accept epoch millis or an ISO-8601 string."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return to_millis(value)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    parsed = parse_iso_datetime(text)
    return to_millis(parsed) if parsed is not None else default


def is_valid_timezone(name: str | None) -> bool:
    if not name or not str(name).strip():
        return False
    try:
        ZoneInfo(str(name).strip())
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_zone(name: str | None) -> ZoneInfo:
    if is_valid_timezone(name):
        return ZoneInfo(str(name).strip())
    return ZoneInfo("UTC")


def auto_detect_regex(pattern: str) -> bool:
    return any(ch in REGEX_METACHARACTERS for ch in pattern or "")


class DuplicateHandlingMode(str, Enum):
    ALLOW_MULTIPLE = "ALLOW_MULTIPLE"
    EARLIEST_ONLY = "EARLIEST_ONLY"
    LATEST_ONLY = "LATEST_ONLY"
    SHORTEST_LEAD_TIME = "SHORTEST_LEAD_TIME"
    LONGEST_LEAD_TIME = "LONGEST_LEAD_TIME"

    @classmethod
    def parse(cls, value: Any) -> "DuplicateHandlingMode":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        for mode in cls:
            if mode.value == text:
                return mode
        return cls.ALLOW_MULTIPLE


class RefreshTrigger(str, Enum):
    PERIODIC = "PERIODIC"
    IMMEDIATE = "IMMEDIATE"
    BOOT = "BOOT"
    TIMEZONE_CHANGE = "TIMEZONE_CHANGE"

    @classmethod
    def parse(cls, value: Any) -> "RefreshTrigger":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        for trigger in cls:
            if trigger.value == text:
                return trigger
        raise ValueError(f"unknown refresh trigger: {value!r}")


@dataclass
class Rule:
    id: str
    name: str
    keyword_pattern: str
    is_regex: bool = False
    calendar_ids: list[str] = field(default_factory=list)
    lead_time_minutes: int = 15
    enabled: bool = True
    first_event_of_day_only: bool = False
    created_at: int = field(default_factory=now_millis)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Rule":
        data = data or {}
        pattern = str(data.get("keyword_pattern", "") or "")
        raw_regex = data.get("is_regex")
        return cls(
            id=str(data.get("id", "") or "").strip() or str(uuid.uuid4()),
            name=str(data.get("name", "") or "").strip() or pattern.strip(),
            keyword_pattern=pattern,
            is_regex=auto_detect_regex(pattern) if raw_regex is None else bool(raw_regex),
            calendar_ids=[str(x).strip() for x in data.get("calendar_ids", None) or [] if str(x).strip()],
            lead_time_minutes=int(data.get("lead_time_minutes", 15)),
            enabled=bool(data.get("enabled", True)),
            first_event_of_day_only=bool(data.get("first_event_of_day_only", False)),
            created_at=coerce_millis(data.get("created_at"), default=now_millis()),
        )

    def validate(self) -> list[str]:
        reasons: list[str] = []
        if not self.keyword_pattern.strip():
            reasons.append("keyword pattern is blank")
        elif self.is_regex:
            try:
                re.compile(self.keyword_pattern, re.IGNORECASE)
            except re.error as exc:
                reasons.append(f"keyword pattern does not compile: {exc}")
        if not MIN_LEAD_TIME_MINUTES <= self.lead_time_minutes <= MAX_LEAD_TIME_MINUTES:
            reasons.append(
                f"lead time {self.lead_time_minutes} outside "
                f"[{MIN_LEAD_TIME_MINUTES}, {MAX_LEAD_TIME_MINUTES}] minutes"
            )
        return reasons

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarEvent:
    id: str
    title: str
    start_time_utc: int
    end_time_utc: int
    calendar_id: str = ""
    is_all_day: bool = False
    timezone: str | None = None
    last_modified: int = 0
    description: str = ""
    location: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarEvent":
        data = data or {}
        start = coerce_millis(data.get("start_time_utc"))
        return cls(
            id=str(data.get("id", "") or "").strip(),
            title=str(data.get("title", "") or ""),
            start_time_utc=start,
            end_time_utc=coerce_millis(data.get("end_time_utc"), default=start),
            calendar_id=str(data.get("calendar_id", "") or "").strip(),
            is_all_day=bool(data.get("is_all_day", False)),
            timezone=str(data["timezone"]).strip() if data.get("timezone") else None,
            last_modified=coerce_millis(data.get("last_modified")),
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScheduledAlarm:
    id: str
    event_id: str
    rule_id: str
    event_title: str
    event_start_time_utc: int
    alarm_time_utc: int
    request_code: int
    last_event_modified: int
    scheduled_at: int = field(default_factory=now_millis)
    user_dismissed: bool = False
    is_all_day: bool = False
    lead_time_minutes: int = 0

    @property
    def logical_key(self) -> tuple[str, str]:
        return (self.event_id, self.rule_id)

    def is_pending(self, now: int) -> bool:
        return self.alarm_time_utc > now

    def is_active(self, now: int) -> bool:
        return not self.user_dismissed and self.is_pending(now)

    def with_updates(self, **kwargs: Any) -> "ScheduledAlarm":
        return replace(self, **kwargs)

    def same_content(self, other: "ScheduledAlarm") -> bool:
        return (
            self.event_title == other.event_title
            and self.event_start_time_utc == other.event_start_time_utc
            and self.alarm_time_utc == other.alarm_time_utc
            and self.last_event_modified == other.last_event_modified
            and self.is_all_day == other.is_all_day
            and self.lead_time_minutes == other.lead_time_minutes
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["alarm_time"] = serialize_millis(self.alarm_time_utc)
        payload["event_start_time"] = serialize_millis(self.event_start_time_utc)
        return payload


@dataclass
class MatchResult:
    event: CalendarEvent
    rule: Rule
    alarm: ScheduledAlarm


@dataclass
class RefreshFailure:
    kind: str
    message: str
    alarm_id: str = ""
    event_id: str = ""
    rule_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RefreshResult:
    trigger: str
    status: str
    message: str
    scheduled_count: int = 0
    updated_count: int = 0
    canceled_count: int = 0
    swept_count: int = 0
    failures: list[RefreshFailure] = field(default_factory=list)
    duration_ms: int = 0
    run_id: int | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "status": self.status,
            "message": self.message,
            "scheduled_count": self.scheduled_count,
            "updated_count": self.updated_count,
            "canceled_count": self.canceled_count,
            "swept_count": self.swept_count,
            "failures": [failure.to_dict() for failure in self.failures],
            "duration_ms": self.duration_ms,
            "run_id": self.run_id,
            "run_at": _ensure_tz(self.run_at).isoformat(),
        }


@dataclass
class SettingsConfig:
    refresh_interval_minutes: int = 30
    all_day_default_hour: int = 20
    all_day_default_minute: int = 0
    duplicate_handling_mode: str = DuplicateHandlingMode.ALLOW_MULTIPLE.value
    lookahead_hours: int = 48
    timezone: str = "UTC"
    expiry_grace_hours: int = 24
    snooze_minutes: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SettingsConfig":
        data = data or {}
        zone_name = str(data.get("timezone", "UTC") or "").strip()
        return cls(
            refresh_interval_minutes=max(1, int(data.get("refresh_interval_minutes", 30))),
            all_day_default_hour=min(23, max(0, int(data.get("all_day_default_hour", 20)))),
            all_day_default_minute=min(59, max(0, int(data.get("all_day_default_minute", 0)))),
            duplicate_handling_mode=DuplicateHandlingMode.parse(data.get("duplicate_handling_mode")).value,
            lookahead_hours=max(1, int(data.get("lookahead_hours", 48))),
            timezone=zone_name if is_valid_timezone(zone_name) else "UTC",
            expiry_grace_hours=max(0, int(data.get("expiry_grace_hours", 24))),
            snooze_minutes=min(MAX_LEAD_TIME_MINUTES, max(1, int(data.get("snooze_minutes", 10)))),
        )

    @property
    def duplicate_mode(self) -> DuplicateHandlingMode:
        return DuplicateHandlingMode.parse(self.duplicate_handling_mode)

    @property
    def lookahead_ms(self) -> int:
        return self.lookahead_hours * HOUR_MS

    @property
    def zone(self) -> ZoneInfo:
        return resolve_zone(self.timezone)


@dataclass
class StorageConfig:
    state_path: str = "data/state.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(state_path=str(data.get("state_path", "data/state.db")).strip() or "data/state.db")


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    settings: SettingsConfig = field(default_factory=SettingsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            settings=SettingsConfig.from_dict(data.get("settings")),
            storage=StorageConfig.from_dict(data.get("storage")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


def local_midnight_after(day: date, zone: ZoneInfo) -> int:
    next_day = day + timedelta(days=1)
    return to_millis(datetime(next_day.year, next_day.month, next_day.day, tzinfo=zone))
