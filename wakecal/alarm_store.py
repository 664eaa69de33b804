from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from wakecal.errors import PersistenceError
from wakecal.models import ScheduledAlarm
from wakecal.state_store import session

AlarmPredicate = Callable[[ScheduledAlarm], bool]

_COLUMNS = (
    "id, event_id, rule_id, event_title, event_start_time_utc, alarm_time_utc, scheduled_at, "
    "user_dismissed, request_code, last_event_modified, is_all_day, lead_time_minutes"
)


class AlarmStoreProtocol(Protocol):
    def list_alarms(self, predicate: AlarmPredicate | None = None) -> list[ScheduledAlarm]: ...

    def get_alarm(self, alarm_id: str) -> ScheduledAlarm | None: ...

    def upsert(self, alarm: ScheduledAlarm) -> None: ...

    def delete(self, alarm_id: str) -> bool: ...

    def set_dismissed(self, alarm_id: str, dismissed: bool) -> bool: ...

    def delete_expired(self, cutoff: int) -> int: ...

    def lock_for(self, alarm_id: str) -> threading.Lock: ...


def _row_to_alarm(row: sqlite3.Row) -> ScheduledAlarm:
    return ScheduledAlarm(
        id=str(row["id"]),
        event_id=str(row["event_id"]),
        rule_id=str(row["rule_id"]),
        event_title=str(row["event_title"] or ""),
        event_start_time_utc=int(row["event_start_time_utc"]),
        alarm_time_utc=int(row["alarm_time_utc"]),
        scheduled_at=int(row["scheduled_at"]),
        user_dismissed=bool(row["user_dismissed"]),
        request_code=int(row["request_code"]),
        last_event_modified=int(row["last_event_modified"]),
        is_all_day=bool(row["is_all_day"]),
        lead_time_minutes=int(row["lead_time_minutes"]),
    )


class AlarmStore:
    """Persisted ScheduledAlarm rows.

    Writers for one logical alarm serialize on ``lock_for(alarm_id)``; the lock
    table lives with the store so every refresh pass sharing this store shares it.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._identity_locks: dict[str, threading.Lock] = {}
        self._init_schema()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS alarms (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            event_title TEXT NOT NULL,
            event_start_time_utc INTEGER NOT NULL,
            alarm_time_utc INTEGER NOT NULL,
            scheduled_at INTEGER NOT NULL,
            user_dismissed INTEGER NOT NULL DEFAULT 0,
            request_code INTEGER NOT NULL,
            last_event_modified INTEGER NOT NULL,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            lead_time_minutes INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_alarms_event_rule ON alarms(event_id, rule_id);
        CREATE INDEX IF NOT EXISTS idx_alarms_alarm_time ON alarms(alarm_time_utc);
        """
        with self._io("initialize alarm schema") as conn:
            conn.executescript(schema_sql)

    @contextmanager
    def _io(self, what: str, alarm_id: str = "") -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with session(self.db_path) as conn:
                    yield conn
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to {what}: {exc}", alarm_id=alarm_id) from exc

    def lock_for(self, alarm_id: str) -> threading.Lock:
        with self._lock:
            lock = self._identity_locks.get(alarm_id)
            if lock is None:
                lock = threading.Lock()
                self._identity_locks[alarm_id] = lock
            return lock

    def list_alarms(self, predicate: AlarmPredicate | None = None) -> list[ScheduledAlarm]:
        with self._io("list alarms") as conn:
            rows = conn.execute(f"SELECT {_COLUMNS} FROM alarms ORDER BY alarm_time_utc, id").fetchall()
        alarms = [_row_to_alarm(row) for row in rows]
        if predicate is None:
            return alarms
        return [alarm for alarm in alarms if predicate(alarm)]

    def get_alarm(self, alarm_id: str) -> ScheduledAlarm | None:
        with self._io("read alarm", alarm_id) as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM alarms WHERE id = ?", (alarm_id,)).fetchone()
        return _row_to_alarm(row) if row else None

    def upsert(self, alarm: ScheduledAlarm) -> None:
        values: tuple[Any, ...] = (
            alarm.id,
            alarm.event_id,
            alarm.rule_id,
            alarm.event_title,
            int(alarm.event_start_time_utc),
            int(alarm.alarm_time_utc),
            int(alarm.scheduled_at),
            int(bool(alarm.user_dismissed)),
            int(alarm.request_code),
            int(alarm.last_event_modified),
            int(bool(alarm.is_all_day)),
            int(alarm.lead_time_minutes),
        )
        with self._io("upsert alarm", alarm.id) as conn:
            conn.execute(
                f"""
                INSERT INTO alarms({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    event_id = excluded.event_id,
                    rule_id = excluded.rule_id,
                    event_title = excluded.event_title,
                    event_start_time_utc = excluded.event_start_time_utc,
                    alarm_time_utc = excluded.alarm_time_utc,
                    scheduled_at = excluded.scheduled_at,
                    user_dismissed = excluded.user_dismissed,
                    request_code = excluded.request_code,
                    last_event_modified = excluded.last_event_modified,
                    is_all_day = excluded.is_all_day,
                    lead_time_minutes = excluded.lead_time_minutes
                """,
                values,
            )

    def delete(self, alarm_id: str) -> bool:
        with self._io("delete alarm", alarm_id) as conn:
            cursor = conn.execute("DELETE FROM alarms WHERE id = ?", (alarm_id,))
        return cursor.rowcount > 0

    def set_dismissed(self, alarm_id: str, dismissed: bool) -> bool:
        with self._io("set dismissed flag", alarm_id) as conn:
            cursor = conn.execute(
                "UPDATE alarms SET user_dismissed = ? WHERE id = ?",
                (int(bool(dismissed)), alarm_id),
            )
        return cursor.rowcount > 0

    def delete_expired(self, cutoff: int) -> int:
        with self._io("delete expired alarms") as conn:
            cursor = conn.execute("DELETE FROM alarms WHERE alarm_time_utc < ?", (int(cutoff),))
        return int(cursor.rowcount)
