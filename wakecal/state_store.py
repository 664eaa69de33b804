from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from wakecal.models import CalendarEvent


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def session(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = connect(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


class StateStore:
    """Refresh history, audit trail, app meta, pushed event snapshots and day tracking rows."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS refresh_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            scheduled_count INTEGER NOT NULL,
            updated_count INTEGER NOT NULL,
            canceled_count INTEGER NOT NULL,
            failure_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            alarm_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_snapshots (
            id TEXT PRIMARY KEY,
            start_time_utc INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS day_tracking (
            rule_id TEXT NOT NULL,
            local_date TEXT NOT NULL,
            zone TEXT NOT NULL,
            event_id TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (rule_id, local_date)
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with session(self.db_path) as conn:
                conn.executescript(schema_sql)

    def start_refresh_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with session(self.db_path) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO refresh_runs(
                        run_at, trigger, status, message, duration_ms,
                        scheduled_count, updated_count, canceled_count, failure_count
                    )
                    VALUES (?, ?, 'running', ?, 0, 0, 0, 0, 0)
                    """,
                    (_utc_now(), str(trigger), str(message)),
                )
                return int(cursor.lastrowid)

    def finish_refresh_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        scheduled_count: int,
        updated_count: int,
        canceled_count: int,
        failure_count: int,
    ) -> None:
        with self._lock:
            with session(self.db_path) as conn:
                conn.execute(
                    """
                    UPDATE refresh_runs
                    SET status = ?, message = ?, duration_ms = ?, scheduled_count = ?,
                        updated_count = ?, canceled_count = ?, failure_count = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(scheduled_count),
                        int(updated_count),
                        int(canceled_count),
                        int(failure_count),
                        int(run_id),
                    ),
                )

    def recent_refresh_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with session(self.db_path) as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms,
                           scheduled_count, updated_count, canceled_count, failure_count
                    FROM refresh_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        action: str,
        details: dict[str, Any],
        alarm_id: str = "",
        event_id: str = "",
        rule_id: str = "",
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with session(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, alarm_id, event_id, rule_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        _utc_now(),
                        alarm_id,
                        event_id,
                        rule_id,
                        action,
                        json.dumps(details, ensure_ascii=False),
                    ),
                )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with session(self.db_path) as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, alarm_id, event_id, rule_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, alarm_id, event_id, rule_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def replace_event_snapshots(self, events: Iterable[CalendarEvent]) -> int:
        rows = [
            (event.id, int(event.start_time_utc), json.dumps(event.to_dict(), ensure_ascii=False), _utc_now())
            for event in events
            if event.id
        ]
        with self._lock:
            with session(self.db_path) as conn:
                conn.execute("DELETE FROM event_snapshots")
                conn.executemany(
                    """
                    INSERT INTO event_snapshots(id, start_time_utc, payload_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        start_time_utc = excluded.start_time_utc,
                        payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
        return len(rows)

    def event_snapshots_between(self, start_ms: int, end_ms: int) -> list[CalendarEvent]:
        with self._lock:
            with session(self.db_path) as conn:
                rows = conn.execute(
                    """
                    SELECT payload_json
                    FROM event_snapshots
                    WHERE start_time_utc >= ? AND start_time_utc < ?
                    ORDER BY start_time_utc, id
                    """,
                    (int(start_ms), int(end_ms)),
                ).fetchall()
        return [CalendarEvent.from_dict(json.loads(row["payload_json"])) for row in rows]

    def get_day_entry(self, rule_id: str, local_date: str) -> dict[str, Any] | None:
        with self._lock:
            with session(self.db_path) as conn:
                row = conn.execute(
                    """
                    SELECT rule_id, local_date, zone, event_id, updated_at
                    FROM day_tracking
                    WHERE rule_id = ? AND local_date = ?
                    """,
                    (rule_id, local_date),
                ).fetchone()
        return dict(row) if row else None

    def put_day_entry(self, *, rule_id: str, local_date: str, zone: str, event_id: str) -> None:
        with self._lock:
            with session(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO day_tracking(rule_id, local_date, zone, event_id, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(rule_id, local_date) DO UPDATE SET
                        zone = excluded.zone,
                        event_id = excluded.event_id,
                        updated_at = excluded.updated_at
                    """,
                    (rule_id, local_date, zone, event_id, _utc_now()),
                )

    def delete_day_entries(self, *, before_date: str, keep_zone: str | None = None) -> int:
        """Drop entries dated before ``before_date``; with ``keep_zone`` also drop entries of any other zone."""
        with self._lock:
            with session(self.db_path) as conn:
                if keep_zone is None:
                    cursor = conn.execute("DELETE FROM day_tracking WHERE local_date < ?", (before_date,))
                else:
                    cursor = conn.execute(
                        "DELETE FROM day_tracking WHERE local_date < ? OR zone != ?",
                        (before_date, keep_zone),
                    )
                return int(cursor.rowcount)

    def list_day_entries(self) -> list[dict[str, Any]]:
        with self._lock:
            with session(self.db_path) as conn:
                rows = conn.execute(
                    """
                    SELECT rule_id, local_date, zone, event_id, updated_at
                    FROM day_tracking
                    ORDER BY local_date, rule_id
                    """
                ).fetchall()
        return [dict(row) for row in rows]

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with session(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with session(self.db_path) as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
