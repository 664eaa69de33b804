from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from wakecal.errors import PersistenceError
from wakecal.models import Rule
from wakecal.state_store import session


class RuleSource(Protocol):
    def list_enabled_rules(self) -> list[Rule]: ...


def _row_to_rule(row: sqlite3.Row) -> Rule:
    return Rule(
        id=str(row["id"]),
        name=str(row["name"] or ""),
        keyword_pattern=str(row["keyword_pattern"] or ""),
        is_regex=bool(row["is_regex"]),
        calendar_ids=[str(x) for x in json.loads(row["calendar_ids_json"] or "[]")],
        lead_time_minutes=int(row["lead_time_minutes"]),
        enabled=bool(row["enabled"]),
        first_event_of_day_only=bool(row["first_event_of_day_only"]),
        created_at=int(row["created_at"]),
    )


class RuleStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS rules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            keyword_pattern TEXT NOT NULL,
            is_regex INTEGER NOT NULL DEFAULT 0,
            calendar_ids_json TEXT NOT NULL DEFAULT '[]',
            lead_time_minutes INTEGER NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            first_event_of_day_only INTEGER NOT NULL DEFAULT 0,
            created_at INTEGER NOT NULL
        );
        """
        with self._lock:
            try:
                with session(self.db_path) as conn:
                    conn.executescript(schema_sql)
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to initialize rule schema: {exc}") from exc

    def _select(self, where: str = "", params: tuple = ()) -> list[Rule]:
        with self._lock:
            try:
                with session(self.db_path) as conn:
                    rows = conn.execute(
                        f"""
                        SELECT id, name, keyword_pattern, is_regex, calendar_ids_json, lead_time_minutes,
                               enabled, first_event_of_day_only, created_at
                        FROM rules
                        {where}
                        ORDER BY created_at, id
                        """,
                        params,
                    ).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to read rules: {exc}") from exc
        return [_row_to_rule(row) for row in rows]

    def list_rules(self) -> list[Rule]:
        return self._select()

    def list_enabled_rules(self) -> list[Rule]:
        return self._select("WHERE enabled = 1")

    def get_rule(self, rule_id: str) -> Rule | None:
        rules = self._select("WHERE id = ?", (rule_id,))
        return rules[0] if rules else None

    def upsert_rule(self, rule: Rule) -> Rule:
        with self._lock:
            try:
                with session(self.db_path) as conn:
                    conn.execute(
                        """
                        INSERT INTO rules(
                            id, name, keyword_pattern, is_regex, calendar_ids_json, lead_time_minutes,
                            enabled, first_event_of_day_only, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            name = excluded.name,
                            keyword_pattern = excluded.keyword_pattern,
                            is_regex = excluded.is_regex,
                            calendar_ids_json = excluded.calendar_ids_json,
                            lead_time_minutes = excluded.lead_time_minutes,
                            enabled = excluded.enabled,
                            first_event_of_day_only = excluded.first_event_of_day_only
                        """,
                        (
                            rule.id,
                            rule.name,
                            rule.keyword_pattern,
                            int(rule.is_regex),
                            json.dumps(list(rule.calendar_ids), ensure_ascii=False),
                            int(rule.lead_time_minutes),
                            int(rule.enabled),
                            int(rule.first_event_of_day_only),
                            int(rule.created_at),
                        ),
                    )
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to save rule: {exc}", rule_id=rule.id) from exc
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            try:
                with session(self.db_path) as conn:
                    cursor = conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to delete rule: {exc}", rule_id=rule_id) from exc
        return cursor.rowcount > 0
