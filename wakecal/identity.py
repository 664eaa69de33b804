from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Iterable

from wakecal.models import ScheduledAlarm

logger = logging.getLogger(__name__)

REQUEST_CODE_PROBES = 16
_SEPARATOR = "\x1f"


def _digest(seed: str) -> bytes:
    return hashlib.sha1(seed.encode("utf-8")).digest()  # nosec B324


def derive_key(event_id: str, rule_id: str) -> str:
    return "alarm-" + _digest(f"{event_id}{_SEPARATOR}{rule_id}").hex()[:32]


def derive_request_code(event_id: str, rule_id: str, attempt: int = 0) -> int:
    """Signed 32-bit code from the first four digest bytes; never 0."""
    seed = f"{event_id}{_SEPARATOR}{rule_id}"
    if attempt > 0:
        seed = f"{seed}{_SEPARATOR}{attempt}"
    code = int.from_bytes(_digest(seed)[:4], "big", signed=True)
    return code or 1


def new_adhoc_identity() -> tuple[str, int]:
    code = int.from_bytes(secrets.token_bytes(4), "big", signed=True)
    return str(uuid.uuid4()), code or 1


@dataclass
class CodeAssignment:
    request_code: int
    probes: int = 0
    orphaned_alarm_id: str | None = None


class RequestCodeRegistry:
    """Tracks which alarm id holds each request code for one refresh pass."""

    def __init__(self, alarms: Iterable[ScheduledAlarm] = ()) -> None:
        self._by_code: dict[int, str] = {}
        self._by_alarm: dict[str, int] = {}
        self._orphans: list[str] = []
        for alarm in sorted(alarms, key=lambda item: (item.scheduled_at, item.id)):
            previous = self._by_code.get(alarm.request_code)
            if previous is not None and previous != alarm.id:
                self._by_alarm.pop(previous, None)
                self._orphans.append(previous)
                logger.warning(
                    "Request code %d shared by %s and %s; keeping the newer row",
                    alarm.request_code,
                    previous,
                    alarm.id,
                )
            self._by_code[alarm.request_code] = alarm.id
            self._by_alarm[alarm.id] = alarm.request_code

    def holder(self, request_code: int) -> str | None:
        return self._by_code.get(request_code)

    def code_of(self, alarm_id: str) -> int | None:
        return self._by_alarm.get(alarm_id)

    def orphans(self) -> list[str]:
        return list(self._orphans)

    def release(self, alarm_id: str) -> None:
        code = self._by_alarm.pop(alarm_id, None)
        if code is not None and self._by_code.get(code) == alarm_id:
            del self._by_code[code]

    def assign(self, alarm_id: str, event_id: str, rule_id: str) -> CodeAssignment:
        existing = self._by_alarm.get(alarm_id)
        if existing is not None:
            return CodeAssignment(request_code=existing)

        for attempt in range(REQUEST_CODE_PROBES):
            code = derive_request_code(event_id, rule_id, attempt)
            if self._by_code.get(code) in (None, alarm_id):
                self._claim(alarm_id, code)
                if attempt:
                    logger.warning(
                        "Request code collision for %s resolved after %d probes (code %d)",
                        alarm_id,
                        attempt,
                        code,
                    )
                return CodeAssignment(request_code=code, probes=attempt)

        code = derive_request_code(event_id, rule_id)
        orphan = self._by_code[code]
        self._by_alarm.pop(orphan, None)
        self._orphans.append(orphan)
        self._claim(alarm_id, code)
        logger.error(
            "Request code %d exhausted %d probes; %s takes it over from %s",
            code,
            REQUEST_CODE_PROBES,
            alarm_id,
            orphan,
        )
        return CodeAssignment(request_code=code, probes=REQUEST_CODE_PROBES, orphaned_alarm_id=orphan)

    def _claim(self, alarm_id: str, code: int) -> None:
        self._by_code[code] = alarm_id
        self._by_alarm[alarm_id] = code
