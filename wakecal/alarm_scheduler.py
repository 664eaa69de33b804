from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

from wakecal.models import now_millis, serialize_millis

logger = logging.getLogger(__name__)


class ExactAlarmScheduler(Protocol):
    def schedule_exact(self, alarm_id: str, request_code: int, fire_at_utc: int) -> bool: ...

    def cancel(self, alarm_id: str, request_code: int) -> bool: ...

    def is_scheduled(self, alarm_id: str, request_code: int) -> bool: ...

    def can_schedule_exact(self) -> bool: ...


@dataclass
class ArmedAlarm:
    alarm_id: str
    request_code: int
    fire_at_utc: int

    def to_dict(self) -> dict:
        return {
            "alarm_id": self.alarm_id,
            "request_code": self.request_code,
            "fire_at_utc": self.fire_at_utc,
            "fire_at": serialize_millis(self.fire_at_utc),
        }


class InMemoryAlarmScheduler:
    """Process-local stand-in for the platform exact-alarm primitive.

    Registrations are keyed by request code, so arming a second alarm under a
    code replaces the first, like a platform pending intent.
    """

    def __init__(self, exact_allowed: bool = True, clock: Callable[[], int] = now_millis) -> None:
        self.exact_allowed = exact_allowed
        self.clock = clock
        self._lock = threading.Lock()
        self._armed: dict[int, ArmedAlarm] = {}

    def can_schedule_exact(self) -> bool:
        return self.exact_allowed

    def schedule_exact(self, alarm_id: str, request_code: int, fire_at_utc: int) -> bool:
        if not self.exact_allowed:
            logger.warning("Exact alarms not permitted; refusing %s", alarm_id)
            return False
        if fire_at_utc <= self.clock():
            logger.warning("Refusing %s: fire time %s already passed", alarm_id, serialize_millis(fire_at_utc))
            return False
        with self._lock:
            replaced = self._armed.get(request_code)
            self._armed[request_code] = ArmedAlarm(alarm_id, request_code, fire_at_utc)
        if replaced is not None and replaced.alarm_id != alarm_id:
            logger.warning("Request code %d moved from %s to %s", request_code, replaced.alarm_id, alarm_id)
        logger.debug("Armed %s (code %d) for %s", alarm_id, request_code, serialize_millis(fire_at_utc))
        return True

    def cancel(self, alarm_id: str, request_code: int) -> bool:
        with self._lock:
            current = self._armed.get(request_code)
            if current is None or current.alarm_id != alarm_id:
                return False
            del self._armed[request_code]
        logger.debug("Cancelled %s (code %d)", alarm_id, request_code)
        return True

    def is_scheduled(self, alarm_id: str, request_code: int) -> bool:
        with self._lock:
            current = self._armed.get(request_code)
        return current is not None and current.alarm_id == alarm_id

    def armed(self) -> list[ArmedAlarm]:
        with self._lock:
            items = list(self._armed.values())
        return sorted(items, key=lambda item: (item.fire_at_utc, item.alarm_id))
