from __future__ import annotations

from wakecal.models import RefreshFailure


class WakecalError(Exception):
    kind = "error"

    def __init__(self, message: str, *, alarm_id: str = "", event_id: str = "", rule_id: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.alarm_id = alarm_id
        self.event_id = event_id
        self.rule_id = rule_id

    def to_failure(self) -> RefreshFailure:
        return RefreshFailure(
            kind=self.kind,
            message=self.message,
            alarm_id=self.alarm_id,
            event_id=self.event_id,
            rule_id=self.rule_id,
        )


class ValidationError(WakecalError):
    """Bad rule pattern or lead time, or a past-due alarm candidate."""

    kind = "validation"


class PlatformSchedulingError(WakecalError):
    """The exact-alarm primitive refused or lost a registration."""

    kind = "platform"


class PersistenceError(WakecalError):
    """A store read or write failed."""

    kind = "persistence"


class CollisionError(WakecalError):
    """Two logical alarms ended up on one request code."""

    kind = "collision"
