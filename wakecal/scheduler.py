from __future__ import annotations

import logging
import threading
from typing import Optional

from wakecal.config_manager import ConfigManager
from wakecal.errors import PersistenceError
from wakecal.models import RefreshTrigger
from wakecal.refresh_engine import RefreshEngine

logger = logging.getLogger(__name__)


class RefreshScheduler:
    def __init__(self, refresh_engine: RefreshEngine, config_manager: ConfigManager) -> None:
        self.refresh_engine = refresh_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._immediate_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="wakecal-refresh-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._immediate_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_immediate(self) -> None:
        self._immediate_trigger_event.set()

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _reset_day_if_due(self) -> None:
        tracker = self.refresh_engine.day_tracker
        try:
            if tracker.needs_reset():
                tracker.reset()
        except PersistenceError:
            logger.exception("Day tracker reset failed")

    def _run(self, trigger: RefreshTrigger) -> None:
        try:
            self.refresh_engine.run_refresh_cycle(trigger)
        except Exception:
            # Already recorded as an errored run; keep the loop alive for the next trigger.
            logger.exception("Refresh cycle (%s) raised", trigger.value)

    def _next_periodic_at(self) -> int:
        return self.refresh_engine.clock() + self.config_manager.settings().refresh_interval_minutes * 60_000

    def seconds_until_next_wake(self, next_periodic: int) -> float:
        """Sleep until the next periodic refresh or local midnight, whichever is first."""
        wake_at = min(next_periodic, self.refresh_engine.day_tracker.next_reset_at())
        return max(1.0, (wake_at - self.refresh_engine.clock()) / 1000)

    def _loop(self) -> None:
        self._reset_day_if_due()
        self._run(RefreshTrigger.BOOT)

        next_periodic = self._next_periodic_at()
        while not self._stop_event.is_set():
            immediate = self._immediate_trigger_event.wait(timeout=self.seconds_until_next_wake(next_periodic))
            self._immediate_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._reset_day_if_due()
            now = self.refresh_engine.clock()
            if immediate:
                self._run(RefreshTrigger.IMMEDIATE)
            elif now >= next_periodic:
                self._run(RefreshTrigger.PERIODIC)
            else:
                continue
            next_periodic = self._next_periodic_at()
