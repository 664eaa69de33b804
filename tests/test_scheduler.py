import unittest
from unittest import mock

from wakecal.errors import PersistenceError
from wakecal.models import RefreshTrigger, SettingsConfig
from wakecal.scheduler import RefreshScheduler


class RefreshSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = mock.Mock()
        self.engine.clock.return_value = 0
        self.engine.day_tracker.needs_reset.return_value = False
        self.engine.day_tracker.next_reset_at.return_value = 10**12
        self.config_manager = mock.Mock()
        self.config_manager.settings.return_value = SettingsConfig()
        self.scheduler = RefreshScheduler(self.engine, self.config_manager)

    def tearDown(self) -> None:
        self.scheduler.stop()

    def test_boot_refresh_runs_when_started(self) -> None:
        self.scheduler.start()
        self.assertTrue(self.scheduler.is_running())
        self.scheduler.stop()

        self.assertFalse(self.scheduler.is_running())
        self.assertEqual(self.engine.run_refresh_cycle.call_args_list[0], mock.call(RefreshTrigger.BOOT))

    def test_run_keeps_loop_alive_after_crash(self) -> None:
        self.engine.run_refresh_cycle.side_effect = RuntimeError("boom")
        with self.assertLogs("wakecal.scheduler", level="ERROR"):
            self.scheduler._run(RefreshTrigger.PERIODIC)

    def test_day_reset_only_when_due(self) -> None:
        self.scheduler._reset_day_if_due()
        self.engine.day_tracker.reset.assert_not_called()

        self.engine.day_tracker.needs_reset.return_value = True
        self.scheduler._reset_day_if_due()
        self.engine.day_tracker.reset.assert_called_once_with()

    def test_day_reset_failure_is_logged(self) -> None:
        self.engine.day_tracker.needs_reset.side_effect = PersistenceError("database is locked")
        with self.assertLogs("wakecal.scheduler", level="ERROR"):
            self.scheduler._reset_day_if_due()

    def test_wakes_for_midnight_before_next_periodic_run(self) -> None:
        self.engine.day_tracker.next_reset_at.return_value = 120_000
        self.assertEqual(self.scheduler.seconds_until_next_wake(30 * 60_000), 120.0)

        self.engine.day_tracker.next_reset_at.return_value = 10**12
        self.assertEqual(self.scheduler.seconds_until_next_wake(30 * 60_000), 1800.0)

    def test_wake_delay_has_a_floor(self) -> None:
        self.engine.clock.return_value = 5_000
        self.assertEqual(self.scheduler.seconds_until_next_wake(0), 1.0)

    def test_next_periodic_uses_configured_interval(self) -> None:
        self.config_manager.settings.return_value = SettingsConfig(refresh_interval_minutes=5)
        self.assertEqual(self.scheduler._next_periodic_at(), 5 * 60_000)


if __name__ == "__main__":
    unittest.main()
