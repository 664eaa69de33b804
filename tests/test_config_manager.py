import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from wakecal.config_manager import ConfigManager
from wakecal.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_writes_default_config_when_missing(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            settings = manager.settings()
            self.assertEqual(settings.refresh_interval_minutes, 30)
            self.assertEqual(settings.all_day_default_hour, 20)
            self.assertEqual(settings.duplicate_handling_mode, "ALLOW_MULTIPLE")
            self.assertEqual(settings.timezone, "UTC")

    def test_update_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"settings": {"timezone": "Europe/Paris"}})
            updated = manager.update({"settings": {"lookahead_hours": 24}, "logging": {"level": "WARNING"}})

            self.assertEqual(updated.settings.timezone, "Europe/Paris")
            self.assertEqual(updated.settings.lookahead_hours, 24)
            self.assertEqual(updated.logging.level, "WARNING")
            self.assertEqual(manager.load().settings.timezone, "Europe/Paris")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "settings": {"timezone": "America/New_York", "duplicate_handling_mode": "EARLIEST_ONLY"},
                    "storage": {"state_path": "/var/lib/wakecal/state.db"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["settings"]["timezone"], "America/New_York")
            self.assertEqual(data["settings"]["duplicate_handling_mode"], "EARLIEST_ONLY")
            self.assertEqual(data["storage"]["state_path"], "/var/lib/wakecal/state.db")

    def test_update_rejects_unknown_sections_and_zones(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with self.assertRaises(ValueError):
                manager.update({"caldav": {"base_url": "x"}})
            with self.assertRaises(ValueError):
                manager.update({"settings": {"timezone": "Mars/Olympus"}})
            self.assertEqual(manager.settings().timezone, "UTC")

    def test_load_picks_up_external_edits(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertEqual(manager.settings().lookahead_hours, 48)

            config_path.write_text("settings:\n  lookahead_hours: 6\n", encoding="utf-8")
            os.utime(config_path, ns=(1, 10**18))

            self.assertEqual(manager.settings().lookahead_hours, 6)


if __name__ == "__main__":
    unittest.main()
