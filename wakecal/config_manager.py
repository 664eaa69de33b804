from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from wakecal.models import AppConfig, SettingsConfig, default_app_config, is_valid_timezone

logger = logging.getLogger(__name__)

SECTIONS = ("settings", "storage", "logging")


def merge_sections(current: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Overlay a partial payload onto the current config, section by section."""
    unknown = sorted(set(payload) - set(SECTIONS))
    if unknown:
        raise ValueError(f"unknown config sections: {', '.join(unknown)}")
    merged = {name: dict(current.get(name) or {}) for name in SECTIONS}
    for name, values in payload.items():
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValueError(f"config section {name!r} must be a mapping")
        merged[name].update(values)
    zone_name = merged["settings"].get("timezone")
    if "timezone" in (payload.get("settings") or {}) and not is_valid_timezone(zone_name):
        raise ValueError(f"unknown timezone: {zone_name!r}")
    return merged


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    staged = path.with_name(path.name + ".tmp")
    staged.write_text(text, encoding="utf-8")
    try:
        staged.replace(path)
    except OSError as exc:
        # Bind-mounted config files cannot be swapped atomically.
        if exc.errno != errno.EBUSY:
            raise
        logger.warning("Atomic replace of %s refused (EBUSY); writing in place", path)
        path.write_text(text, encoding="utf-8")
        staged.unlink(missing_ok=True)


class ConfigManager:
    """YAML-backed settings provider; reloads only when the file changes on disk."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cached: tuple[int, AppConfig] | None = None
        if not self.config_path.exists():
            self.save(default_app_config())
            logger.info("Wrote default configuration to %s", self.config_path)

    def load(self) -> AppConfig:
        with self._lock:
            stamp = self.config_path.stat().st_mtime_ns
            if self._cached is not None and self._cached[0] == stamp:
                return self._cached[1]
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
            if not isinstance(raw, dict):
                logger.warning("%s does not hold a mapping; using defaults", self.config_path)
                raw = {}
            config = AppConfig.from_dict(raw)
            self._cached = (stamp, config)
            return config

    def settings(self) -> SettingsConfig:
        return self.load().settings

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_yaml(self.config_path, config.to_dict())
            self._cached = None

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(merge_sections(self.load().to_dict(), payload or {}))
            self.save(config)
            return config
