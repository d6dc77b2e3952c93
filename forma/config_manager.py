from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from forma.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("caldav", "password"), ("ai", "api_key"))
# Environment variables win over the file for secrets, so keys need not be stored on disk.
ENV_OVERRIDES = {
    ("ai", "api_key"): "FORMA_AI_API_KEY",
    ("caldav", "password"): "FORMA_CALDAV_PASSWORD",
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def strip_masked_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop secret fields sent back as blank or masked so they keep their stored value."""
    sanitized = copy.deepcopy(payload)
    for section, name in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict) or name not in block:
            continue
        value = str(block.get(name) or "").strip()
        if value in {"", MASK} and str(current.get(section, {}).get(name, "")):
            block.pop(name, None)
        if not block:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        logger.info("Creating default config at %s", self.config_path)
        self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {self.config_path} must contain a mapping.")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read()
        for (section, name), env_name in ENV_OVERRIDES.items():
            value = self.environ.get(env_name, "").strip()
            if value:
                data.setdefault(section, {})
                if isinstance(data[section], dict):
                    data[section][name] = value
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                logger.warning("Atomic replace of %s failed (EBUSY), writing in place", self.config_path)
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = AppConfig.from_dict(self._read()).to_dict()
            merged = _deep_merge(current, strip_masked_secrets(payload, current))
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, name in SECRET_FIELDS:
            if config.get(section, {}).get(name):
                config[section][name] = MASK
        return config
