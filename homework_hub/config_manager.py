from __future__ import annotations

import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from homework_hub.models import AppConfig, default_app_config

CONFIG_PATH_ENV = "HOMEWORK_HUB_CONFIG_PATH"
STORE_PATH_ENV = "HOMEWORK_HUB_STORE_PATH"
DEFAULT_CONFIG_PATH = "config.yaml"


class ConfigManager:
    """Reads ``config.yaml``, writing the defaults there on first use.

    ``HOMEWORK_HUB_STORE_PATH`` overrides ``store.path`` from the file.
    """

    def __init__(self, config_path: str | os.PathLike[str], env: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self._env = os.environ if env is None else env
        self._lock = threading.Lock()
        if not self.config_path.exists():
            self.save(default_app_config())

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ConfigManager":
        env = os.environ if env is None else env
        return cls(env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH, env=env)

    def load(self) -> AppConfig:
        with self._lock:
            text = self.config_path.read_text(encoding="utf-8")
        data: Any = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must hold a YAML mapping, got {type(data).__name__}")
        config = AppConfig.from_dict(data)
        store_path = str(self._env.get(STORE_PATH_ENV) or "").strip()
        if store_path:
            config.store.path = store_path
        return config

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # A bind-mounted config file cannot be renamed over; write it in place.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)
