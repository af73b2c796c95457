from __future__ import annotations

import logging
import os
import shutil
import time
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from opsportal.core.config.models import PortalConfig
from opsportal.core.errors import ConfigError
from opsportal.core.storage import atomic_write_json, read_json

DEFAULT_CONFIG_PATH = os.path.join("config", "portal.json")

ENV_OVERRIDES = {
    "OPSPORTAL_BACKEND_URL": ("backend", "url"),
    "OPSPORTAL_ANON_KEY": ("backend", "anon_key"),
}


class ConfigManager:
    """
    Loads `config/portal.json`, creating it from defaults when missing.

    A corrupt file is moved aside and defaults are used; a file that parses but
    fails validation is a hard error, since silently ignoring an operator's
    settings is worse than refusing to start.
    """

    def __init__(self, *, path: str = DEFAULT_CONFIG_PATH, logger: Optional[logging.Logger] = None, read_only: bool = False, environ: Optional[Mapping[str, str]] = None):
        self.path = path
        self.logger = logger or logging.getLogger("opsportal.config")
        self.read_only = read_only
        self.environ = os.environ if environ is None else environ
        self._cfg: Optional[PortalConfig] = None

    def load(self) -> PortalConfig:
        ok, raw, err = read_json(self.path)
        if not ok:
            if err != "missing":
                self.logger.warning(f"Config file {self.path} unreadable ({err}); using defaults.")
                self._move_aside()
            raw = {}
            if not self.read_only:
                atomic_write_json(self.path, PortalConfig().model_dump())
        try:
            cfg = PortalConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError("Invalid portal configuration.", path=self.path, errors=e.errors(include_url=False)) from e
        self._cfg = self._apply_env(cfg)
        return self._cfg

    def get(self) -> PortalConfig:
        if self._cfg is None:
            return self.load()
        return self._cfg

    def _apply_env(self, cfg: PortalConfig) -> PortalConfig:
        data: Dict[str, Any] = cfg.model_dump()
        applied = []
        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value:
                data[section][key] = value
                applied.append(env_name)
        if not applied:
            return cfg
        self.logger.info("Config overrides from environment: " + ", ".join(sorted(applied)))
        return PortalConfig.model_validate(data)

    def _move_aside(self) -> None:
        ts = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
        try:
            shutil.move(self.path, f"{self.path}.{ts}.corrupt")
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Could not move corrupt config aside: {e}")
