from __future__ import annotations

import json
import logging
import os

import pytest

from opsportal.core.config.manager import ConfigManager
from opsportal.core.config.models import PortalConfig
from opsportal.core.errors import ConfigError
from opsportal.core.logger import setup_logging


class DummyLogger:
    def info(self, *_a, **_k): ...
    def warning(self, *_a, **_k): ...
    def error(self, *_a, **_k): ...


def test_missing_config_is_written_with_defaults(tmp_path):
    path = str(tmp_path / "config" / "portal.json")
    cm = ConfigManager(path=path, logger=DummyLogger(), environ={})

    cfg = cm.load()

    assert cfg == PortalConfig()
    assert cfg.session.session_duration_hours == 15
    assert cfg.session.inactivity_timeout_minutes == 30
    assert cfg.session.warning_time_minutes == 5
    assert os.path.exists(path)


def test_read_only_does_not_write(tmp_path):
    path = str(tmp_path / "portal.json")
    ConfigManager(path=path, logger=DummyLogger(), read_only=True, environ={}).load()
    assert not os.path.exists(path)


def test_environment_overrides_backend(tmp_path):
    path = str(tmp_path / "portal.json")
    env = {"OPSPORTAL_BACKEND_URL": "https://portal.example.test", "OPSPORTAL_ANON_KEY": "anon-123"}

    cfg = ConfigManager(path=path, logger=DummyLogger(), environ=env).load()

    assert cfg.backend.url == "https://portal.example.test"
    assert cfg.backend.anon_key == "anon-123"
    with open(path, "r", encoding="utf-8") as f:
        assert json.load(f)["backend"]["anon_key"] == ""


def test_corrupt_config_moved_aside_and_defaults_used(tmp_path):
    path = str(tmp_path / "portal.json")
    with open(path, "w", encoding="utf-8") as f:
        f.write("{not json")

    cfg = ConfigManager(path=path, logger=DummyLogger(), environ={}).load()

    assert cfg == PortalConfig()
    assert any("corrupt" in name for name in os.listdir(tmp_path))


def test_invalid_config_raises(tmp_path):
    path = str(tmp_path / "portal.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"session": {"inactivity_timeout_minutes": -1}}, f)

    with pytest.raises(ConfigError) as ei:
        ConfigManager(path=path, logger=DummyLogger(), environ={}).load()
    assert ei.value.context["path"] == path


def test_unknown_fields_rejected(tmp_path):
    path = str(tmp_path / "portal.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"backend": {"url": "http://x", "unknown_field": 1}}, f)

    with pytest.raises(ConfigError):
        ConfigManager(path=path, logger=DummyLogger(), environ={}).load()


def test_get_loads_once(tmp_path):
    cm = ConfigManager(path=str(tmp_path / "portal.json"), logger=DummyLogger(), environ={})
    assert cm.get() is cm.get()


def test_setup_logging_takes_level_name_from_config(tmp_path):
    logger = logging.getLogger("opsportal")
    saved = list(logger.handlers), logger.level, logger.propagate
    logger.handlers = []
    try:
        log = setup_logging(str(tmp_path / "logs"), level="debug")
        assert log.level == logging.DEBUG
        assert len(log.handlers) == 2

        again = setup_logging(str(tmp_path / "logs"), level="nonsense")
        assert again.level == logging.INFO
        assert len(again.handlers) == 2

        log.info("hello")
        for h in log.handlers:
            h.flush()
        with open(tmp_path / "logs" / "opsportal.log", "r", encoding="utf-8") as f:
            assert "hello" in f.read()
    finally:
        for h in logger.handlers:
            h.close()
        logger.handlers, logger.level, logger.propagate = saved[0], saved[1], saved[2]
