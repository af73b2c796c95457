from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BackendConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    url: str = "http://127.0.0.1:54321"
    anon_key: str = ""
    request_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)


class SessionDefaults(BaseModel):
    """Values in force until the settings store answers for the first time."""

    model_config = ConfigDict(extra="forbid")
    session_duration_hours: float = Field(default=15.0, gt=0.0)
    inactivity_timeout_minutes: float = Field(default=30.0, gt=0.0)
    warning_time_minutes: float = Field(default=5.0, ge=0.0)
    auto_logout_enabled: bool = True
    expiry_check_interval_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    settings_refresh_interval_seconds: float = Field(default=300.0, gt=0.0, le=86400.0)
    login_route: str = "/login"
    login_timestamp_key: str = "opsportal_login_timestamp"


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    local_store_path: str = "runtime/local_store.json"


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    log_dir: str = "logs"
    events_file: str = "events.jsonl"
    level: str = "INFO"


class PortalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    session: SessionDefaults = Field(default_factory=SessionDefaults)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
