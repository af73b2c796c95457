from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from opsportal.core.backends.models import SystemSettings
from opsportal.core.config.models import SessionDefaults


class SessionPhase(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    ACTIVE = "ACTIVE"
    WARNING_SHOWN = "WARNING_SHOWN"
    TRANSITIONING_OUT = "TRANSITIONING_OUT"


class SignOutReason(str, Enum):
    manual = "manual"
    inactivity = "inactivity"
    session_expired = "session_expired"
    stale_session = "stale_session"


class SessionTimings(BaseModel):
    """Active session policy, in seconds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_duration_seconds: float = Field(default=15 * 3600.0, gt=0)
    inactivity_timeout_seconds: float = Field(default=30 * 60.0, gt=0)
    warning_lead_seconds: float = Field(default=5 * 60.0, ge=0)
    auto_logout_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: SystemSettings) -> "SessionTimings":
        return cls(
            session_duration_seconds=float(settings.session_duration_hours) * 3600.0,
            inactivity_timeout_seconds=float(settings.inactivity_timeout_minutes) * 60.0,
            warning_lead_seconds=float(settings.warning_time_minutes) * 60.0,
            auto_logout_enabled=bool(settings.auto_logout_enabled),
        )

    @classmethod
    def from_defaults(cls, defaults: SessionDefaults) -> "SessionTimings":
        return cls(
            session_duration_seconds=float(defaults.session_duration_hours) * 3600.0,
            inactivity_timeout_seconds=float(defaults.inactivity_timeout_minutes) * 60.0,
            warning_lead_seconds=float(defaults.warning_time_minutes) * 60.0,
            auto_logout_enabled=bool(defaults.auto_logout_enabled),
        )

    @property
    def warning_enabled(self) -> bool:
        return 0 < self.warning_lead_seconds < self.inactivity_timeout_seconds

    @property
    def warning_delay_seconds(self) -> Optional[float]:
        if not self.warning_enabled:
            return None
        return self.inactivity_timeout_seconds - self.warning_lead_seconds
