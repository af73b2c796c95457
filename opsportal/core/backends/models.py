from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AuthChangeEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class AuthUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class AuthSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch seconds
    user: AuthUser


class UserRole(str, Enum):
    admin = "admin"
    supervisor = "supervisor"
    agent = "agent"
    user = "user"


class UserStatus(str, Enum):
    active = "active"
    pending = "pending"
    suspended = "suspended"


class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    employee_id: Optional[str] = None
    role: str = UserRole.user.value
    status: str = UserStatus.active.value
    team: Optional[str] = None
    position: Optional[str] = None
    language: str = "en"
    last_login: Optional[str] = None
    is_schedulable: bool = False


class SystemSettings(BaseModel):
    """
    The operator-tunable session row exactly as stored.

    Deliberately lenient: the session controller must cope with whatever the
    store returns, including a warning lead that is not below the timeout.
    """

    model_config = ConfigDict(extra="ignore")

    id: int = 1
    auto_logout_enabled: bool = True
    inactivity_timeout_minutes: float = Field(default=30, gt=0)
    warning_time_minutes: float = Field(default=5, ge=0)
    session_duration_hours: float = Field(default=15, gt=0)
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None


class SystemSettingsUpdate(BaseModel):
    """Operator input from the admin settings screen."""

    model_config = ConfigDict(extra="forbid")

    auto_logout_enabled: bool = True
    inactivity_timeout_minutes: int = Field(ge=1, le=1440)
    warning_time_minutes: int = Field(ge=1, le=60)
    session_duration_hours: int = Field(ge=1, le=168)

    @model_validator(mode="after")
    def _warning_before_timeout(self) -> "SystemSettingsUpdate":
        if self.warning_time_minutes >= self.inactivity_timeout_minutes:
            raise ValueError("warning_time_minutes must be less than inactivity_timeout_minutes")
        return self
