from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from opsportal.core.events import redact


class Severity(str, Enum):
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class PortalError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


class ConfigError(PortalError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class BackendUnavailableError(PortalError):
    def __init__(self, user_message: str = "The portal backend is unreachable.", **ctx: Any):
        super().__init__("backend_unavailable", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class AuthenticationError(PortalError):
    def __init__(self, user_message: str = "Sign-in failed.", **ctx: Any):
        super().__init__("authentication_failed", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ValidationError(PortalError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class StateTransitionError(PortalError):
    def __init__(self, user_message: str = "Internal session state error.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, PortalError):
        return f"{exc.code}: {exc.user_message}"
    return f"{type(exc).__name__}: {exc}"
