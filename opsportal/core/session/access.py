from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel

from opsportal.core.backends.models import AuthUser, Profile, UserStatus

LANDING_ROUTE = "/landing"
PENDING_ROUTE = "/pending"
SUSPENDED_ROUTE = "/suspended"


class AccessOutcome(str, Enum):
    ALLOW = "ALLOW"
    WAIT = "WAIT"
    REDIRECT = "REDIRECT"


class AccessDecision(BaseModel):
    outcome: AccessOutcome
    redirect_to: Optional[str] = None
    return_to: Optional[str] = None


def is_whitelisted(path: str, whitelist: Iterable[str]) -> bool:
    """`/x` matches exactly; `/x/*` matches every path starting with `/x`."""
    for entry in whitelist:
        if entry.endswith("/*"):
            if path.startswith(entry[:-2]):
                return True
        elif path == entry:
            return True
    return False


def resolve_access(
    path: str,
    *,
    user: Optional[AuthUser],
    profile: Optional[Profile],
    loading: bool,
    whitelist: Iterable[str] = (),
) -> AccessDecision:
    if loading:
        return AccessDecision(outcome=AccessOutcome.WAIT)

    if user is None and not is_whitelisted(path, whitelist):
        return AccessDecision(outcome=AccessOutcome.REDIRECT, redirect_to=LANDING_ROUTE, return_to=path)

    if user is not None and profile is not None:
        if profile.status == UserStatus.pending.value and path != PENDING_ROUTE:
            return AccessDecision(outcome=AccessOutcome.REDIRECT, redirect_to=PENDING_ROUTE)
        if profile.status == UserStatus.suspended.value and path != SUSPENDED_ROUTE:
            return AccessDecision(outcome=AccessOutcome.REDIRECT, redirect_to=SUSPENDED_ROUTE)

    return AccessDecision(outcome=AccessOutcome.ALLOW)
