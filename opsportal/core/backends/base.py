from __future__ import annotations

from typing import Callable, Optional

from opsportal.core.backends.models import AuthChangeEvent, AuthSession, Profile, SystemSettings, SystemSettingsUpdate

AuthListener = Callable[[AuthChangeEvent, Optional[AuthSession]], None]


class Subscription:
    """Handle returned by `IdentityBackend.subscribe`; `unsubscribe()` is idempotent."""

    def __init__(self, on_unsubscribe: Optional[Callable[[], None]] = None):
        self._on_unsubscribe = on_unsubscribe
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_unsubscribe is not None:
            self._on_unsubscribe()


class IdentityBackend:
    """
    Authentication service interface.

    - get_current_session() -> cached session or None, no network required
    - subscribe(listener)   -> change notifications until unsubscribed
    - sign_out()            -> end the session remotely and locally
    """

    name: str = "base"

    def get_current_session(self) -> Optional[AuthSession]:
        ...

    def subscribe(self, listener: AuthListener) -> Subscription:
        ...

    def sign_out(self) -> None:
        ...


class SettingsStore:
    """Operator-configured session durations (a single row)."""

    def get_settings(self) -> Optional[SystemSettings]:
        ...

    def update_settings(self, update: SystemSettingsUpdate, *, updated_by: Optional[str] = None) -> SystemSettings:
        ...


class ProfileStore:
    def get_profile(self, user_id: str) -> Optional[Profile]:
        ...

    def update_last_login(self, user_id: str) -> None:
        ...
