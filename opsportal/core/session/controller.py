from __future__ import annotations

import logging
import math
import threading
import uuid
from typing import Any, Dict, Optional, Union

from opsportal.core.backends.base import IdentityBackend, ProfileStore, SettingsStore, Subscription
from opsportal.core.backends.models import AuthChangeEvent, AuthSession, AuthUser, Profile
from opsportal.core.config.models import SessionDefaults
from opsportal.core.errors import StateTransitionError, describe_error
from opsportal.core.notify import Navigator, Notifier, Toast, ToastLevel
from opsportal.core.session.models import SessionPhase, SessionTimings, SignOutReason
from opsportal.core.session.timers import Scheduler, TimerHandle
from opsportal.core.storage import LoginTimestampStore

_AUTHENTICATED = (SessionPhase.ACTIVE, SessionPhase.WARNING_SHOWN)


def _allowed_transitions() -> Dict[SessionPhase, set[SessionPhase]]:
    return {
        SessionPhase.UNAUTHENTICATED: {SessionPhase.ACTIVE, SessionPhase.TRANSITIONING_OUT},
        SessionPhase.ACTIVE: {SessionPhase.WARNING_SHOWN, SessionPhase.TRANSITIONING_OUT, SessionPhase.UNAUTHENTICATED},
        SessionPhase.WARNING_SHOWN: {SessionPhase.ACTIVE, SessionPhase.TRANSITIONING_OUT, SessionPhase.UNAUTHENTICATED},
        SessionPhase.TRANSITIONING_OUT: {SessionPhase.UNAUTHENTICATED},
    }


def _idle_policy(t: SessionTimings) -> tuple:
    return (t.auto_logout_enabled, t.inactivity_timeout_seconds, t.warning_lead_seconds)


def _whole_minutes(seconds: float) -> int:
    return max(1, int(math.ceil(float(seconds) / 60.0)))


class SessionController:
    """
    Session and activity lifecycle for one portal client:
    - login timestamp + wall-clock session expiry (checked periodically)
    - inactivity warning / logout timers, reset by user activity
    - profile fetched once per login
    - teardown on manual, expired or inactive sign-out

    Timer callbacks, activity events and identity notifications may arrive on
    different threads; all state lives behind one re-entrant lock and no
    backend call is made while holding it.
    """

    def __init__(
        self,
        *,
        identity: IdentityBackend,
        settings_store: SettingsStore,
        profile_store: ProfileStore,
        timestamps: LoginTimestampStore,
        scheduler: Scheduler,
        notifier: Notifier,
        navigator: Navigator,
        defaults: Optional[SessionDefaults] = None,
        logger: Optional[logging.Logger] = None,
        event_logger: Any = None,
    ):
        self.identity = identity
        self.settings_store = settings_store
        self.profile_store = profile_store
        self.timestamps = timestamps
        self.scheduler = scheduler
        self.notifier = notifier
        self.navigator = navigator
        self.defaults = defaults or SessionDefaults()
        self.logger = logger or logging.getLogger("opsportal.session")
        self.event_logger = event_logger

        self._lock = threading.RLock()
        self._phase = SessionPhase.UNAUTHENTICATED
        self._user: Optional[AuthUser] = None
        self._profile: Optional[Profile] = None
        self._loading = True
        self._timings = SessionTimings.from_defaults(self.defaults)
        self._settings_loaded = False
        self._login_id: Optional[str] = None
        self._signing_out = False

        self._profile_fetched = False
        self._profile_fetch_login: Optional[str] = None

        self.inactivity_timer: Optional[TimerHandle] = None
        self.warning_timer: Optional[TimerHandle] = None
        self._warning_shown = False
        self._timer_generation = 0
        self._expiry_timer: Optional[TimerHandle] = None
        self._settings_timer: Optional[TimerHandle] = None
        self._subscription: Optional[Subscription] = None

    # ---------- exposed to the UI ----------
    @property
    def user(self) -> Optional[AuthUser]:
        with self._lock:
            return self._user

    @property
    def profile(self) -> Optional[Profile]:
        with self._lock:
            return self._profile

    @property
    def loading(self) -> bool:
        with self._lock:
            return self._loading

    @property
    def phase(self) -> SessionPhase:
        with self._lock:
            return self._phase

    @property
    def timings(self) -> SessionTimings:
        with self._lock:
            return self._timings

    @property
    def warning_shown(self) -> bool:
        with self._lock:
            return self._warning_shown

    @property
    def session_started_at(self) -> Optional[float]:
        return self.timestamps.get()

    def status(self) -> Dict[str, Any]:
        started = self.timestamps.get()
        with self._lock:
            t = self._timings
            return {
                "phase": self._phase.value,
                "user_id": self._user.id if self._user else None,
                "email": self._user.email if self._user else None,
                "has_profile": self._profile is not None,
                "loading": self._loading,
                "session_started_at": started,
                "session_expires_at": (started + t.session_duration_seconds) if started is not None else None,
                "auto_logout_enabled": t.auto_logout_enabled,
                "inactivity_timeout_seconds": t.inactivity_timeout_seconds,
                "warning_lead_seconds": t.warning_lead_seconds,
                "warning_shown": self._warning_shown,
                "settings_loaded": self._settings_loaded,
            }

    # ---------- lifecycle ----------
    def initialize(self) -> None:
        """
        Load settings, restore any cached session and subscribe to identity
        changes. Safe to call again; the previous subscription is dropped.
        """
        self._detach()
        self.refresh_settings()
        with self._lock:
            self._settings_timer = self.scheduler.call_every(
                self.defaults.settings_refresh_interval_seconds, self.refresh_settings, name="session.settings_refresh"
            )

        try:
            session = self.identity.get_current_session()
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Session lookup failed: {describe_error(e)}")
            session = None

        if session is not None:
            self._restore_session(session.user)
        else:
            # a timestamp without a backend session belongs to a login that ended elsewhere
            self.timestamps.clear()
            with self._lock:
                self._loading = False

        subscription = self.identity.subscribe(self._on_auth_change)
        with self._lock:
            self._subscription = subscription

    def close(self) -> None:
        """Teardown: no timer of this controller fires after this returns."""
        self._detach()
        with self._lock:
            self._cancel_timers_locked()
            self._cancel_expiry_check_locked()

    def _detach(self) -> None:
        with self._lock:
            subscription, self._subscription = self._subscription, None
            if self._settings_timer is not None:
                self._settings_timer.cancel()
                self._settings_timer = None
        if subscription is not None:
            subscription.unsubscribe()

    def _restore_session(self, user: AuthUser) -> None:
        if self.timestamps.get() is None:
            # signed out on this client (or never recorded here): do not resurrect it
            self.logger.info("Cached session has no recorded login on this client; treating as signed out.")
            self._discard_stale_session()
            return
        with self._lock:
            self._user = user
        if self.check_session_expiry():
            return
        if self._enter_authenticated(user, reason="restored"):
            self._fetch_profile(user.id)

    def _discard_stale_session(self) -> None:
        try:
            self.identity.sign_out()
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Could not end stale backend session: {describe_error(e)}")
        with self._lock:
            self._clear_local_state_locked()
        self._event("session.stale_discarded", {"reason": SignOutReason.stale_session.value})

    # ---------- identity notifications ----------
    def _on_auth_change(self, event: AuthChangeEvent, session: Optional[AuthSession]) -> None:
        user = session.user if session is not None else None
        if user is None:
            self._on_remote_sign_out(event)
            return

        with self._lock:
            if self._phase is SessionPhase.TRANSITIONING_OUT:
                return
            switching = self._user is not None and self._user.id != user.id
            fresh = event is AuthChangeEvent.SIGNED_IN and self._phase is SessionPhase.UNAUTHENTICATED

        now = self.scheduler.now()
        if switching or fresh:
            self.timestamps.record(now)
        else:
            self.timestamps.record_if_absent(now)

        if self._enter_authenticated(user, reason=event.value):
            self._fetch_profile(user.id)

    def _on_remote_sign_out(self, event: AuthChangeEvent) -> None:
        with self._lock:
            self._cancel_timers_locked()
            self._cancel_expiry_check_locked()
            self._clear_local_state_locked()
            if self._phase in _AUTHENTICATED:
                self._set_phase(SessionPhase.UNAUTHENTICATED, reason=event.value)
        self.timestamps.clear()

    def _enter_authenticated(self, user: AuthUser, *, reason: str) -> bool:
        with self._lock:
            if self._phase is SessionPhase.TRANSITIONING_OUT:
                return False
            new_login = self._login_id is None or self._user is None or self._user.id != user.id
            self._user = user
            if new_login:
                self._login_id = uuid.uuid4().hex
                self._profile = None
                self._profile_fetched = False
                self._profile_fetch_login = None
            if self._phase is SessionPhase.UNAUTHENTICATED:
                self._set_phase(SessionPhase.ACTIVE, reason=reason)
            if new_login:
                self._start_timers_locked()
                self._start_expiry_check_locked()
            return True

    # ---------- profile ----------
    def refresh_profile(self) -> None:
        with self._lock:
            user = self._user
        if user is None:
            return
        self._fetch_profile(user.id, force=True)

    def _fetch_profile(self, user_id: str, *, force: bool = False) -> None:
        with self._lock:
            login_id = self._login_id
            if login_id is None or self._profile_fetch_login is not None:
                return
            if self._profile_fetched and not force:
                return
            self._profile_fetch_login = login_id

        try:
            if self.check_session_expiry():
                return
            profile = self.profile_store.get_profile(user_id)
            with self._lock:
                if self._login_id != login_id:
                    self.logger.debug("Dropping profile fetched for a login that has ended.")
                    return
                self._profile = profile
                self._profile_fetched = True
            if profile is not None:
                self._touch_last_login(user_id)
                self.timestamps.record_if_absent(self.scheduler.now())
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Error fetching profile: {describe_error(e)}")
            with self._lock:
                if self._login_id == login_id:
                    self._profile = None
        finally:
            with self._lock:
                if self._profile_fetch_login == login_id:
                    self._profile_fetch_login = None
                self._loading = False

    def _touch_last_login(self, user_id: str) -> None:
        try:
            self.profile_store.update_last_login(user_id)
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Could not record last login: {describe_error(e)}")

    # ---------- settings ----------
    def refresh_settings(self) -> SessionTimings:
        """Fetch the operator policy; on any failure the current policy stays."""
        try:
            settings = self.settings_store.get_settings()
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Settings refresh failed ({describe_error(e)}); keeping current session policy.")
            return self.timings
        if settings is None:
            self.logger.warning("Settings store returned no settings; keeping current session policy.")
            return self.timings

        timings = SessionTimings.from_settings(settings)
        with self._lock:
            changed = timings != self._timings
            idle_changed = _idle_policy(timings) != _idle_policy(self._timings)
            self._timings = timings
            self._settings_loaded = True
            if idle_changed and self._user is not None and self._phase in _AUTHENTICATED:
                self._start_timers_locked()
                if self._phase is SessionPhase.WARNING_SHOWN:
                    self._set_phase(SessionPhase.ACTIVE, reason="settings_changed")

        if changed:
            self.logger.info(
                f"Session policy: duration={timings.session_duration_seconds:.0f}s "
                f"inactivity={timings.inactivity_timeout_seconds:.0f}s "
                f"warning={timings.warning_lead_seconds:.0f}s auto_logout={timings.auto_logout_enabled}"
            )
            if timings.auto_logout_enabled and not timings.warning_enabled:
                self.logger.warning("Inactivity warning lead is not below the timeout; the warning is skipped, logout stays on time.")
        return timings

    # ---------- activity ----------
    def record_activity(self) -> None:
        """Called on every qualifying input event; in-memory only."""
        with self._lock:
            if not self._timings.auto_logout_enabled or self._user is None:
                return
            if self._phase not in _AUTHENTICATED:
                return
            self._start_timers_locked()
            if self._phase is SessionPhase.WARNING_SHOWN:
                self._set_phase(SessionPhase.ACTIVE, reason="activity")

    def _start_timers_locked(self) -> None:
        self._cancel_timers_locked()
        t = self._timings
        if not t.auto_logout_enabled or self._user is None:
            return
        generation = self._timer_generation
        self._warning_shown = False
        if t.warning_delay_seconds is not None:
            self.warning_timer = self.scheduler.call_later(
                t.warning_delay_seconds, lambda: self._on_warning_due(generation), name="session.warning"
            )
        self.inactivity_timer = self.scheduler.call_later(
            t.inactivity_timeout_seconds, lambda: self._on_inactivity_due(generation), name="session.inactivity"
        )

    def _cancel_timers_locked(self) -> None:
        self._timer_generation += 1
        for handle in (self.warning_timer, self.inactivity_timer):
            if handle is not None:
                handle.cancel()
        self.warning_timer = None
        self.inactivity_timer = None
        self._warning_shown = False

    def _on_warning_due(self, generation: int) -> None:
        with self._lock:
            if generation != self._timer_generation or self._warning_shown:
                return
            if self._user is None or self._phase is not SessionPhase.ACTIVE:
                return
            self._warning_shown = True
            self._set_phase(SessionPhase.WARNING_SHOWN, reason="inactivity_warning")
            minutes = _whole_minutes(self._timings.warning_lead_seconds)
        self._notify(
            Toast(
                level=ToastLevel.warning,
                title="You will be signed out soon",
                description=f"You will be signed out automatically in {minutes} minute(s) due to inactivity.",
                duration_seconds=10.0,
            )
        )

    def _on_inactivity_due(self, generation: int) -> None:
        with self._lock:
            if generation != self._timer_generation or self._user is None:
                return
            if self._phase not in _AUTHENTICATED:
                return
            minutes = _whole_minutes(self._timings.inactivity_timeout_seconds)
            trace_id = self._claim_sign_out_locked(SignOutReason.inactivity)
            if trace_id is None:
                return
        self._complete_sign_out(
            SignOutReason.inactivity,
            trace_id,
            toast=Toast(
                level=ToastLevel.error,
                title="You have been signed out automatically",
                description=f"No activity was detected for {minutes} minute(s).",
                duration_seconds=5.0,
            ),
        )

    # ---------- wall-clock expiry ----------
    def check_session_expiry(self) -> bool:
        """
        True when the session has outlived its configured duration (sign-out
        is then already done) or is being torn down; callers stop their work.
        """
        with self._lock:
            if self._signing_out:
                return True
            duration = self._timings.session_duration_seconds
        started = self.timestamps.get()
        if started is None:
            return False
        elapsed = self.scheduler.now() - started
        if elapsed < duration:
            return False

        with self._lock:
            trace_id = self._claim_sign_out_locked(SignOutReason.session_expired)
        if trace_id is None:
            return True
        self.logger.info(f"Session expired after {elapsed / 3600.0:.2f}h.")
        self._complete_sign_out(
            SignOutReason.session_expired,
            trace_id,
            toast=Toast(
                level=ToastLevel.error,
                title="Session expired",
                description="Please sign in again.",
                duration_seconds=5.0,
            ),
        )
        return True

    def _start_expiry_check_locked(self) -> None:
        self._cancel_expiry_check_locked()
        self._expiry_timer = self.scheduler.call_every(
            self.defaults.expiry_check_interval_seconds, self._on_expiry_check_due, name="session.expiry_check"
        )

    def _cancel_expiry_check_locked(self) -> None:
        if self._expiry_timer is not None:
            self._expiry_timer.cancel()
            self._expiry_timer = None

    def _on_expiry_check_due(self) -> None:
        with self._lock:
            if self._user is None:
                return
        self.check_session_expiry()

    # ---------- sign-out ----------
    def sign_out(self, reason: Union[SignOutReason, str] = SignOutReason.manual, *, toast: Optional[Toast] = None) -> None:
        """
        Tear the session down. Concurrent calls collapse into one: the first
        caller does the work, later callers return immediately.
        """
        reason = SignOutReason(reason)
        with self._lock:
            trace_id = self._claim_sign_out_locked(reason)
        if trace_id is None:
            return
        self._complete_sign_out(reason, trace_id, toast=toast)

    def _claim_sign_out_locked(self, reason: SignOutReason) -> Optional[str]:
        if self._signing_out:
            self.logger.debug(f"Sign-out ({reason.value}) already in progress.")
            return None
        self._signing_out = True
        self._cancel_timers_locked()
        self._cancel_expiry_check_locked()
        self._set_phase(SessionPhase.TRANSITIONING_OUT, reason=reason.value)
        return self._login_id or "session"

    def _complete_sign_out(self, reason: SignOutReason, trace_id: str, *, toast: Optional[Toast]) -> None:
        if toast is not None:
            self._notify(toast)
        try:
            self.identity.sign_out()
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Error during sign-out ({describe_error(e)}); clearing local session anyway.")
        finally:
            try:
                self.timestamps.clear()
            except Exception as e:  # noqa: BLE001
                self.logger.error(f"Could not clear login timestamp: {describe_error(e)}")
            with self._lock:
                self._clear_local_state_locked()
                self._set_phase(SessionPhase.UNAUTHENTICATED, reason=reason.value)
                self._signing_out = False
            self._event("session.signed_out", {"reason": reason.value}, trace_id=trace_id)
            self._navigate(self.defaults.login_route)

    def _clear_local_state_locked(self) -> None:
        self._user = None
        self._profile = None
        self._profile_fetched = False
        self._profile_fetch_login = None
        self._login_id = None
        self._loading = False
        self._warning_shown = False

    # ---------- helpers ----------
    def _set_phase(self, new_phase: SessionPhase, *, reason: str) -> None:
        old = self._phase
        if new_phase is old:
            return
        if new_phase not in _allowed_transitions().get(old, set()):
            raise StateTransitionError(
                f"Invalid session transition {old.value} -> {new_phase.value}",
                state_from=old.value,
                state_to=new_phase.value,
            )
        self._phase = new_phase
        self.logger.debug(f"Session {old.value} -> {new_phase.value} ({reason})")
        self._event("session.state", {"from": old.value, "to": new_phase.value, "reason": reason})

    def _event(self, event_type: str, details: Dict[str, Any], *, trace_id: Optional[str] = None) -> None:
        if self.event_logger is None:
            return
        try:
            self.event_logger.log(trace_id or self._login_id or "session", event_type, details)
        except Exception:
            pass

    def _notify(self, toast: Toast) -> None:
        try:
            self.notifier.notify(toast)
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Notification failed: {e}")

    def _navigate(self, route: str) -> None:
        try:
            self.navigator.navigate(route, replace=True)
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Navigation to {route} failed: {e}")
