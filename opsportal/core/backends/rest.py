from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from opsportal.core.backends.base import AuthListener, IdentityBackend, ProfileStore, SettingsStore, Subscription
from opsportal.core.backends.models import AuthChangeEvent, AuthSession, Profile, SystemSettings, SystemSettingsUpdate
from opsportal.core.errors import AuthenticationError, BackendUnavailableError
from opsportal.core.storage import LocalStore

AUTH_SESSION_KEY = "opsportal_auth_session"


class BaasClient:
    """
    Thin HTTP client for the hosted backend: `/auth/v1` for identity and
    `/rest/v1` for table rows and RPCs.
    """

    def __init__(self, *, base_url: str, anon_key: str, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url
        self.anon_key = anon_key
        self.timeout_seconds = float(timeout_seconds)
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        h = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
        }
        h.update(headers or {})
        try:
            r = self.session.request(method, self._url(path), params=params, json=json, headers=h, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise BackendUnavailableError(path=path, detail=str(e)) from e
        if r.status_code >= 500:
            raise BackendUnavailableError(path=path, status=r.status_code)
        return r


def _rows(r: requests.Response, *, path: str) -> List[Dict[str, Any]]:
    if r.status_code >= 400:
        raise BackendUnavailableError(path=path, status=r.status_code)
    data = r.json()
    if isinstance(data, dict):
        return [data]
    return list(data or [])


class RestIdentityBackend(IdentityBackend):
    """
    Password sign-in against `/auth/v1`, with the session cached in the local
    store so that a restarted client finds it again.
    """

    name = "rest"

    def __init__(self, *, client: BaasClient, store: LocalStore, logger: Optional[logging.Logger] = None):
        self.client = client
        self.store = store
        self.logger = logger or logging.getLogger("opsportal.identity")
        self._lock = threading.RLock()
        self._session: Optional[AuthSession] = None
        self._loaded = False
        self._listeners: List[AuthListener] = []

    # ---- session cache ----
    def get_current_session(self) -> Optional[AuthSession]:
        with self._lock:
            if not self._loaded:
                self._loaded = True
                raw = self.store.get_item(AUTH_SESSION_KEY)
                if raw:
                    try:
                        self._session = AuthSession.model_validate_json(raw)
                    except PydanticValidationError:
                        self.logger.warning("Discarding unreadable cached auth session.")
                        self.store.remove_item(AUTH_SESSION_KEY)
            return self._session

    def access_token(self) -> Optional[str]:
        s = self.get_current_session()
        return s.access_token if s is not None else None

    def _set_session(self, session: Optional[AuthSession]) -> None:
        with self._lock:
            self._session = session
            self._loaded = True
            if session is None:
                self.store.remove_item(AUTH_SESSION_KEY)
            else:
                self.store.set_item(AUTH_SESSION_KEY, session.model_dump_json())

    # ---- auth flows ----
    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        path = "/auth/v1/token"
        r = self.client.request("POST", path, params={"grant_type": "password"}, json={"email": email, "password": password})
        if r.status_code in {400, 401, 403, 422}:
            raise AuthenticationError("Email or password is incorrect.", status=r.status_code)
        session = self._parse_token_response(r, path=path)
        self._set_session(session)
        self.logger.info(f"Signed in as {session.user.email or session.user.id}.")
        self._emit(AuthChangeEvent.SIGNED_IN, session)
        return session

    def refresh_session(self) -> AuthSession:
        current = self.get_current_session()
        if current is None or not current.refresh_token:
            raise AuthenticationError("No session to refresh.")
        path = "/auth/v1/token"
        r = self.client.request("POST", path, params={"grant_type": "refresh_token"}, json={"refresh_token": current.refresh_token})
        if r.status_code in {400, 401, 403}:
            self._set_session(None)
            self._emit(AuthChangeEvent.SIGNED_OUT, None)
            raise AuthenticationError("Session is no longer valid.", status=r.status_code)
        session = self._parse_token_response(r, path=path)
        self._set_session(session)
        self._emit(AuthChangeEvent.TOKEN_REFRESHED, session)
        return session

    def sign_out(self) -> None:
        token = self.access_token()
        try:
            if token:
                r = self.client.request("POST", "/auth/v1/logout", access_token=token)
                if r.status_code >= 400 and r.status_code not in {401, 403, 404}:
                    raise BackendUnavailableError(path="/auth/v1/logout", status=r.status_code)
        finally:
            self._set_session(None)
            self._emit(AuthChangeEvent.SIGNED_OUT, None)

    # ---- notifications ----
    def subscribe(self, listener: AuthListener) -> Subscription:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return Subscription(on_unsubscribe=_remove)

    def _emit(self, event: AuthChangeEvent, session: Optional[AuthSession]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, session)
            except Exception as e:  # noqa: BLE001
                self.logger.error(f"Auth listener failed on {event.value}: {e}")

    @staticmethod
    def _parse_token_response(r: requests.Response, *, path: str) -> AuthSession:
        if r.status_code >= 400:
            raise BackendUnavailableError(path=path, status=r.status_code)
        data = dict(r.json() or {})
        if not data.get("expires_at") and data.get("expires_in"):
            data["expires_at"] = int(time.time()) + int(data["expires_in"])
        try:
            return AuthSession.model_validate(data)
        except PydanticValidationError as e:
            raise BackendUnavailableError("Unexpected response from the sign-in service.", path=path) from e


class RestSettingsStore(SettingsStore):
    """The `system_settings` table holds exactly one row, `id = 1`."""

    def __init__(self, *, client: BaasClient, identity: Optional[RestIdentityBackend] = None):
        self.client = client
        self.identity = identity

    def _token(self) -> Optional[str]:
        return self.identity.access_token() if self.identity is not None else None

    def get_settings(self) -> Optional[SystemSettings]:
        path = "/rest/v1/system_settings"
        r = self.client.request("GET", path, params={"id": "eq.1", "select": "*"}, access_token=self._token())
        rows = _rows(r, path=path)
        if not rows:
            return None
        return SystemSettings.model_validate(rows[0])

    def update_settings(self, update: SystemSettingsUpdate, *, updated_by: Optional[str] = None) -> SystemSettings:
        path = "/rest/v1/system_settings"
        payload: Dict[str, Any] = update.model_dump()
        if updated_by:
            payload["updated_by"] = updated_by
        r = self.client.request(
            "PATCH",
            path,
            params={"id": "eq.1"},
            json=payload,
            access_token=self._token(),
            headers={"Prefer": "return=representation"},
        )
        rows = _rows(r, path=path)
        if not rows:
            raise BackendUnavailableError("Settings row is missing.", path=path)
        return SystemSettings.model_validate(rows[0])


class RestProfileStore(ProfileStore):
    def __init__(self, *, client: BaasClient, identity: Optional[RestIdentityBackend] = None):
        self.client = client
        self.identity = identity

    def _token(self) -> Optional[str]:
        return self.identity.access_token() if self.identity is not None else None

    def get_profile(self, user_id: str) -> Optional[Profile]:
        path = "/rest/v1/profiles"
        r = self.client.request("GET", path, params={"id": f"eq.{user_id}", "select": "*"}, access_token=self._token())
        rows = _rows(r, path=path)
        if not rows:
            return None
        return Profile.model_validate(rows[0])

    def update_last_login(self, user_id: str) -> None:
        path = "/rest/v1/rpc/update_last_login"
        r = self.client.request("POST", path, json={"user_id": user_id}, access_token=self._token())
        if r.status_code >= 400:
            raise BackendUnavailableError(path=path, status=r.status_code)
