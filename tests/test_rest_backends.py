from __future__ import annotations

from typing import Any, Dict, List

import pytest
import requests

from opsportal.core.backends.models import AuthChangeEvent, SystemSettingsUpdate
from opsportal.core.backends.rest import AUTH_SESSION_KEY, BaasClient, RestIdentityBackend, RestProfileStore, RestSettingsStore
from opsportal.core.errors import AuthenticationError, BackendUnavailableError
from opsportal.core.events import EventLogger
from opsportal.core.storage import LocalStore

from tests.helpers.log_assertions import assert_no_secret_leak, read_jsonl


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None):
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        return self._body


class FakeHttp:
    """Stands in for requests.Session: replies from a queue, records every call."""

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, *, params=None, json=None, headers=None, timeout=None):  # noqa: ANN001
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers, "timeout": timeout})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def _token_body(user_id: str = "u1", access: str = "at-secret-1") -> Dict[str, Any]:
    return {
        "access_token": access,
        "refresh_token": "rt-secret-1",
        "expires_in": 3600,
        "token_type": "bearer",
        "user": {"id": user_id, "email": "agent@example.com"},
    }


def _identity(tmp_path, http: FakeHttp) -> RestIdentityBackend:
    client = BaasClient(base_url="https://portal.example.test/", anon_key="anon-key", session=http)
    return RestIdentityBackend(client=client, store=LocalStore(str(tmp_path / "store.json")))


def test_sign_in_persists_session_and_notifies(tmp_path):
    http = FakeHttp(FakeResponse(200, _token_body()))
    identity = _identity(tmp_path, http)
    seen: List[tuple] = []
    identity.subscribe(lambda event, session: seen.append((event, session.user.id if session else None)))

    session = identity.sign_in_with_password("agent@example.com", "pw")

    assert session.user.id == "u1"
    assert session.expires_at is not None
    assert seen == [(AuthChangeEvent.SIGNED_IN, "u1")]
    call = http.calls[0]
    assert call["url"] == "https://portal.example.test/auth/v1/token"
    assert call["params"] == {"grant_type": "password"}
    assert call["headers"]["apikey"] == "anon-key"

    restarted = RestIdentityBackend(client=identity.client, store=LocalStore(identity.store.path))
    cached = restarted.get_current_session()
    assert cached is not None and cached.access_token == "at-secret-1"


def test_bad_credentials_raise_authentication_error(tmp_path):
    identity = _identity(tmp_path, FakeHttp(FakeResponse(400, {"error": "invalid_grant"})))

    with pytest.raises(AuthenticationError):
        identity.sign_in_with_password("agent@example.com", "wrong")
    assert identity.get_current_session() is None


def test_network_failure_is_backend_unavailable(tmp_path):
    identity = _identity(tmp_path, FakeHttp(requests.ConnectionError("refused")))

    with pytest.raises(BackendUnavailableError):
        identity.sign_in_with_password("agent@example.com", "pw")


def test_sign_out_clears_cache_even_when_backend_fails(tmp_path):
    http = FakeHttp(FakeResponse(200, _token_body()), FakeResponse(503))
    identity = _identity(tmp_path, http)
    identity.sign_in_with_password("agent@example.com", "pw")
    events: List[AuthChangeEvent] = []
    sub = identity.subscribe(lambda event, _s: events.append(event))

    with pytest.raises(BackendUnavailableError):
        identity.sign_out()

    assert identity.get_current_session() is None
    assert identity.store.get_item(AUTH_SESSION_KEY) is None
    assert events == [AuthChangeEvent.SIGNED_OUT]
    assert http.calls[-1]["headers"]["Authorization"] == "Bearer at-secret-1"

    sub.unsubscribe()
    sub.unsubscribe()
    assert sub.active is False


def test_refresh_emits_token_refreshed(tmp_path):
    http = FakeHttp(FakeResponse(200, _token_body()), FakeResponse(200, _token_body(access="at-secret-2")))
    identity = _identity(tmp_path, http)
    identity.sign_in_with_password("agent@example.com", "pw")
    events: List[AuthChangeEvent] = []
    identity.subscribe(lambda event, _s: events.append(event))

    identity.refresh_session()

    assert events == [AuthChangeEvent.TOKEN_REFRESHED]
    assert identity.access_token() == "at-secret-2"
    assert http.calls[-1]["json"] == {"refresh_token": "rt-secret-1"}


def test_listener_failure_does_not_break_sign_in(tmp_path):
    identity = _identity(tmp_path, FakeHttp(FakeResponse(200, _token_body())))

    def _boom(_event, _session):  # noqa: ANN001
        raise RuntimeError("listener bug")

    identity.subscribe(_boom)
    assert identity.sign_in_with_password("agent@example.com", "pw").user.id == "u1"


def test_settings_store_reads_and_updates_single_row(tmp_path):
    row = {"id": 1, "auto_logout_enabled": True, "inactivity_timeout_minutes": 20, "warning_time_minutes": 3, "session_duration_hours": 12}
    updated = dict(row, inactivity_timeout_minutes=45, updated_by="admin-1")
    http = FakeHttp(FakeResponse(200, [row]), FakeResponse(200, [updated]), FakeResponse(200, []))
    store = RestSettingsStore(client=BaasClient(base_url="https://portal.example.test", anon_key="k", session=http))

    s = store.get_settings()
    assert s is not None and s.inactivity_timeout_minutes == 20
    assert http.calls[0]["params"]["id"] == "eq.1"

    u = store.update_settings(
        SystemSettingsUpdate(inactivity_timeout_minutes=45, warning_time_minutes=3, session_duration_hours=12),
        updated_by="admin-1",
    )
    assert u.updated_by == "admin-1"
    assert http.calls[1]["method"] == "PATCH"
    assert http.calls[1]["headers"]["Prefer"] == "return=representation"
    assert http.calls[1]["json"]["updated_by"] == "admin-1"

    assert store.get_settings() is None


def test_settings_update_validation():
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        SystemSettingsUpdate(inactivity_timeout_minutes=10, warning_time_minutes=10, session_duration_hours=8)
    with pytest.raises(ValidationError):
        SystemSettingsUpdate(inactivity_timeout_minutes=0, warning_time_minutes=1, session_duration_hours=8)
    with pytest.raises(ValidationError):
        SystemSettingsUpdate(inactivity_timeout_minutes=30, warning_time_minutes=5, session_duration_hours=169)


def test_profile_store_fetch_and_last_login(tmp_path):
    http = FakeHttp(
        FakeResponse(200, [{"id": "u1", "full_name": "Ada", "status": "pending", "extra_column": 1}]),
        FakeResponse(204, None),
        FakeResponse(200, []),
        FakeResponse(500, None),
    )
    store = RestProfileStore(client=BaasClient(base_url="https://portal.example.test", anon_key="k", session=http))

    p = store.get_profile("u1")
    assert p is not None and p.full_name == "Ada" and p.status == "pending"
    assert http.calls[0]["params"]["id"] == "eq.u1"

    store.update_last_login("u1")
    assert http.calls[1]["url"].endswith("/rest/v1/rpc/update_last_login")

    assert store.get_profile("u2") is None
    with pytest.raises(BackendUnavailableError):
        store.update_last_login("u1")


def test_event_log_redacts_secrets(tmp_path):
    path = str(tmp_path / "events.jsonl")
    ev = EventLogger(path)

    ev.log("t1", "backend.request", {"access_token": "at-secret-1", "nested": {"Authorization": "Bearer at-secret-1"}, "user": "u1"})

    rows = read_jsonl(path)
    assert rows[0]["details"]["user"] == "u1"
    assert_no_secret_leak(rows, "at-secret-1")


def test_error_context_is_redacted():
    err = BackendUnavailableError(path="/auth/v1/token", apikey="anon-secret")
    d = err.to_dict()
    assert d["code"] == "backend_unavailable"
    assert d["context"]["apikey"] == "***REDACTED***"
