from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from opsportal.core.backends.models import SystemSettings
from opsportal.core.config.models import SessionDefaults
from opsportal.core.events import EventLogger
from opsportal.core.session.controller import SessionController
from opsportal.core.storage import LocalStore, LoginTimestampStore

from tests.helpers.fakes import (
    FakeIdentityBackend,
    FakeProfileStore,
    FakeSettingsStore,
    ManualScheduler,
    RecordingNavigator,
    RecordingNotifier,
)


class DummyLogger:
    def debug(self, *_a, **_k): ...
    def info(self, *_a, **_k): ...
    def warning(self, *_a, **_k): ...
    def error(self, *_a, **_k): ...


@dataclass
class SessionHarness:
    controller: SessionController
    identity: FakeIdentityBackend
    settings: FakeSettingsStore
    profiles: FakeProfileStore
    scheduler: ManualScheduler
    notifier: RecordingNotifier
    navigator: RecordingNavigator
    timestamps: LoginTimestampStore
    store: LocalStore
    events_path: str

    @classmethod
    def make(
        cls,
        *,
        tmp_path,
        settings: Optional[SystemSettings] = None,
        identity: Optional[FakeIdentityBackend] = None,
        scheduler: Optional[ManualScheduler] = None,
        store: Optional[LocalStore] = None,
    ) -> "SessionHarness":
        store = store or LocalStore(str(tmp_path / "local_store.json"))
        timestamps = LoginTimestampStore(store)
        identity = identity or FakeIdentityBackend()
        settings_store = FakeSettingsStore(settings=settings if settings is not None else SystemSettings())
        profiles = FakeProfileStore()
        scheduler = scheduler or ManualScheduler()
        notifier = RecordingNotifier()
        navigator = RecordingNavigator()
        events_path = str(tmp_path / "logs" / "events.jsonl")
        controller = SessionController(
            identity=identity,
            settings_store=settings_store,
            profile_store=profiles,
            timestamps=timestamps,
            scheduler=scheduler,
            notifier=notifier,
            navigator=navigator,
            defaults=SessionDefaults(),
            logger=DummyLogger(),
            event_logger=EventLogger(events_path),
        )
        return cls(
            controller=controller,
            identity=identity,
            settings=settings_store,
            profiles=profiles,
            scheduler=scheduler,
            notifier=notifier,
            navigator=navigator,
            timestamps=timestamps,
            store=store,
            events_path=events_path,
        )

    def sign_in(self, user_id: str = "u1") -> None:
        self.identity.sign_in(user_id)

    def login_routes(self) -> int:
        return sum(1 for route, _ in self.navigator.routes if route == "/login")
