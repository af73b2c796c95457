from __future__ import annotations

import argparse
import getpass
import json
import logging
import math
import os
import sys
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from opsportal.core.backends.models import SystemSettingsUpdate
from opsportal.core.backends.rest import BaasClient, RestIdentityBackend, RestProfileStore, RestSettingsStore
from opsportal.core.config.manager import DEFAULT_CONFIG_PATH, ConfigManager
from opsportal.core.config.models import PortalConfig
from opsportal.core.errors import PortalError, ValidationError, describe_error
from opsportal.core.events import EventLogger
from opsportal.core.logger import setup_logging
from opsportal.core.notify import LoggingNotifier, RouteNavigator
from opsportal.core.session.controller import SessionController
from opsportal.core.session.timers import ThreadingScheduler
from opsportal.core.storage import LocalStore, LoginTimestampStore


@dataclass
class Portal:
    cfg: PortalConfig
    logger: logging.Logger
    event_logger: EventLogger
    store: LocalStore
    identity: RestIdentityBackend
    settings_store: RestSettingsStore
    profile_store: RestProfileStore
    timestamps: LoginTimestampStore

    def controller(self, scheduler: ThreadingScheduler) -> SessionController:
        navigator = RouteNavigator(on_navigate=lambda route: self.logger.info(f"-> {route}"))
        return SessionController(
            identity=self.identity,
            settings_store=self.settings_store,
            profile_store=self.profile_store,
            timestamps=self.timestamps,
            scheduler=scheduler,
            notifier=LoggingNotifier(logger=self.logger, event_logger=self.event_logger),
            navigator=navigator,
            defaults=self.cfg.session,
            logger=self.logger.getChild("session"),
            event_logger=self.event_logger,
        )


def build_portal(config_path: str = DEFAULT_CONFIG_PATH) -> Portal:
    bootstrap = logging.getLogger("opsportal")
    cfg = ConfigManager(path=config_path, logger=bootstrap).load()
    logger = setup_logging(cfg.logging.log_dir, level=cfg.logging.level)
    event_logger = EventLogger(os.path.join(cfg.logging.log_dir, cfg.logging.events_file))

    store = LocalStore(cfg.storage.local_store_path, logger=logger.getChild("storage"))
    client = BaasClient(base_url=cfg.backend.url, anon_key=cfg.backend.anon_key, timeout_seconds=cfg.backend.request_timeout_seconds)
    identity = RestIdentityBackend(client=client, store=store, logger=logger.getChild("identity"))
    return Portal(
        cfg=cfg,
        logger=logger,
        event_logger=event_logger,
        store=store,
        identity=identity,
        settings_store=RestSettingsStore(client=client, identity=identity),
        profile_store=RestProfileStore(client=client, identity=identity),
        timestamps=LoginTimestampStore(store, key=cfg.session.login_timestamp_key, logger=logger.getChild("storage")),
    )


def _cmd_login(portal: Portal, args: argparse.Namespace) -> int:
    scheduler = ThreadingScheduler()
    controller = portal.controller(scheduler)
    try:
        controller.initialize()
        email = args.email or input("Email: ").strip()
        password = getpass.getpass("Password: ")
        portal.identity.sign_in_with_password(email, password)
        status = controller.status()
        profile = controller.profile
        name = profile.full_name if profile is not None and profile.full_name else status["email"]
        print(f"Signed in as {name}.")
        return 0
    finally:
        controller.close()
        scheduler.stop()


def _cmd_logout(portal: Portal, _args: argparse.Namespace) -> int:
    scheduler = ThreadingScheduler()
    controller = portal.controller(scheduler)
    try:
        controller.initialize()
        if controller.user is None:
            print("Not signed in.")
            return 0
        controller.sign_out()
        print("Signed out.")
        return 0
    finally:
        controller.close()
        scheduler.stop()


def _cmd_status(portal: Portal, _args: argparse.Namespace) -> int:
    scheduler = ThreadingScheduler()
    controller = portal.controller(scheduler)
    try:
        controller.initialize()
        print(json.dumps(controller.status(), indent=2, sort_keys=True))
        return 0
    finally:
        controller.close()
        scheduler.stop()


def _whole(value: float) -> int:
    """Stored values may be fractional; updates take whole units, rounded up."""
    return max(1, int(math.ceil(float(value))))


def _cmd_settings(portal: Portal, args: argparse.Namespace) -> int:
    if args.inactivity is None and args.warning is None and args.duration is None and args.auto_logout is None:
        current = portal.settings_store.get_settings()
        print(json.dumps(current.model_dump() if current is not None else None, indent=2, sort_keys=True))
        return 0

    current = portal.settings_store.get_settings()
    base = current.model_dump() if current is not None else {}
    raw = {
        "auto_logout_enabled": base.get("auto_logout_enabled", True) if args.auto_logout is None else args.auto_logout == "on",
        "inactivity_timeout_minutes": args.inactivity if args.inactivity is not None else _whole(base.get("inactivity_timeout_minutes", 30)),
        "warning_time_minutes": args.warning if args.warning is not None else _whole(base.get("warning_time_minutes", 5)),
        "session_duration_hours": args.duration if args.duration is not None else _whole(base.get("session_duration_hours", 15)),
    }
    try:
        update = SystemSettingsUpdate.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError("Session settings are out of range.", errors=e.errors(include_url=False)) from e
    session = portal.identity.get_current_session()
    saved = portal.settings_store.update_settings(update, updated_by=session.user.id if session is not None else None)
    print(json.dumps(saved.model_dump(), indent=2, sort_keys=True))
    return 0


def _cmd_watch(portal: Portal, _args: argparse.Namespace) -> int:
    """Run the session lifecycle in the foreground; every stdin line counts as activity."""
    scheduler = ThreadingScheduler()
    controller = portal.controller(scheduler)
    try:
        controller.initialize()
        if controller.user is None:
            print("Not signed in. Run `login` first.")
            return 1
        print("Watching session. Press Enter to register activity; 'status', 'logout' or 'quit'.")
        while True:
            try:
                text = input("> ").strip().lower()
            except (EOFError, KeyboardInterrupt):
                print("")
                return 0
            if controller.user is None:
                print("Session ended.")
                return 0
            if text in {"quit", "exit"}:
                return 0
            if text == "logout":
                controller.sign_out()
                return 0
            controller.record_activity()
            if text == "status":
                print(json.dumps(controller.status(), indent=2, sort_keys=True))
    finally:
        controller.close()
        scheduler.stop()


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(description="Operations portal session client")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to portal.json.")
    sub = ap.add_subparsers(dest="command", required=True)

    p_login = sub.add_parser("login", help="Sign in with email and password.")
    p_login.add_argument("--email", default=None)
    sub.add_parser("logout", help="Sign out and clear the local session.")
    sub.add_parser("status", help="Print the current session state.")
    sub.add_parser("watch", help="Keep the session running; stdin lines count as activity.")
    p_settings = sub.add_parser("settings", help="Show or update the session policy (admin).")
    p_settings.add_argument("--inactivity", type=int, default=None, help="Inactivity timeout in minutes.")
    p_settings.add_argument("--warning", type=int, default=None, help="Warning lead in minutes.")
    p_settings.add_argument("--duration", type=int, default=None, help="Session duration in hours.")
    p_settings.add_argument("--auto-logout", choices=["on", "off"], default=None)
    args = ap.parse_args(argv)

    commands = {
        "login": _cmd_login,
        "logout": _cmd_logout,
        "status": _cmd_status,
        "watch": _cmd_watch,
        "settings": _cmd_settings,
    }
    try:
        portal = build_portal(args.config)
    except PortalError as e:
        print(e.user_message, file=sys.stderr)
        return 2
    try:
        return commands[args.command](portal, args)
    except PortalError as e:
        portal.logger.error(describe_error(e))
        print(e.user_message, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
