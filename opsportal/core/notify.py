from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field


class ToastLevel(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class Toast(BaseModel):
    level: ToastLevel = ToastLevel.info
    title: str
    description: str = ""
    duration_seconds: float = Field(default=5.0, gt=0)


class Notifier:
    """Non-blocking, dismissable user notifications."""

    def notify(self, toast: Toast) -> None:
        ...


class LoggingNotifier(Notifier):
    _LEVELS = {
        ToastLevel.info: logging.INFO,
        ToastLevel.success: logging.INFO,
        ToastLevel.warning: logging.WARNING,
        ToastLevel.error: logging.ERROR,
    }

    def __init__(self, *, logger: Optional[logging.Logger] = None, event_logger: Any = None):
        self.logger = logger or logging.getLogger("opsportal.notify")
        self.event_logger = event_logger

    def notify(self, toast: Toast) -> None:
        text = toast.title if not toast.description else f"{toast.title}: {toast.description}"
        self.logger.log(self._LEVELS[toast.level], text)
        if self.event_logger is not None:
            try:
                self.event_logger.log("notify", "ui.toast", toast.model_dump(mode="json"))
            except Exception:
                pass


class Navigator:
    def navigate(self, route: str, *, replace: bool = True) -> None:
        ...


class RouteNavigator(Navigator):
    """Keeps the current route; optionally forwards every navigation to a callback."""

    def __init__(self, *, initial: str = "/", on_navigate: Optional[Callable[[str], None]] = None):
        self._lock = threading.Lock()
        self.current = initial
        self.history: List[str] = [initial]
        self.on_navigate = on_navigate

    def navigate(self, route: str, *, replace: bool = True) -> None:
        with self._lock:
            if replace and self.history:
                self.history[-1] = route
            else:
                self.history.append(route)
            self.current = route
        if self.on_navigate is not None:
            self.on_navigate(route)
