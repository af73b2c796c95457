from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def read_json(path: str) -> Tuple[bool, Dict[str, Any], Optional[str]]:
    """(ok, object, error); error is "missing" for an absent file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except FileNotFoundError:
        return False, {}, "missing"
    except (OSError, ValueError) as e:
        return False, {}, f"unreadable:{e}"
    if not isinstance(obj, dict):
        return False, {}, "not_object"
    return True, obj, None


def atomic_write_json(path: str, obj: Dict[str, Any]) -> None:
    parent = os.path.dirname(path) or "."
    os.makedirs(parent, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_store_", suffix=".json", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.write("\n")
            try:
                f.flush()
                os.fsync(f.fileno())
            except Exception:
                pass
        os.replace(tmp, path)
    finally:
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError:
            pass


class LocalStore:
    """
    Durable string key-value store backed by one JSON file.

    Survives process restarts the way browser local storage survives a page
    reload. Every write replaces the file atomically; the file is re-read whenever
    another process (a second CLI invocation) has changed it.
    """

    def __init__(self, path: str, *, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger("opsportal.storage")
        self._lock = threading.Lock()
        self._items: Optional[Dict[str, str]] = None
        self._stamp: Optional[Tuple[int, int, int]] = None

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load_locked().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._load_locked()
            items[str(key)] = str(value)
            self._write_locked(items)

    def remove_item(self, key: str) -> None:
        with self._lock:
            items = self._load_locked()
            if key not in items:
                return
            del items[key]
            self._write_locked(items)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._load_locked().keys())

    def _file_stamp(self) -> Optional[Tuple[int, int, int]]:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return st.st_ino, st.st_mtime_ns, st.st_size

    def _write_locked(self, items: Dict[str, str]) -> None:
        atomic_write_json(self.path, items)
        self._stamp = self._file_stamp()

    def _load_locked(self) -> Dict[str, str]:
        stamp = self._file_stamp()
        if self._items is not None and stamp == self._stamp:
            return self._items
        ok, data, err = read_json(self.path)
        if not ok and err not in {None, "missing"}:
            self.logger.warning(f"Local store unreadable ({err}); starting empty.")
            self._move_aside()
        self._items = {str(k): str(v) for k, v in data.items() if v is not None}
        self._stamp = self._file_stamp()
        return self._items

    def _move_aside(self) -> None:
        ts = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
        try:
            shutil.move(self.path, f"{self.path}.{ts}.corrupt")
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Could not move corrupt local store aside: {e}")


def parse_login_timestamp(raw: str) -> Optional[float]:
    """
    Parse a stored login timestamp into epoch seconds.

    Accepts an epoch-millisecond integer string or an ISO-8601 datetime
    (naive values are taken as UTC). Returns None for anything else.
    """
    text = str(raw or "").strip()
    if not text:
        return None
    if text.isdigit():
        return int(text) / 1000.0
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class LoginTimestampStore:
    """The persisted moment of the first successful login of the current session."""

    def __init__(self, store: LocalStore, *, key: str = "opsportal_login_timestamp", logger: Optional[logging.Logger] = None):
        self.store = store
        self.key = key
        self.logger = logger or logging.getLogger("opsportal.storage")

    def get(self) -> Optional[float]:
        raw = self.store.get_item(self.key)
        if raw is None:
            return None
        ts = parse_login_timestamp(raw)
        if ts is None:
            self.logger.warning(f"Ignoring unparseable login timestamp {raw!r}.")
        return ts

    def record(self, now: float) -> None:
        self.store.set_item(self.key, str(int(now * 1000)))

    def record_if_absent(self, now: float) -> bool:
        if self.get() is not None:
            return False
        self.record(now)
        return True

    def clear(self) -> None:
        self.store.remove_item(self.key)
