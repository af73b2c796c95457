from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple


class TimerHandle:
    """A scheduled callback. `cancel()` is idempotent and never raises."""

    name: str = ""

    def cancel(self) -> None:
        ...

    @property
    def active(self) -> bool:
        ...


class Scheduler:
    """
    Clock + timers used by the session controller.

    - now()                      -> wall-clock epoch seconds
    - call_later(delay, fn)      -> one-shot timer
    - call_every(interval, fn)   -> repeating timer, first run after `interval`
    - stop()                     -> cancel everything
    """

    def now(self) -> float:
        ...

    def call_later(self, delay: float, fn: Callable[[], None], *, name: str = "") -> TimerHandle:
        ...

    def call_every(self, interval: float, fn: Callable[[], None], *, name: str = "") -> TimerHandle:
        ...

    def stop(self) -> None:
        ...


class _ScheduledCall(TimerHandle):
    def __init__(self, fn: Callable[[], None], *, due: float, interval: Optional[float], name: str):
        self.fn = fn
        self.due = due
        self.interval = interval
        self.name = name
        self.cancelled = False
        self.done = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.done)


class ThreadingScheduler(Scheduler):
    """
    Runs every timer on one daemon worker thread.

    Due times are kept on the monotonic clock; `now()` reports wall-clock time.
    Callbacks run outside the scheduler lock, one at a time.
    """

    def __init__(self, *, name: str = "session-scheduler", logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("opsportal.scheduler")
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, _ScheduledCall]] = []
        self._seq = itertools.count()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, fn: Callable[[], None], *, name: str = "") -> TimerHandle:
        return self._push(_ScheduledCall(fn, due=time.monotonic() + max(0.0, float(delay)), interval=None, name=name))

    def call_every(self, interval: float, fn: Callable[[], None], *, name: str = "") -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._push(_ScheduledCall(fn, due=time.monotonic() + float(interval), interval=float(interval), name=name))

    def stop(self) -> None:
        self._stop.set()
        with self._cond:
            for _, _, call in self._heap:
                call.cancel()
            self._heap.clear()
            self._cond.notify_all()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=2.0)

    def _push(self, call: _ScheduledCall) -> _ScheduledCall:
        if self._stop.is_set():
            call.cancel()
            return call
        with self._cond:
            heapq.heappush(self._heap, (call.due, next(self._seq), call))
            self._cond.notify_all()
        return call

    def _next_due(self) -> Optional[_ScheduledCall]:
        with self._cond:
            while not self._stop.is_set():
                while self._heap and not self._heap[0][2].active:
                    heapq.heappop(self._heap)
                if not self._heap:
                    self._cond.wait()
                    continue
                due, _, call = self._heap[0]
                delay = due - time.monotonic()
                if delay > 0:
                    self._cond.wait(timeout=delay)
                    continue
                heapq.heappop(self._heap)
                if call.interval is not None:
                    call.due = due + call.interval
                    heapq.heappush(self._heap, (call.due, next(self._seq), call))
                return call
            return None

    def _run(self) -> None:
        while not self._stop.is_set():
            call = self._next_due()
            if call is None:
                return
            if call.cancelled:
                continue
            try:
                call.fn()
            except Exception as e:  # noqa: BLE001
                self.logger.error(f"Timer {call.name or 'callback'} failed: {e}")
            finally:
                if call.interval is None:
                    call.done = True
