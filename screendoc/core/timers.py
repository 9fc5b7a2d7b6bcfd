"""Repeating timer used by the preview loop and capture scheduler."""

import threading
import time
from typing import Callable, Optional, Protocol

from loguru import logger


class Timer(Protocol):
    """Protocol for repeating timers."""
    def start(self) -> None: ...
    def cancel(self) -> None: ...
    @property
    def active(self) -> bool: ...


TimerFactory = Callable[[float, Callable[[], None], str], Timer]


class IntervalTimer:
    """Calls ``callback`` every ``interval_sec`` on a daemon thread.

    Deadlines are computed from the start time so slow callbacks do not
    accumulate drift; a deadline that is already missed fires immediately
    once and the schedule continues from there. ``cancel()`` only prevents
    future calls: a callback that is already running is left to finish.
    """

    def __init__(self, interval_sec: float, callback: Callable[[], None], name: str = "interval-timer") -> None:
        if interval_sec <= 0:
            raise ValueError("Timer interval must be positive")
        self.interval_sec = interval_sec
        self.callback = callback
        self.name = name
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Timer {self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def active(self) -> bool:
        return self._thread is not None and not self._cancelled.is_set()

    def _run(self) -> None:
        next_at = time.monotonic() + self.interval_sec
        while not self._cancelled.wait(max(0.0, next_at - time.monotonic())):
            try:
                self.callback()
            except Exception as e:
                logger.exception(f"Timer {self.name} callback failed: {e}")
            next_at += self.interval_sec
            now = time.monotonic()
            if next_at < now:
                next_at = now
        logger.debug(f"Timer {self.name} stopped")


def default_timer_factory(interval_sec: float, callback: Callable[[], None], name: str) -> Timer:
    return IntervalTimer(interval_sec, callback, name)
