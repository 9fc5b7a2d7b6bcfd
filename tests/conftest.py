"""Shared pytest fixtures: deterministic timers and executors."""

from concurrent.futures import Executor, Future
from typing import Callable, List, Optional

import numpy as np
import pytest
from loguru import logger

from screendoc.core.backends import StreamConstraints, SyntheticBackend
from screendoc.core.capture import FrameSourceAdapter


class ManualTimer:
    """Timer that only fires when the test says so."""

    def __init__(self, interval_sec: float, callback: Callable[[], None], name: str) -> None:
        self.interval_sec = interval_sec
        self.callback = callback
        self.name = name
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return self.started and not self.cancelled

    def fire(self, times: int = 1) -> None:
        for _ in range(times):
            if not self.active:
                return
            self.callback()


class ManualTimerFactory:
    """Timer factory recording every timer it creates."""

    def __init__(self) -> None:
        self.timers: List[ManualTimer] = []

    def __call__(self, interval_sec: float, callback: Callable[[], None], name: str) -> ManualTimer:
        timer = ManualTimer(interval_sec, callback, name)
        self.timers.append(timer)
        return timer

    def last(self, name: str) -> Optional[ManualTimer]:
        for timer in reversed(self.timers):
            if timer.name == name:
                return timer
        return None

    def advance(self, seconds: float) -> None:
        """Fire every active timer once per full interval in ``seconds``."""
        for timer in list(self.timers):
            timer.fire(int(seconds // timer.interval_sec))

    @property
    def active(self) -> List[ManualTimer]:
        return [t for t in self.timers if t.active]


class ImmediateExecutor(Executor):
    """Runs submitted work inline on the calling thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Queues submitted work until :meth:`run_all` is called."""

    def __init__(self) -> None:
        self.queue = []

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        self.queue.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> None:
        queue, self.queue = self.queue, []
        for future, fn, args, kwargs in queue:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


@pytest.fixture
def timers() -> ManualTimerFactory:
    return ManualTimerFactory()


@pytest.fixture
def executor() -> ImmediateExecutor:
    return ImmediateExecutor()


@pytest.fixture
def backend() -> SyntheticBackend:
    return SyntheticBackend(width=640, height=360)


@pytest.fixture
def adapter(backend: SyntheticBackend) -> FrameSourceAdapter:
    # No frame-rate cap so every grab reads a new frame
    return FrameSourceAdapter(backend, constraints=StreamConstraints(max_frame_rate=0))


@pytest.fixture
def noise_image() -> Callable[[int, int], np.ndarray]:
    """Random BGR image factory; noise compresses poorly."""
    rng = np.random.default_rng(1234)

    def make(width: int, height: int) -> np.ndarray:
        return rng.integers(0, 256, (height, width, 3), dtype=np.uint8)

    return make


@pytest.fixture
def deferred_executor() -> DeferredExecutor:
    return DeferredExecutor()


@pytest.fixture
def log_messages():
    """Messages logged through loguru while the test runs."""
    messages: List[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
