"""Capture scheduler: the timed Capture -> Compress -> Persist -> Cache cycle."""

import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from loguru import logger

from .cache import ScreenshotCache
from .capture import CaptureSource, FrameSourceAdapter
from .compression import DEFAULT_TARGET_BYTES, EncodedImage, compress
from .errors import AnalysisFailure, CaptureError, CaptureNotReady, CompressionShortfall
from .timers import Timer, TimerFactory, default_timer_factory


class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RUNNING = "running"


@dataclass
class SchedulerConfig:
    """Configuration for CaptureScheduler."""
    frame_quality: float = 0.8
    target_bytes: int = DEFAULT_TARGET_BYTES
    min_quality: float = 0.3
    max_attempts: int = 5
    start_quality: float = 0.75
    derive_thumbnails: bool = True
    realtime_analysis: bool = False
    serialize_persistence: bool = False
    persistence_workers: int = 4


@dataclass
class CaptureMetrics:
    """Telemetry for one capture run."""
    ticks: int = 0
    captured: int = 0
    frames_unavailable: int = 0
    tick_failures: int = 0
    compression_shortfalls: int = 0
    persistence_failures: int = 0
    analyses_completed: int = 0
    analysis_failures: int = 0
    total_persist_time_sec: float = 0.0

    @property
    def avg_persist_time(self) -> float:
        """Average persistence time in seconds."""
        if self.captured == 0:
            return 0.0
        return self.total_persist_time_sec / self.captured

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticks": self.ticks,
            "captured": self.captured,
            "frames_unavailable": self.frames_unavailable,
            "tick_failures": self.tick_failures,
            "compression_shortfalls": self.compression_shortfalls,
            "persistence_failures": self.persistence_failures,
            "analyses_completed": self.analyses_completed,
            "analysis_failures": self.analysis_failures,
            "avg_persist_time_sec": self.avg_persist_time,
        }


@dataclass
class ScreenshotRecord:
    """A persisted screenshot as seen by the capture side."""
    id: Any
    session_id: Any
    timestamp: datetime
    image: EncodedImage
    analysis_status: str = "completed"  # "pending" | "completed" | "failed"
    description: Optional[str] = None
    thumbnail: Optional[EncodedImage] = None


class SaveScreenshot(Protocol):
    """Persistence callback; returns a mapping with at least ``id`` and ``timestamp``."""
    def __call__(self, session_id: Any, image_bytes: bytes, analysis_status: str) -> Mapping[str, Any]: ...


class Analyze(Protocol):
    """Vision-model callback returning a description of the screenshot."""
    def __call__(self, screenshot_id: Any, image_bytes: bytes) -> str: ...


class UpdateScreenshot(Protocol):
    """Writes an analysis result back to storage."""
    def __call__(self, screenshot_id: Any, description: Optional[str], analysis_status: str) -> None: ...


@dataclass
class CaptureHooks:
    """Callbacks the scheduler drives."""
    save: SaveScreenshot
    on_captured: Optional[Callable[[ScreenshotRecord], None]] = None
    on_frame: Optional[Callable[[EncodedImage], None]] = None
    analyze: Optional[Analyze] = None
    update: Optional[UpdateScreenshot] = None
    on_analyzed: Optional[Callable[[ScreenshotRecord], None]] = None
    on_error: Optional[Callable[[CaptureError], None]] = None
    release: Optional[Callable[[CaptureSource], None]] = None


def _coerce_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.debug(f"Unparseable screenshot timestamp: {value!r}")
    return datetime.now()


class CaptureScheduler:
    """Captures a frame on a fixed interval and hands it to persistence.

    The first capture happens in :meth:`start` itself; later ones run on a
    timer thread. Frame grab and compression happen on the timer thread,
    persistence, caching and analysis on an executor so a slow save never
    delays the next capture. Per-tick failures are logged and counted and
    never stop the schedule.
    """

    def __init__(
        self,
        adapter: FrameSourceAdapter,
        hooks: CaptureHooks,
        config: Optional[SchedulerConfig] = None,
        cache: Optional[ScreenshotCache] = None,
        timer_factory: TimerFactory = default_timer_factory,
        executor: Optional[Executor] = None,
    ) -> None:
        """Initialize scheduler.

        Args:
            adapter: Frame source adapter frames are pulled from
            hooks: Persistence, notification and analysis callbacks
            config: Scheduler configuration
            cache: Optional cache receiving every persisted screenshot
            timer_factory: Factory for the repeating tick timer
            executor: Executor for persistence hand-off (created if None)
        """
        self.adapter = adapter
        self.hooks = hooks
        self.config = config or SchedulerConfig()
        self.cache = cache
        self.timer_factory = timer_factory
        self.metrics = CaptureMetrics()

        self._executor = executor
        self._owns_executor = executor is None
        self._pending: set = set()
        self._lock = threading.RLock()
        self._timer: Optional[Timer] = None
        self._state = SchedulerState.IDLE
        self._source: Optional[CaptureSource] = None
        self._session_id: Any = None
        self._interval_sec: float = 0.0
        self._on_captured = hooks.on_captured
        self._generation = 0

        self._screenshots: List[ScreenshotRecord] = []
        self._screenshot_count = 0
        self._latest: Optional[ScreenshotRecord] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def session_id(self) -> Any:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._state != SchedulerState.IDLE

    @property
    def screenshot_count(self) -> int:
        return self._screenshot_count

    @property
    def latest_screenshot(self) -> Optional[ScreenshotRecord]:
        return self._latest

    @property
    def screenshots(self) -> List[ScreenshotRecord]:
        """Screenshots persisted in this run, newest first."""
        with self._lock:
            return list(self._screenshots)

    def start(
        self,
        source: CaptureSource,
        interval_sec: float,
        session_id: Any,
        on_captured: Optional[Callable[[ScreenshotRecord], None]] = None,
    ) -> None:
        """Capture once now, then every ``interval_sec`` seconds.

        Args:
            source: Active source to capture from (borrowed, not owned)
            interval_sec: Seconds between captures
            session_id: Session the screenshots belong to
            on_captured: Overrides ``hooks.on_captured`` for this run

        Raises:
            CaptureNotReady: If the source is missing or no longer active
            RuntimeError: If the scheduler is already running
        """
        if interval_sec <= 0:
            raise ValueError("Capture interval must be positive")
        with self._lock:
            if self._state != SchedulerState.IDLE:
                raise RuntimeError("Capture scheduler already running")
            if source is None or not source.is_active:
                raise CaptureNotReady("No active capture source")
            self._state = SchedulerState.ARMED
            self._source = source
            self._session_id = session_id
            self._interval_sec = interval_sec
            if on_captured is not None:
                self._on_captured = on_captured
            self._ensure_executor()

        logger.info(f"Capture started: session={session_id}, every {interval_sec}s")
        self._tick()

        with self._lock:
            # The first tick may have ended the source
            if self._state != SchedulerState.ARMED:
                return
            self._timer = self.timer_factory(interval_sec, self._tick, "capture-scheduler")
            self._state = SchedulerState.RUNNING
            timer = self._timer
        timer.start()

    def stop(self) -> None:
        """Cancel the timer and release the source through the owner's hook.

        In-flight persistence is left to settle. Idempotent.
        """
        with self._lock:
            timer, self._timer = self._timer, None
            source, self._source = self._source, None
            was_running = self._state != SchedulerState.IDLE
            self._state = SchedulerState.IDLE
        if timer is not None:
            timer.cancel()
        if source is not None and self.hooks.release is not None:
            self.hooks.release(source)
        if was_running:
            logger.info(f"Capture stopped after {self._screenshot_count} screenshots")

    def reset(self) -> None:
        """Clear accumulated screenshots, counters and metrics."""
        with self._lock:
            self._generation += 1
            self._screenshots.clear()
            self._screenshot_count = 0
            self._latest = None
            self.metrics = CaptureMetrics()
        logger.debug("Capture scheduler state reset")

    def restart(
        self,
        source: CaptureSource,
        interval_sec: Optional[float] = None,
        session_id: Any = None,
        on_captured: Optional[Callable[[ScreenshotRecord], None]] = None,
    ) -> None:
        """Stop, discard accumulated state and start again on ``source``."""
        interval = interval_sec if interval_sec is not None else self._interval_sec
        session = session_id if session_id is not None else self._session_id
        self.stop()
        self.reset()
        self.start(source, interval, session, on_captured)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for pending persistence hand-offs.

        Returns:
            True if everything settled within ``timeout``
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop capturing and let the executor drain."""
        self.stop()
        if not self.flush(timeout):
            logger.warning("Pending screenshot saves did not settle before shutdown")
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def _ensure_executor(self) -> None:
        if self._executor is None:
            workers = 1 if self.config.serialize_persistence else self.config.persistence_workers
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="screenshot-persist")

    def _bump(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self.metrics, counter, getattr(self.metrics, counter) + amount)

    def _tick(self) -> None:
        with self._lock:
            source = self._source
            session_id = self._session_id
            generation = self._generation
            executor = self._executor
        if source is None or executor is None:
            return

        self._bump("ticks")
        try:
            sample = self.adapter.current_frame(source, self.config.frame_quality)
            if sample is None:
                self._bump("frames_unavailable")
                logger.debug("Empty frame from capture source, will retry next interval")
                return

            image = compress(
                sample.encode(),
                self.config.target_bytes,
                self.config.min_quality,
                self.config.max_attempts,
                start_quality=self.config.start_quality,
            )
            if image.estimated_size > self.config.target_bytes:
                self._bump("compression_shortfalls")
                shortfall = CompressionShortfall(
                    f"Screenshot is {image.estimated_size:.0f} bytes against a {self.config.target_bytes} "
                    f"byte budget at quality {image.quality:.2f}"
                )
                logger.warning(f"{type(shortfall).__name__}: {shortfall}")

            future = executor.submit(self._persist, generation, session_id, image)
        except Exception as e:
            self._bump("tick_failures")
            logger.exception(f"Capture tick failed: {e}")
            return

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._settled)

        if self.hooks.on_frame is not None:
            try:
                self.hooks.on_frame(image)
            except Exception as e:
                logger.warning(f"Capture frame callback failed: {e}")

    def _settled(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._bump("tick_failures")
            logger.opt(exception=error).error(f"Screenshot persistence task failed: {error}")

    def _persist(self, generation: int, session_id: Any, image: EncodedImage) -> Optional[ScreenshotRecord]:
        analyze = self.config.realtime_analysis and self.hooks.analyze is not None
        status = "pending" if analyze else "completed"

        start = time.time()
        try:
            result = self.hooks.save(session_id, image.data, status)
            screenshot_id = result["id"]
        except Exception as e:
            self._bump("persistence_failures")
            logger.error(f"Failed to save screenshot: {e}")
            return None
        elapsed = time.time() - start

        thumbnail = None
        if self.cache is not None:
            try:
                if self.config.derive_thumbnails:
                    thumbnail = self.cache.derive_thumbnail(image)
                self.cache.put(screenshot_id, image, thumbnail)
            except Exception as e:
                # Already saved; keep the record without a cache entry
                self._bump("tick_failures")
                logger.exception(f"Could not cache screenshot {screenshot_id}: {e}")
                thumbnail = None

        record = ScreenshotRecord(
            id=screenshot_id,
            session_id=session_id,
            timestamp=_coerce_timestamp(result.get("timestamp")),
            image=image,
            analysis_status=status,
            thumbnail=thumbnail,
        )

        with self._lock:
            if generation != self._generation:
                logger.debug(f"Discarding screenshot {screenshot_id} from a previous run")
                return record
            self._screenshots.insert(0, record)
            self._screenshot_count += 1
            self._latest = record
            self.metrics.captured += 1
            self.metrics.total_persist_time_sec += elapsed
            on_captured = self._on_captured

        logger.debug(f"Captured screenshot {screenshot_id} ({image.width}x{image.height}, {len(image.data)} bytes)")
        if on_captured is not None:
            try:
                on_captured(record)
            except Exception as e:
                logger.warning(f"on_captured callback failed: {e}")

        if analyze:
            self.analyze_record(record)
        return record

    def analyze_record(self, record: ScreenshotRecord) -> ScreenshotRecord:
        """Describe a screenshot with the analysis callback.

        Failures mark the record ``failed`` and are reported through
        ``hooks.on_error``; they never propagate.
        """
        if self.hooks.analyze is None:
            raise RuntimeError("No analysis callback configured")

        record.analysis_status = "pending"
        try:
            description = self.hooks.analyze(record.id, record.image.data)
        except Exception as e:
            record.analysis_status = "failed"
            self._bump("analysis_failures")
            logger.error(f"Error analyzing screenshot {record.id}: {e}")
            self._write_back(record)
            if self.hooks.on_error is not None:
                self.hooks.on_error(AnalysisFailure(f"Analysis failed: {e}", screenshot_id=record.id))
            return record

        record.description = description
        record.analysis_status = "completed"
        self._bump("analyses_completed")
        self._write_back(record)
        if self.hooks.on_analyzed is not None:
            try:
                self.hooks.on_analyzed(record)
            except Exception as e:
                logger.warning(f"on_analyzed callback failed: {e}")
        return record

    def _write_back(self, record: ScreenshotRecord) -> None:
        if self.hooks.update is None:
            return
        try:
            self.hooks.update(record.id, record.description, record.analysis_status)
        except Exception as e:
            logger.error(f"Failed to update screenshot {record.id}: {e}")
