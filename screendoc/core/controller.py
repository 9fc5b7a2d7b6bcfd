"""Lifecycle controller: the single state machine a UI or CLI drives."""

import threading
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from loguru import logger

from .backends import CaptureKind
from .cache import ScreenshotCache
from .capture import CaptureSource, Failed, FellBackTo, FrameSourceAdapter
from .compression import EncodedImage
from .errors import CaptureError, CaptureNotReady, DeviceRevokedExternally, UnsupportedEnvironment
from .preview import PreviewLoop
from .scheduler import (
    Analyze, CaptureHooks, CaptureScheduler, SaveScreenshot, SchedulerConfig, ScreenshotRecord,
    UpdateScreenshot
)
from .timers import TimerFactory, default_timer_factory


class ControllerState(str, Enum):
    IDLE = "idle"
    SOURCE_READY = "source_ready"
    CAPTURING = "capturing"
    STOPPING = "stopping"
    RESTARTING = "restarting"


class LifecycleController:
    """Owns the capture source and drives preview and capture around it.

    States: ``IDLE -> SOURCE_READY -> CAPTURING -> IDLE``, with ``STOPPING``
    and ``RESTARTING`` as transient states. Local stops, teardown and an
    externally ended source all go through the same cleanup routine, which
    always releases the device.
    """

    def __init__(
        self,
        adapter: FrameSourceAdapter,
        save_screenshot: SaveScreenshot,
        *,
        kind: CaptureKind = CaptureKind.SCREEN,
        region: Optional[tuple[int, int, int, int]] = None,
        interval_sec: float = 2.0,
        preview_interval_ms: int = 500,
        preview_quality: float = 0.8,
        allow_fallback: bool = True,
        scheduler_config: Optional[SchedulerConfig] = None,
        cache: Optional[ScreenshotCache] = None,
        analyze: Optional[Analyze] = None,
        update_screenshot: Optional[UpdateScreenshot] = None,
        on_frame: Optional[Callable[[EncodedImage], None]] = None,
        on_captured: Optional[Callable[[ScreenshotRecord], None]] = None,
        on_error: Optional[Callable[[CaptureError], None]] = None,
        on_state_change: Optional[Callable[[ControllerState], None]] = None,
        timer_factory: TimerFactory = default_timer_factory,
        executor=None,
    ) -> None:
        """Initialize controller.

        Args:
            adapter: Frame source adapter (one per controller)
            save_screenshot: Persistence callback
            kind: Source kind requested on selection
            region: Optional (x, y, w, h) area for window/tab/element kinds
            interval_sec: Seconds between captures
            preview_interval_ms: Preview cadence in milliseconds
            preview_quality: JPEG quality of preview frames
            allow_fallback: Accept a different source kind than requested
            scheduler_config: Compression and persistence settings
            cache: Screenshot cache shared with the scheduler
            analyze: Optional vision-model callback
            update_screenshot: Writes analysis results back to storage
            on_frame: Frame-ready notification (preview and capture ticks)
            on_captured: Called for every persisted screenshot
            on_error: User-facing error signal
            on_state_change: Called on every state transition
            timer_factory: Factory for preview and capture timers
            executor: Optional executor for persistence hand-off
        """
        self.adapter = adapter
        self.kind = kind
        self.region = region
        self.interval_sec = interval_sec
        self.preview_interval_ms = preview_interval_ms
        self.allow_fallback = allow_fallback
        self.cache = cache
        self.on_frame = on_frame
        self.on_error = on_error
        self.on_state_change = on_state_change

        self.preview = PreviewLoop(adapter, quality=preview_quality, timer_factory=timer_factory)
        self.scheduler = CaptureScheduler(
            adapter,
            CaptureHooks(
                save=save_screenshot,
                on_captured=on_captured,
                on_frame=self._frame_ready,
                analyze=analyze,
                update=update_screenshot,
                on_error=self._emit_error,
                release=self._release_source,
            ),
            config=scheduler_config,
            cache=cache,
            timer_factory=timer_factory,
            executor=executor,
        )

        self._lock = threading.RLock()
        self._state = ControllerState.IDLE
        self._source: Optional[CaptureSource] = None
        self.capture_status = "Ready"
        self.latest_preview: Optional[EncodedImage] = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def source(self) -> Optional[CaptureSource]:
        return self._source

    @property
    def is_preview_active(self) -> bool:
        return self._state == ControllerState.SOURCE_READY and self.preview.is_running

    @property
    def is_capturing(self) -> bool:
        return self._state == ControllerState.CAPTURING

    @property
    def screenshots(self) -> List[ScreenshotRecord]:
        return self.scheduler.screenshots

    @property
    def screenshot_count(self) -> int:
        return self.scheduler.screenshot_count

    @property
    def latest_screenshot(self) -> Optional[ScreenshotRecord]:
        return self.scheduler.latest_screenshot

    def _set_state(self, state: ControllerState, status: Optional[str] = None) -> None:
        self._state = state
        if status is not None:
            self.capture_status = status
        logger.debug(f"Controller state -> {state.value}")
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception as e:
                logger.warning(f"on_state_change callback failed: {e}")

    def _emit_error(self, error: CaptureError) -> None:
        if self.on_error is None or not error.user_facing:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.warning(f"on_error callback failed: {e}")

    def _frame_ready(self, image: EncodedImage) -> None:
        self.latest_preview = image
        if self.on_frame is not None:
            self.on_frame(image)

    def select_source(self, kind: Optional[CaptureKind] = None,
                      region: Optional[tuple[int, int, int, int]] = None) -> CaptureSource:
        """Acquire a new source and start previewing it.

        Any running capture is stopped and the previous source released
        first.

        Args:
            kind: Source kind (defaults to the controller's kind)
            region: Optional area for window/tab/element kinds

        Returns:
            The acquired source

        Raises:
            CaptureError: If acquisition failed; the controller is left IDLE
        """
        kind = kind or self.kind
        region = region if region is not None else self.region
        with self._lock:
            self._cleanup(reason="new source selected", status=None)

            outcome = self.adapter.acquire(kind, region=region, on_ended=self._on_source_ended)
            if isinstance(outcome, Failed):
                self._set_state(ControllerState.IDLE, "Ready")
                self._emit_error(outcome.error)
                raise outcome.error

            source = outcome.source
            if isinstance(outcome, FellBackTo) and not self.allow_fallback:
                self.adapter.release(source)
                self._set_state(ControllerState.IDLE, "Ready")
                error = UnsupportedEnvironment(
                    f"{outcome.requested_kind.value} capture is not available here", kind=outcome.requested_kind.value
                )
                self._emit_error(error)
                raise error

            self._source = source
            self.preview.start(source, self._frame_ready, self.preview_interval_ms)
            self._set_state(ControllerState.SOURCE_READY, "Previewing")
            logger.info(f"Preview active on {source.kind.value} source {source.id}")
            return source

    def start_capture(self, session_id: Any, interval_sec: Optional[float] = None) -> None:
        """Stop the preview and begin timed capture.

        Raises:
            CaptureNotReady: If no preview is active; state is unchanged
        """
        with self._lock:
            if self._state != ControllerState.SOURCE_READY or not self.preview.is_running or self._source is None:
                error = CaptureNotReady("No preview active. Select a capture source first.")
                self._emit_error(error)
                raise error

            interval = interval_sec if interval_sec is not None else self.interval_sec
            self.preview.stop()
            try:
                self.scheduler.start(self._source, interval, session_id)
            except CaptureNotReady as e:
                self._cleanup(reason="source inactive at capture start")
                self._emit_error(e)
                raise
            if self._source is None:
                # Source ended during the first capture
                return
            self.interval_sec = interval
            self._set_state(ControllerState.CAPTURING, "Capturing")

    def stop_capture(self) -> None:
        """Stop capturing and release the source. Redundant calls are no-ops."""
        with self._lock:
            if self._state != ControllerState.CAPTURING:
                logger.debug(f"stop_capture ignored in state {self._state.value}")
                return
            self._cleanup(reason="stopped by user")

    def restart_capture(self, session_id: Any = None) -> None:
        """Discard the current run and capture again from a fresh source."""
        with self._lock:
            session = session_id if session_id is not None else self.scheduler.session_id
            self._set_state(ControllerState.RESTARTING)
            self._cleanup(reason="restart", status=None)
            self.scheduler.reset()
            if self.cache is not None:
                self.cache.clear()
            self.select_source()
            self.start_capture(session)

    def close(self) -> None:
        """Tear down unconditionally; the device never outlives the controller."""
        with self._lock:
            self._cleanup(reason="controller closed")
        self.scheduler.shutdown()

    def __enter__(self) -> "LifecycleController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _on_source_ended(self, source: CaptureSource) -> None:
        with self._lock:
            if source is not self._source:
                return
            logger.warning(f"Capture source {source.id} ended externally")
            self._cleanup(reason="sharing stopped externally")
        self._emit_error(DeviceRevokedExternally("Screen sharing was stopped"))

    def _release_source(self, source: CaptureSource) -> None:
        self.adapter.release(source)
        with self._lock:
            if self._source is source:
                self._source = None

    def _cleanup(self, reason: str, status: Optional[str] = "Stopped") -> None:
        """Stop preview and capture and release the source, from any state."""
        had_source = self._source is not None
        if self._state in (ControllerState.SOURCE_READY, ControllerState.CAPTURING):
            self._set_state(ControllerState.STOPPING)
        self.preview.stop()
        self.scheduler.stop()
        source, self._source = self._source, None
        self.adapter.release(source)
        self.latest_preview = None
        if had_source:
            logger.info(f"Capture resources released ({reason})")
        if self._state != ControllerState.RESTARTING:
            self._set_state(ControllerState.IDLE, status)

    def analyze_screenshots(self, ids: Optional[Iterable[Any]] = None) -> List[ScreenshotRecord]:
        """Run analysis on accumulated screenshots.

        Args:
            ids: Screenshot ids to analyze (all screenshots of the run if None)

        Returns:
            The analyzed records, each ``completed`` or ``failed``
        """
        if self.scheduler.hooks.analyze is None:
            raise RuntimeError("No analysis callback configured")
        wanted = set(ids) if ids is not None else None
        records = [r for r in self.scheduler.screenshots if wanted is None or r.id in wanted]
        for record in records:
            cached = self.cache.get(record.id) if self.cache is not None else None
            if cached is not None:
                record.image = cached
            self.scheduler.analyze_record(record)
        logger.info(f"Analyzed {len(records)} screenshots")
        return records
