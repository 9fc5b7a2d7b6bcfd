"""Preview loop: low-cost live view of the active source before capture."""

import threading
from typing import Callable, Optional

from loguru import logger

from .capture import CaptureSource, FrameSourceAdapter
from .compression import EncodedImage
from .timers import Timer, TimerFactory, default_timer_factory

FrameCallback = Callable[[EncodedImage], None]


class PreviewLoop:
    """Publishes frames of a source to a display callback on a fixed cadence.

    The loop borrows the source; it never releases it. Ticks where the
    adapter has no frame are skipped silently and the previously delivered
    frame stays current.
    """

    def __init__(
        self,
        adapter: FrameSourceAdapter,
        quality: float = 0.8,
        timer_factory: TimerFactory = default_timer_factory,
    ) -> None:
        self.adapter = adapter
        self.quality = quality
        self.timer_factory = timer_factory
        self._timer: Optional[Timer] = None
        self._source: Optional[CaptureSource] = None
        self._on_frame: Optional[FrameCallback] = None
        self._last_frame: Optional[EncodedImage] = None
        self._lock = threading.Lock()
        self.frames_delivered = 0

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def last_frame(self) -> Optional[EncodedImage]:
        return self._last_frame

    def start(self, source: CaptureSource, on_frame: FrameCallback, interval_ms: int = 500) -> None:
        """Deliver one frame now, then one every ``interval_ms``.

        Args:
            source: Source to preview
            on_frame: Display callback receiving each encoded frame
            interval_ms: Preview cadence in milliseconds
        """
        self.stop()
        with self._lock:
            self._source = source
            self._on_frame = on_frame
            self._last_frame = None
            self._timer = self.timer_factory(interval_ms / 1000.0, self._tick, "preview-loop")
        logger.debug(f"Preview started on source {source.id} every {interval_ms}ms")
        self._tick()
        timer = self._timer
        if timer is not None:
            timer.start()

    def stop(self) -> None:
        """Cancel the preview timer. Idempotent."""
        with self._lock:
            timer, self._timer = self._timer, None
            self._on_frame = None
            self._source = None
        if timer is not None:
            timer.cancel()
            logger.debug("Preview stopped")

    def _tick(self) -> None:
        with self._lock:
            source = self._source
            on_frame = self._on_frame
        if source is None or on_frame is None:
            return

        sample = self.adapter.current_frame(source, self.quality)
        if sample is None:
            return

        try:
            encoded = sample.encode()
        except ValueError as e:
            logger.debug(f"Preview frame encode failed: {e}")
            return

        self._last_frame = encoded
        self.frames_delivered += 1
        try:
            on_frame(encoded)
        except Exception as e:
            logger.warning(f"Preview frame callback failed: {e}")
