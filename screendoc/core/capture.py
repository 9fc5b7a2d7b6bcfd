"""Frame source adapter: acquire a display source and grab still frames."""

import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Union

import cv2
import numpy as np
from loguru import logger

from .backends import (
    CaptureKind, DisplayBackend, DisplayStream, SourceOption, SourceSelection, StreamConstraints
)
from .compression import EncodedImage, encode_frame
from .errors import CaptureError, UnsupportedEnvironment, UserCancelled

_source_ids = itertools.count(1)


@dataclass(frozen=True)
class SourceRequest:
    """What the permission prompt is asked to grant."""
    kind: CaptureKind
    options: Sequence[SourceOption]
    region: Optional[tuple[int, int, int, int]] = None


class SourcePrompt(Protocol):
    """User-facing source picker.

    Returns the chosen source, ``None`` if the user dismissed the picker, or
    raises :class:`PermissionDenied` if the user refused capture.
    """
    def __call__(self, request: SourceRequest) -> Optional[SourceSelection]: ...


def auto_prompt(request: SourceRequest, monitor: Optional[int] = None) -> Optional[SourceSelection]:
    """Prompt that grants a source without asking.

    Picks the option on ``monitor`` when one is offered, else the first.
    """
    if not request.options:
        return None
    option = next((o for o in request.options if o.monitor == monitor), request.options[0])
    return SourceSelection(kind=request.kind, monitor=option.monitor, region=request.region, label=option.label)


@dataclass
class CaptureSource:
    """An acquired display source, exclusively owned by its acquirer."""
    kind: CaptureKind
    selection: SourceSelection
    stream: Optional[DisplayStream]
    requested_kind: CaptureKind
    id: int = field(default_factory=lambda: next(_source_ids))
    created_at: float = field(default_factory=time.time)
    released: bool = False

    @property
    def is_active(self) -> bool:
        return not self.released and self.stream is not None and self.stream.active


@dataclass
class FrameSample:
    """A still frame decoded from a capture source."""
    image_bgr: np.ndarray
    width: int
    height: int
    quality: float
    ts: float
    source_id: int
    _encoded: Optional[EncodedImage] = field(default=None, repr=False)

    def encode(self) -> EncodedImage:
        """JPEG-encode the frame at its sample quality (memoized)."""
        if self._encoded is None:
            self._encoded = encode_frame(self.image_bgr, self.quality)
        return self._encoded


@dataclass(frozen=True)
class Succeeded:
    source: CaptureSource


@dataclass(frozen=True)
class FellBackTo:
    """Acquired, but as a different kind than requested."""
    kind: CaptureKind
    requested_kind: CaptureKind
    source: CaptureSource


@dataclass(frozen=True)
class Failed:
    error: CaptureError


AcquireOutcome = Union[Succeeded, FellBackTo, Failed]


class FrameSourceAdapter:
    """Acquires display sources from a backend and grabs frames from them.

    At most one source is active per adapter. Acquiring while a source is
    still active returns that source without prompting again.
    """

    def __init__(
        self,
        backend: DisplayBackend,
        prompt: Optional[SourcePrompt] = None,
        constraints: Optional[StreamConstraints] = None,
    ) -> None:
        """Initialize adapter.

        Args:
            backend: Display backend frames come from
            prompt: Source picker shown once per acquisition (auto-grants if None)
            constraints: Requested stream capability
        """
        self.backend = backend
        self.prompt = prompt or auto_prompt
        self.constraints = constraints or StreamConstraints()
        self._active: Optional[CaptureSource] = None
        self.acquire_count = 0
        self.release_count = 0

    @property
    def active_source(self) -> Optional[CaptureSource]:
        if self._active is not None and not self._active.is_active:
            return None
        return self._active

    def list_sources(self) -> List[SourceOption]:
        return self.backend.list_sources()

    def acquire(
        self,
        preferred_kind: CaptureKind = CaptureKind.SCREEN,
        region: Optional[tuple[int, int, int, int]] = None,
        on_ended: Optional[Callable[[CaptureSource], None]] = None,
    ) -> AcquireOutcome:
        """Acquire a capture source, prompting the user once.

        Args:
            preferred_kind: Kind of source requested
            region: Optional (x, y, w, h) area for window/tab/element kinds
            on_ended: Called when the source is ended outside this adapter

        Returns:
            ``Succeeded``, ``FellBackTo`` or ``Failed``; never raises for
            permission, cancellation or environment problems
        """
        current = self.active_source
        if current is not None:
            logger.debug(f"Reusing active capture source {current.id}")
            return Succeeded(current)
        if self._active is not None:
            # Ended without going through release()
            self.release(self._active)

        stream: Optional[DisplayStream] = None
        try:
            if not self.backend.is_supported():
                raise UnsupportedEnvironment(f"Backend {self.backend.name} cannot capture in this environment")

            options = self.backend.list_sources()
            logger.info(f"Requesting {preferred_kind.value} capture permission")
            selection = self.prompt(SourceRequest(kind=preferred_kind, options=options, region=region))
            if selection is None:
                raise UserCancelled("Source selection was cancelled", kind=preferred_kind.value)

            served = self.backend.serviceable_kind(selection)
            if served != selection.kind:
                logger.warning(f"{selection.kind.value} capture unavailable, falling back to {served.value}")
                selection = SourceSelection(kind=served, monitor=selection.monitor, label=selection.label)

            stream = self.backend.open(selection, self.constraints)
            source = CaptureSource(
                kind=served, selection=selection, stream=stream, requested_kind=preferred_kind
            )
            if on_ended is not None:
                for track in stream.tracks:
                    track.add_ended_listener(lambda _track, src=source: on_ended(src))
        except CaptureError as e:
            if stream is not None:
                stream.stop_tracks()
            logger.error(f"Capture acquisition failed: {e}")
            return Failed(e)
        except Exception as e:
            if stream is not None:
                stream.stop_tracks()
            logger.exception(f"Unexpected error acquiring capture source: {e}")
            return Failed(UnsupportedEnvironment(f"Capture source could not be opened: {e}"))

        self._active = source
        self.acquire_count += 1
        logger.info(f"Capture source {source.id} acquired: {source.selection.label or source.kind.value}")

        if served != preferred_kind:
            return FellBackTo(kind=served, requested_kind=preferred_kind, source=source)
        return Succeeded(source)

    def current_frame(self, source: Optional[CaptureSource], quality: float = 0.8) -> Optional[FrameSample]:
        """Grab the current frame of a source.

        Returns None (not an error) when the source is inactive or has not
        produced a frame with non-zero dimensions yet.

        Args:
            source: Source to grab from
            quality: JPEG quality used when the sample is encoded

        Returns:
            Frame sample or None
        """
        if source is None or not source.is_active:
            logger.debug("No active source for frame capture")
            return None

        track = source.stream.video_track
        image = track.grab() if track is not None else None
        if image is None or image.size == 0:
            return None

        h, w = image.shape[:2]
        if w == 0 or h == 0:
            return None

        cw, ch = self.constraints.ideal_width, self.constraints.ideal_height
        if w > cw or h > ch:
            scale = min(cw / w, ch / h)
            w, h = max(1, int(w * scale)), max(1, int(h * scale))
            image = cv2.resize(image, (w, h), interpolation=cv2.INTER_AREA)

        return FrameSample(
            image_bgr=image, width=w, height=h, quality=quality, ts=time.time(), source_id=source.id
        )

    def release(self, source: Optional[CaptureSource]) -> None:
        """Stop every live track of a source and detach its stream.

        Safe on None, partially initialized and already released sources.
        """
        if source is None:
            return
        if self._active is source:
            self._active = None
        if source.released:
            return
        source.released = True
        stream, source.stream = source.stream, None
        stopped = stream.stop_tracks() if stream is not None else 0
        self.release_count += 1
        logger.info(f"Capture source {source.id} released ({stopped} live tracks stopped)")


def describe_outcome(outcome: AcquireOutcome) -> str:
    """Human-readable summary of an acquisition outcome."""
    if isinstance(outcome, Failed):
        return f"failed: {outcome.error}"
    if isinstance(outcome, FellBackTo):
        return f"fell back from {outcome.requested_kind.value} to {outcome.kind.value}"
    return f"acquired {outcome.source.kind.value}"
