"""Display backends: the devices frames are grabbed from."""

import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Callable, List, Optional, Sequence

import cv2
import mss
import mss.exception
import numpy as np
from loguru import logger
from PIL import Image

from .errors import DeviceRevokedExternally, TransientFrameUnavailable, UnsupportedEnvironment


class CaptureKind(str, Enum):
    """What the user asked to capture."""
    TAB = "tab"
    WINDOW = "window"
    SCREEN = "screen"
    ELEMENT = "element"


@dataclass(frozen=True)
class StreamConstraints:
    """Narrowest capability needed for still-frame capture."""
    ideal_width: int = 1920
    ideal_height: int = 1080
    max_frame_rate: float = 15.0


@dataclass(frozen=True)
class SourceOption:
    """A capturable source offered to the user."""
    monitor: int
    label: str
    width: int
    height: int


@dataclass(frozen=True)
class SourceSelection:
    """The source the user picked."""
    kind: CaptureKind
    monitor: int = 1
    region: Optional[tuple[int, int, int, int]] = None  # (x,y,w,h) relative to monitor
    label: str = ""


class DeviceTrack:
    """A live video track of a display stream.

    A track is ``live`` until it is stopped locally with :meth:`stop` or ends
    externally (display gone, device disconnected). Only external ends
    notify the ``ended`` listeners, mirroring how a local stop is already
    known to its caller.
    """

    max_consecutive_failures = 3

    def __init__(self, label: str, constraints: StreamConstraints) -> None:
        self.label = label
        self.constraints = constraints
        self.ready_state = "live"
        self._listeners: List[Callable[["DeviceTrack"], None]] = []
        self._lock = threading.RLock()
        self._last_frame: Optional[np.ndarray] = None
        self._last_grab = 0.0
        self._failures = 0
        self._min_interval = 1.0 / constraints.max_frame_rate if constraints.max_frame_rate > 0 else 0.0

    @property
    def live(self) -> bool:
        return self.ready_state == "live"

    def add_ended_listener(self, listener: Callable[["DeviceTrack"], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def stop(self) -> None:
        """Stop the track locally. Idempotent, does not notify listeners."""
        with self._lock:
            if not self.live:
                return
            self.ready_state = "ended"
            self._last_frame = None
            self._close()
        logger.debug(f"Track stopped: {self.label}")

    def end_externally(self, reason: str = "ended") -> None:
        """Mark the track ended by its device and notify listeners."""
        with self._lock:
            if not self.live:
                return
            self.ready_state = "ended"
            self._last_frame = None
            self._close()
            listeners = list(self._listeners)
        logger.warning(f"Track {self.label} ended externally: {reason}")
        for listener in listeners:
            try:
                listener(self)
            except Exception as e:
                logger.exception(f"Track ended listener failed: {e}")

    def grab(self) -> Optional[np.ndarray]:
        """Grab the current frame as a BGR array.

        Grabs closer together than the frame-rate cap return the previous
        frame. Returns None when the track is not live or the device has no
        frame yet; repeated read failures end the track.
        """
        with self._lock:
            if not self.live:
                return None
            now = time.monotonic()
            if self._last_frame is not None and now - self._last_grab < self._min_interval:
                return self._last_frame
            reason = None
            try:
                frame = self._read()
            except DeviceRevokedExternally as e:
                frame = None
                reason = str(e)
            except TransientFrameUnavailable as e:
                self._failures += 1
                logger.debug(f"Frame read failed on {self.label} ({self._failures}): {e}")
                frame = None
                if self._failures >= self.max_consecutive_failures:
                    reason = f"{self._failures} consecutive read failures"
            else:
                self._failures = 0
                if frame is not None and frame.size > 0:
                    self._last_frame = frame
                    self._last_grab = now
        if reason is not None:
            self.end_externally(reason)
            return None
        return frame

    def _read(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _close(self) -> None:
        """Release device resources. Called with the track lock held."""


class DisplayStream:
    """A set of tracks opened from one source selection."""

    def __init__(self, backend: str, tracks: Sequence[DeviceTrack]) -> None:
        self.backend = backend
        self.tracks = list(tracks)

    @property
    def active(self) -> bool:
        return any(track.live for track in self.tracks)

    @property
    def video_track(self) -> Optional[DeviceTrack]:
        return self.tracks[0] if self.tracks else None

    def stop_tracks(self) -> int:
        """Stop every live track.

        Returns:
            Number of tracks that were live
        """
        stopped = 0
        for track in self.tracks:
            if track.live:
                track.stop()
                stopped += 1
        return stopped


class DisplayBackend:
    """Base class for display backends."""

    name = "base"

    def is_supported(self) -> bool:
        return True

    def list_sources(self) -> List[SourceOption]:
        raise NotImplementedError

    def serviceable_kind(self, selection: SourceSelection) -> CaptureKind:
        """Kind this backend will actually deliver for a selection."""
        if selection.kind != CaptureKind.SCREEN and selection.region is None:
            return CaptureKind.SCREEN
        return selection.kind

    def open(self, selection: SourceSelection, constraints: StreamConstraints) -> DisplayStream:
        raise NotImplementedError


class MssTrack(DeviceTrack):
    """Track grabbing a monitor area with mss."""

    def __init__(self, area: dict, label: str, constraints: StreamConstraints) -> None:
        super().__init__(label, constraints)
        self.area = area
        # mss handles are per-thread on some platforms
        self._grabbers: dict = {}

    def _grabber(self):
        key = threading.get_ident()
        sct = self._grabbers.get(key)
        if sct is None:
            sct = mss.mss()
            self._grabbers[key] = sct
        return sct

    def _read(self) -> Optional[np.ndarray]:
        try:
            raw = self._grabber().grab(self.area)
        except mss.exception.ScreenShotError as e:
            raise TransientFrameUnavailable(str(e))
        img = np.array(raw)
        if img.size == 0:
            return None
        return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)

    def _close(self) -> None:
        for sct in self._grabbers.values():
            try:
                sct.close()
            except mss.exception.ScreenShotError as e:
                logger.debug(f"Error closing mss handle: {e}")
        self._grabbers.clear()


class MssBackend(DisplayBackend):
    """Local monitors and monitor regions via mss."""

    name = "mss"

    def is_supported(self) -> bool:
        try:
            with mss.mss() as sct:
                return len(sct.monitors) > 1
        except mss.exception.ScreenShotError as e:
            logger.debug(f"mss unavailable: {e}")
            return False

    def list_sources(self) -> List[SourceOption]:
        with mss.mss() as sct:
            return [
                SourceOption(
                    monitor=i,
                    label=f"Monitor {i} ({mon['width']}x{mon['height']})",
                    width=mon["width"],
                    height=mon["height"],
                )
                for i, mon in enumerate(sct.monitors) if i > 0
            ]

    def open(self, selection: SourceSelection, constraints: StreamConstraints) -> DisplayStream:
        try:
            with mss.mss() as sct:
                monitors = sct.monitors
        except mss.exception.ScreenShotError as e:
            raise UnsupportedEnvironment(f"Screen capture not available: {e}")
        if len(monitors) < 2:
            raise UnsupportedEnvironment("No monitors available for capture")

        index = selection.monitor if 0 < selection.monitor < len(monitors) else 1
        mon = monitors[index]
        if selection.region is not None:
            x, y, w, h = selection.region
            area = {"left": mon["left"] + x, "top": mon["top"] + y, "width": w, "height": h}
        else:
            area = dict(mon)

        label = selection.label or f"monitor {index} {area['width']}x{area['height']}"
        logger.info(f"Opened mss stream: {label}")
        return DisplayStream(self.name, [MssTrack(area, label, constraints)])


class AdbTrack(DeviceTrack):
    """Track grabbing an Android device display through adb."""

    def __init__(self, backend: "AdbBackend", label: str, constraints: StreamConstraints) -> None:
        super().__init__(label, constraints)
        self.backend = backend

    def _read(self) -> Optional[np.ndarray]:
        try:
            png_bytes = self.backend.screencap_png()
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            if not self.backend.is_connected():
                raise DeviceRevokedExternally(f"device {self.backend.serial} disconnected")
            raise TransientFrameUnavailable(f"screencap failed: {e}")
        if not png_bytes:
            return None
        pil_image = Image.open(BytesIO(png_bytes)).convert("RGB")
        image_rgb = np.array(pil_image)
        return cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR)


class AdbBackend(DisplayBackend):
    """Android device display over adb."""

    name = "adb"

    def __init__(self, serial: str) -> None:
        """Initialize backend with ADB serial.

        Args:
            serial: ADB device serial (e.g., "127.0.0.1:5555")
        """
        self.serial = serial

    def _adb(self, *args: str, timeout: float = 10) -> bytes:
        """Execute ADB command and return output.

        Raises:
            subprocess.CalledProcessError: If ADB command fails
            subprocess.TimeoutExpired: If ADB command hangs
        """
        cmd = ["adb", "-s", self.serial] + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")
        result = subprocess.run(cmd, capture_output=True, check=True, timeout=timeout)
        return result.stdout

    def screencap_png(self) -> bytes:
        return self._adb("exec-out", "screencap", "-p")

    def is_connected(self) -> bool:
        try:
            self._adb("shell", "echo", "ok", timeout=5)
            return True
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return False

    def display_size(self) -> tuple[int, int]:
        # Output format: "Physical size: 1920x1080"
        output = self._adb("shell", "wm", "size").decode().strip()
        size_line = output.splitlines()[-1].split(":")[-1].strip()
        width_str, height_str = size_line.split("x")
        return int(width_str), int(height_str)

    def is_supported(self) -> bool:
        return shutil.which("adb") is not None and self.is_connected()

    def list_sources(self) -> List[SourceOption]:
        width, height = self.display_size()
        return [SourceOption(monitor=1, label=f"Device {self.serial} ({width}x{height})",
                             width=width, height=height)]

    def serviceable_kind(self, selection: SourceSelection) -> CaptureKind:
        return CaptureKind.SCREEN

    def open(self, selection: SourceSelection, constraints: StreamConstraints) -> DisplayStream:
        if shutil.which("adb") is None:
            raise UnsupportedEnvironment("adb executable not found on PATH")
        if not self.is_connected():
            raise UnsupportedEnvironment(f"Device {self.serial} is not reachable")
        label = selection.label or f"device {self.serial}"
        logger.info(f"Opened adb stream: {label}")
        return DisplayStream(self.name, [AdbTrack(self, label, constraints)])


class SyntheticTrack(DeviceTrack):
    """Track producing generated frames."""

    def __init__(self, backend: "SyntheticBackend", label: str, constraints: StreamConstraints) -> None:
        super().__init__(label, constraints)
        self.backend = backend
        self.reads = 0

    def _read(self) -> Optional[np.ndarray]:
        index = self.reads
        self.reads += 1
        return self.backend.render(index)

    def _close(self) -> None:
        self.backend.closed += 1


class SyntheticBackend(DisplayBackend):
    """Generated frames for demos and tests.

    The first ``warmup_frames`` reads return an empty (0x0) frame, like a
    device that is connected but has not rendered yet. :meth:`revoke` ends
    every open track as if the user stopped sharing.
    """

    name = "synthetic"

    def __init__(
        self,
        width: int = 1280,
        height: int = 720,
        warmup_frames: int = 0,
        supported: bool = True,
        kinds: Optional[Sequence[CaptureKind]] = None,
        frame_source: Optional[Callable[[int], Optional[np.ndarray]]] = None,
    ) -> None:
        self.width = width
        self.height = height
        self.warmup_frames = warmup_frames
        self.supported = supported
        self.kinds = set(kinds) if kinds is not None else set(CaptureKind)
        self.frame_source = frame_source
        self.opened = 0
        self.closed = 0
        self.tracks: List[SyntheticTrack] = []

    def is_supported(self) -> bool:
        return self.supported

    def list_sources(self) -> List[SourceOption]:
        return [SourceOption(monitor=1, label=f"Synthetic ({self.width}x{self.height})",
                             width=self.width, height=self.height)]

    def serviceable_kind(self, selection: SourceSelection) -> CaptureKind:
        if selection.kind in self.kinds:
            return selection.kind
        return CaptureKind.SCREEN

    def open(self, selection: SourceSelection, constraints: StreamConstraints) -> DisplayStream:
        if not self.supported:
            raise UnsupportedEnvironment("Synthetic display disabled")
        self.opened += 1
        track = SyntheticTrack(self, selection.label or f"synthetic {self.opened}", constraints)
        self.tracks.append(track)
        return DisplayStream(self.name, [track])

    def render(self, index: int) -> Optional[np.ndarray]:
        if index < self.warmup_frames:
            return np.zeros((0, 0, 3), dtype=np.uint8)
        if self.frame_source is not None:
            return self.frame_source(index)
        # Horizontal gradient shifted per frame plus a frame counter
        ramp = (np.arange(self.width, dtype=np.uint32) + index * 16) % 256
        image = np.empty((self.height, self.width, 3), dtype=np.uint8)
        image[:, :, 0] = ramp.astype(np.uint8)
        image[:, :, 1] = 80
        image[:, :, 2] = 255 - ramp.astype(np.uint8)
        cv2.putText(image, f"frame {index}", (20, 60), cv2.FONT_HERSHEY_SIMPLEX, 1.5, (255, 255, 255), 3)
        return image

    def revoke(self) -> None:
        """End every live track externally."""
        for track in list(self.tracks):
            track.end_externally("sharing revoked")

    @property
    def live_tracks(self) -> int:
        return sum(1 for track in self.tracks if track.live)
