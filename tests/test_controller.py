"""Lifecycle controller tests with the synthetic backend and manual timers."""

from datetime import datetime
from itertools import count
from unittest.mock import Mock

import pytest

from screendoc.core.backends import CaptureKind, StreamConstraints, SyntheticBackend
from screendoc.core.cache import ScreenshotCache
from screendoc.core.capture import FrameSourceAdapter
from screendoc.core.controller import ControllerState, LifecycleController
from screendoc.core.errors import (
    CaptureNotReady, DeviceRevokedExternally, UnsupportedEnvironment, UserCancelled
)


class Harness:
    """Controller wired to recording callbacks."""

    def __init__(self, timers, executor, backend=None, prompt=None, **kwargs):
        self.backend = backend or SyntheticBackend(width=640, height=360)
        self.adapter = FrameSourceAdapter(
            self.backend, prompt=prompt, constraints=StreamConstraints(max_frame_rate=0)
        )
        self.timers = timers
        self._ids = count(1)
        self.saved = []
        self.errors = []
        self.states = []
        self.frames = []
        self.cache = ScreenshotCache(capacity=5)
        self.controller = LifecycleController(
            self.adapter,
            self.save,
            cache=self.cache,
            on_frame=self.frames.append,
            on_error=self.errors.append,
            on_state_change=self.states.append,
            timer_factory=timers,
            executor=executor,
            **kwargs,
        )

    def save(self, session_id, image_bytes, analysis_status):
        self.saved.append(session_id)
        return {"id": next(self._ids), "timestamp": datetime.now()}

    @property
    def preview_timer(self):
        return self.timers.last("preview-loop")

    @property
    def capture_timer(self):
        return self.timers.last("capture-scheduler")


@pytest.fixture
def harness(timers, executor):
    return Harness(timers, executor)


class TestSelectSource:
    """Source selection and preview."""

    def test_select_starts_preview(self, harness):
        source = harness.controller.select_source()
        assert harness.controller.state == ControllerState.SOURCE_READY
        assert harness.controller.is_preview_active
        assert harness.controller.capture_status == "Previewing"
        assert source.is_active
        assert len(harness.frames) == 1
        assert harness.controller.latest_preview is harness.frames[0]

        harness.preview_timer.fire(2)
        assert len(harness.frames) == 3

    def test_reselect_releases_previous_source(self, harness):
        first = harness.controller.select_source()
        second = harness.controller.select_source()
        assert second is not first
        assert not first.is_active
        assert harness.backend.opened == 2
        assert harness.backend.closed == 1
        assert harness.backend.live_tracks == 1

    def test_cancelled_selection_leaves_idle(self, timers, executor):
        h = Harness(timers, executor, prompt=lambda request: None)
        with pytest.raises(UserCancelled):
            h.controller.select_source()
        assert h.controller.state == ControllerState.IDLE
        assert isinstance(h.errors[0], UserCancelled)
        assert h.backend.opened == 0

    def test_unsupported_environment(self, timers, executor):
        h = Harness(timers, executor, backend=SyntheticBackend(supported=False))
        with pytest.raises(UnsupportedEnvironment):
            h.controller.select_source()
        assert h.controller.state == ControllerState.IDLE

    def test_fallback_refused(self, timers, executor):
        backend = SyntheticBackend(kinds=[CaptureKind.SCREEN])
        h = Harness(timers, executor, backend=backend, kind=CaptureKind.WINDOW, allow_fallback=False)
        with pytest.raises(UnsupportedEnvironment):
            h.controller.select_source()
        assert h.controller.state == ControllerState.IDLE
        assert backend.opened == 1
        assert backend.live_tracks == 0

    def test_fallback_accepted(self, timers, executor):
        backend = SyntheticBackend(kinds=[CaptureKind.SCREEN])
        h = Harness(timers, executor, backend=backend, kind=CaptureKind.TAB)
        source = h.controller.select_source()
        assert source.kind == CaptureKind.SCREEN
        assert source.requested_kind == CaptureKind.TAB
        assert h.controller.state == ControllerState.SOURCE_READY


class TestCapture:
    """Capture lifecycle."""

    def test_start_without_preview_rejected(self, harness):
        with pytest.raises(CaptureNotReady):
            harness.controller.start_capture("s1")
        assert harness.controller.state == ControllerState.IDLE
        assert isinstance(harness.errors[0], CaptureNotReady)
        assert harness.saved == []
        assert harness.backend.opened == 0

    def test_start_capture_stops_preview(self, harness):
        harness.controller.select_source()
        harness.controller.start_capture("s1", interval_sec=2.0)

        assert harness.controller.state == ControllerState.CAPTURING
        assert harness.controller.capture_status == "Capturing"
        assert harness.preview_timer.cancelled
        assert harness.saved == ["s1"]
        assert harness.capture_timer.interval_sec == 2.0

        harness.capture_timer.fire(3)
        assert harness.controller.screenshot_count == 4
        assert harness.controller.latest_screenshot.id == 4

    def test_stop_capture_releases_device(self, harness):
        harness.controller.select_source()
        harness.controller.start_capture("s1")
        harness.controller.stop_capture()
        harness.controller.stop_capture()

        assert harness.controller.state == ControllerState.IDLE
        assert harness.controller.capture_status == "Stopped"
        assert harness.controller.source is None
        assert harness.backend.live_tracks == 0
        assert harness.backend.closed == 1
        assert harness.adapter.release_count == 1
        assert harness.capture_timer.cancelled
        assert harness.timers.active == []

    def test_repeated_cycles_do_not_leak(self, harness):
        for i in range(5):
            harness.controller.select_source()
            harness.controller.start_capture(f"s{i}")
            harness.capture_timer.fire()
            harness.controller.stop_capture()

        assert harness.backend.opened == 5
        assert harness.backend.closed == 5
        assert harness.backend.live_tracks == 0
        assert harness.timers.active == []

    def test_external_end_while_capturing(self, harness):
        harness.controller.select_source()
        harness.controller.start_capture("s1")
        harness.backend.revoke()

        assert harness.controller.state == ControllerState.IDLE
        assert harness.controller.source is None
        assert harness.timers.active == []
        assert harness.adapter.release_count == 1
        assert isinstance(harness.errors[-1], DeviceRevokedExternally)
        assert harness.backend.live_tracks == 0

    def test_external_end_while_previewing(self, harness):
        harness.controller.select_source()
        harness.backend.revoke()
        assert harness.controller.state == ControllerState.IDLE
        assert not harness.controller.is_preview_active
        with pytest.raises(CaptureNotReady):
            harness.controller.start_capture("s1")

    def test_restart_capture(self, harness):
        harness.controller.select_source()
        harness.controller.start_capture("s1")
        harness.capture_timer.fire(2)
        assert harness.controller.screenshot_count == 3

        harness.controller.restart_capture()

        assert harness.controller.state == ControllerState.CAPTURING
        assert harness.controller.screenshot_count == 1
        assert harness.saved[-1] == "s1"
        assert harness.backend.opened == 2
        assert harness.backend.closed == 1
        assert len(harness.cache) == 1
        assert ControllerState.RESTARTING in harness.states

    def test_close_releases_everything(self, harness):
        with harness.controller as controller:
            controller.select_source()
            controller.start_capture("s1")
        assert harness.backend.live_tracks == 0
        assert harness.controller.state == ControllerState.IDLE


class TestManualAnalysis:
    """Analysis of accumulated screenshots."""

    def test_analyze_selected_ids(self, timers, executor):
        analyze = Mock(return_value="Reading email")
        update = Mock()
        h = Harness(timers, executor, analyze=analyze, update_screenshot=update)
        h.controller.select_source()
        h.controller.start_capture("s1")
        h.capture_timer.fire(2)

        records = h.controller.analyze_screenshots([1, 3])

        assert sorted(r.id for r in records) == [1, 3]
        assert all(r.analysis_status == "completed" for r in records)
        assert analyze.call_count == 2
        assert update.call_count == 2

    def test_analysis_failure_marks_failed(self, timers, executor):
        h = Harness(timers, executor, analyze=Mock(side_effect=RuntimeError("offline")))
        h.controller.select_source()
        h.controller.start_capture("s1")

        records = h.controller.analyze_screenshots()

        assert records[0].analysis_status == "failed"
        assert h.errors[-1].screenshot_id == 1

    def test_requires_analyzer(self, harness):
        with pytest.raises(RuntimeError):
            harness.controller.analyze_screenshots()
