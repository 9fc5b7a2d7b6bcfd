"""Tests for the interval timer."""

import threading
import time

import pytest

from screendoc.core.timers import IntervalTimer, default_timer_factory


def test_fires_repeatedly_until_cancelled():
    calls = []
    fired = threading.Event()

    def callback():
        calls.append(time.monotonic())
        if len(calls) >= 3:
            fired.set()

    timer = IntervalTimer(0.02, callback, "test-timer")
    timer.start()
    assert fired.wait(2.0)
    timer.cancel()
    count = len(calls)
    time.sleep(0.1)

    assert not timer.active
    # At most one in-flight call after cancel
    assert len(calls) <= count + 1


def test_no_call_before_first_interval():
    calls = []
    timer = IntervalTimer(5.0, lambda: calls.append(1), "slow-timer")
    timer.start()
    timer.cancel()
    time.sleep(0.05)
    assert calls == []


def test_callback_exception_keeps_schedule():
    calls = []
    done = threading.Event()

    def callback():
        calls.append(1)
        if len(calls) >= 2:
            done.set()
        raise RuntimeError("boom")

    timer = IntervalTimer(0.01, callback, "failing-timer")
    timer.start()
    try:
        assert done.wait(2.0)
    finally:
        timer.cancel()


def test_start_twice_rejected():
    timer = IntervalTimer(1.0, lambda: None)
    timer.start()
    try:
        with pytest.raises(RuntimeError):
            timer.start()
    finally:
        timer.cancel()


def test_invalid_interval():
    with pytest.raises(ValueError):
        IntervalTimer(0, lambda: None)


def test_cancel_from_inside_callback_does_not_block():
    done = threading.Event()
    holder = {}

    def callback():
        holder["timer"].cancel()
        done.set()

    holder["timer"] = default_timer_factory(0.01, callback, "self-cancel")
    holder["timer"].start()
    assert done.wait(2.0)
    assert not holder["timer"].active
