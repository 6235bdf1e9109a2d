"""Tests for condition polling and stuck detection."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from forgeloop.utilities.condition_wait import (
    ActivityState,
    StuckDetector,
    wait_for,
    wait_for_file,
    wait_for_sync,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# wait_for
# ---------------------------------------------------------------------------


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_true_immediately(self) -> None:
        assert await wait_for(lambda: True, timeout=0) is True

    @pytest.mark.asyncio
    async def test_times_out(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await wait_for(lambda: False, timeout=0.05, poll_interval=0.01) is False
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_becomes_true(self) -> None:
        calls = 0

        def predicate() -> bool:
            nonlocal calls
            calls += 1
            return calls >= 3

        assert await wait_for(predicate, timeout=1.0, poll_interval=0.001) is True
        assert calls == 3

    @pytest.mark.asyncio
    async def test_async_predicate(self) -> None:
        event = asyncio.Event()

        async def predicate() -> bool:
            return event.is_set()

        asyncio.get_running_loop().call_later(0.01, event.set)
        assert await wait_for(predicate, timeout=1.0, poll_interval=0.005) is True

    @pytest.mark.asyncio
    async def test_wait_for_file(self, tmp_path: Path) -> None:
        target = tmp_path / "out.json"

        async def writer() -> None:
            await asyncio.sleep(0.02)
            target.write_text("{}", encoding="utf-8")

        task = asyncio.create_task(writer())
        assert await wait_for_file(target, timeout=1.0, poll_interval=0.005) is True
        await task

    @pytest.mark.asyncio
    async def test_wait_for_file_ignores_empty(self, tmp_path: Path) -> None:
        target = tmp_path / "empty"
        target.touch()
        assert await wait_for_file(target, timeout=0.02, poll_interval=0.005) is False
        assert await wait_for_file(target, timeout=0.02, non_empty=False) is True


class TestWaitForSync:
    def test_uses_injected_clock_and_sleep(self) -> None:
        clock = FakeClock()
        sleeps: list[float] = []

        def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.advance(seconds)

        assert wait_for_sync(lambda: False, 1.0, 0.25, clock=clock, sleep=sleep) is False
        assert sum(sleeps) == pytest.approx(1.0)
        assert all(s <= 0.25 for s in sleeps)


# ---------------------------------------------------------------------------
# StuckDetector
# ---------------------------------------------------------------------------


class TestStuckDetector:
    def test_idle_until_started(self) -> None:
        clock = FakeClock()
        detector = StuckDetector(10.0, clock=clock)
        clock.advance(100)
        assert detector.state is ActivityState.IDLE

    def test_becomes_stuck_without_activity(self) -> None:
        clock = FakeClock()
        detector = StuckDetector(10.0, clock=clock)
        detector.start()
        clock.advance(9.9)
        assert not detector.is_stuck
        clock.advance(0.2)
        assert detector.is_stuck

    def test_activity_clears_stuck(self) -> None:
        clock = FakeClock()
        detector = StuckDetector(5.0, clock=clock)
        detector.start()
        clock.advance(6)
        assert detector.is_stuck
        detector.record_activity()
        assert detector.state is ActivityState.WORKING
        assert detector.seconds_since_activity == 0

    def test_completed_is_never_stuck(self) -> None:
        clock = FakeClock()
        detector = StuckDetector(1.0, clock=clock)
        detector.start()
        detector.mark_completed()
        clock.advance(50)
        assert detector.state is ActivityState.COMPLETED

    def test_elapsed_and_reset(self) -> None:
        clock = FakeClock()
        detector = StuckDetector(1.0, clock=clock)
        assert detector.elapsed == 0.0
        detector.start()
        clock.advance(3)
        assert detector.elapsed == 3
        detector.reset()
        assert detector.state is ActivityState.IDLE
        assert detector.elapsed == 0.0
