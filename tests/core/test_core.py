"""
Tests for Core Infrastructure.

============================================================
PURPOSE
============================================================
Tests for the clock, exception hierarchy and scheduler.

TEST PRINCIPLES:
- Time is driven explicitly through MockClock
- Periodic ticks are driven through run_once()
- A failing tick never stops its task

============================================================
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from core.clock import MockClock, SystemClock, to_iso8601, from_iso8601
from core.exceptions import (
    ConcurrencyConflict,
    ConfigurationError,
    InvalidOperation,
    MonitoringError,
    NotFoundError,
    ProbeError,
    Severity,
    ValidationError,
)
from core.scheduler import PeriodicTask, TaskScheduler


# ============================================================
# CLOCK TESTS
# ============================================================

class TestMockClock:
    """Tests for MockClock."""

    def test_time_only_moves_when_advanced(self):
        """Test that mocked time is frozen until advanced."""
        start = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        clock = MockClock(start)

        assert clock.now() == start
        clock.advance(seconds=30)
        assert clock.now() == start + timedelta(seconds=30)
        clock.advance(minutes=2)
        assert clock.now() == start + timedelta(seconds=150)

    def test_naive_initial_time_is_utc(self):
        """Test that naive datetimes are treated as UTC."""
        clock = MockClock(datetime(2024, 1, 1))
        assert clock.now().tzinfo == timezone.utc

    def test_monotonic_follows_mocked_time(self):
        """Test that monotonic readings move with the mocked time."""
        clock = MockClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
        before = clock.monotonic()
        clock.advance(10)
        assert clock.monotonic() - before == pytest.approx(10)

    def test_seconds_since(self):
        """Test elapsed seconds against a past moment."""
        clock = MockClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
        moment = clock.now()
        clock.advance(45)

        assert clock.seconds_since(moment) == pytest.approx(45)
        assert clock.seconds_since(None) is None

    def test_set_time(self):
        """Test jumping to an absolute time."""
        clock = MockClock()
        target = datetime(2030, 6, 1, tzinfo=timezone.utc)
        clock.set_time(target)
        assert clock.now() == target


class TestSystemClock:
    """Tests for SystemClock."""

    def test_now_is_utc(self):
        """Test that production time is timezone aware UTC."""
        assert SystemClock().now().tzinfo == timezone.utc


class TestIsoHelpers:
    """Tests for ISO 8601 helpers."""

    def test_none_passes_through(self):
        assert to_iso8601(None) is None

    def test_parse_naive_as_utc(self):
        parsed = from_iso8601("2024-01-01T10:00:00")
        assert parsed.tzinfo == timezone.utc
        assert to_iso8601(parsed) == "2024-01-01T10:00:00+00:00"


# ============================================================
# EXCEPTION TESTS
# ============================================================

class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_hierarchy(self):
        """Test that every error derives from MonitoringError."""
        assert issubclass(InvalidOperation, ValidationError)
        for cls in (ConfigurationError, ValidationError, NotFoundError, ConcurrencyConflict, ProbeError):
            assert issubclass(cls, MonitoringError)

    def test_not_found_message(self):
        """Test NotFoundError message and context."""
        error = NotFoundError("rule", "cpu_high")
        assert error.message == "rule not found: cpu_high"
        assert error.context == {"kind": "rule", "id": "cpu_high"}

    def test_concurrency_conflict_context(self):
        """Test ConcurrencyConflict carries the fingerprint."""
        error = ConcurrencyConflict("cpu_high", existing_alert_id="alert_1")
        assert error.fingerprint == "cpu_high"
        assert error.severity == Severity.HIGH
        assert "alert_1" in error.to_log_format()

    def test_cause_recorded(self):
        """Test the cause is recorded in the context."""
        error = MonitoringError("boom", cause=ValueError("bad"))
        data = error.to_dict()
        assert data["context"]["cause_type"] == "ValueError"
        assert data["cause"] == "bad"

    def test_validation_error_field(self):
        error = ValidationError("bad operator", field="operator", value="=>")
        assert error.field == "operator"
        assert error.context["value"] == "=>"


# ============================================================
# SCHEDULER TESTS
# ============================================================

class TestPeriodicTask:
    """Tests for PeriodicTask."""

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, AsyncMock())

    @pytest.mark.asyncio
    async def test_run_once_isolates_failures(self):
        """Test that a failing tick is counted, not raised."""
        callback = AsyncMock(side_effect=RuntimeError("tick failed"))
        task = PeriodicTask("failing", 1.0, callback)

        result = await task.run_once()

        assert result is None
        assert task.stats.runs == 1
        assert task.stats.failures == 1
        assert task.stats.last_error == "tick failed"

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_failure(self):
        """Test that the loop survives a failing tick."""
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first tick fails")

        shutdown = asyncio.Event()
        task = PeriodicTask("flaky", 0.01, tick)
        task.start(shutdown)
        await asyncio.sleep(0.1)
        shutdown.set()
        await task.stop(timeout=1.0)

        assert len(calls) >= 2
        assert task.stats.failures == 1
        assert not task.is_running

    @pytest.mark.asyncio
    async def test_delayed_first_tick(self):
        """Test that run_immediately=False waits one interval."""
        callback = AsyncMock()
        shutdown = asyncio.Event()
        task = PeriodicTask("delayed", 10.0, callback, run_immediately=False)
        task.start(shutdown)
        await asyncio.sleep(0.05)
        shutdown.set()
        await task.stop(timeout=1.0)

        callback.assert_not_called()


class TestTaskScheduler:
    """Tests for TaskScheduler."""

    def test_duplicate_name_rejected(self):
        scheduler = TaskScheduler()
        scheduler.add("poll", 1.0, AsyncMock())
        with pytest.raises(ValueError):
            scheduler.add("poll", 1.0, AsyncMock())

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Test that stop signals every task and waits for them."""
        scheduler = TaskScheduler()
        first = AsyncMock()
        second = AsyncMock()
        scheduler.add("first", 0.01, first)
        scheduler.add("second", 0.01, second)

        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.05)
        await scheduler.stop(timeout=1.0)

        assert not scheduler.is_running
        assert first.await_count >= 1
        assert second.await_count >= 1
        assert all(not task.is_running for task in scheduler.tasks)

    @pytest.mark.asyncio
    async def test_in_flight_tick_cancelled_after_timeout(self):
        """Test that a stuck tick is cancelled after the stop timeout."""
        started = asyncio.Event()

        async def stuck():
            started.set()
            await asyncio.sleep(60)

        scheduler = TaskScheduler()
        scheduler.add("stuck", 1.0, stuck)
        await scheduler.start()
        await started.wait()

        await scheduler.stop(timeout=0.05)

        assert not scheduler.get("stuck").is_running

    def test_status(self):
        scheduler = TaskScheduler()
        scheduler.add("poll", 30.0, AsyncMock())
        status = scheduler.status()
        assert status["poll"]["interval"] == 30.0
        assert status["poll"]["runs"] == 0
        assert status["poll"]["running"] is False
