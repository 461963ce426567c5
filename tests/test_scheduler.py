"""Tests for timers and debouncing."""

import asyncio

import pytest

from kbexplorer.scheduler import AsyncioScheduler, Debouncer, VirtualScheduler


class TestVirtualScheduler:
    """Tests for VirtualScheduler."""

    @pytest.mark.asyncio
    async def test_fires_in_time_order(self):
        """Test callbacks fire by due time, then by scheduling order."""
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_later(2.0, lambda: fired.append(("b", scheduler.now())))
        scheduler.call_later(1.0, lambda: fired.append(("a", scheduler.now())))
        scheduler.call_later(2.0, lambda: fired.append(("c", scheduler.now())))

        await scheduler.advance(1.5)
        assert fired == [("a", 1.0)]
        assert scheduler.now() == 1.5

        await scheduler.advance(1.0)
        assert fired == [("a", 1.0), ("b", 2.0), ("c", 2.0)]
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test a cancelled timer never fires."""
        scheduler = VirtualScheduler()
        fired = []
        handle = scheduler.call_later(1.0, lambda: fired.append(True))
        assert scheduler.pending_timers == 1

        handle.cancel()
        handle.cancel()
        await scheduler.advance(5.0)

        assert handle.cancelled
        assert fired == []
        assert scheduler.pending_timers == 0

    @pytest.mark.asyncio
    async def test_callback_scheduled_during_advance(self):
        """Test timers added by a callback still fire within the window."""
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_later(1.0, lambda: scheduler.call_later(1.0, lambda: fired.append(scheduler.now())))

        await scheduler.advance(3.0)

        assert fired == [2.0]

    @pytest.mark.asyncio
    async def test_task_started_before_advance_registers_in_window(self):
        """Test a ready task's timer fires before a later timer in the same window."""
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_later(3.0, lambda: fired.append(("poll", scheduler.now())))

        async def write_later():
            await scheduler.sleep(2.0)
            fired.append(("write", scheduler.now()))

        task = asyncio.ensure_future(write_later())
        await scheduler.advance(3.0)

        assert task.done()
        assert fired == [("write", 2.0), ("poll", 3.0)]

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_advance(self):
        """Test sleep only returns once virtual time has passed."""
        scheduler = VirtualScheduler()
        task = asyncio.ensure_future(scheduler.sleep(1.0))
        await asyncio.sleep(0)

        await scheduler.advance(0.5)
        assert not task.done()

        await scheduler.advance(0.5)
        assert task.done()

    @pytest.mark.asyncio
    async def test_zero_sleep_returns(self):
        """Test a zero sleep just yields."""
        scheduler = VirtualScheduler()
        await scheduler.sleep(0)
        assert scheduler.pending_timers == 0


class TestAsyncioScheduler:
    """Tests for AsyncioScheduler."""

    @pytest.mark.asyncio
    async def test_call_later_and_cancel(self):
        """Test real timers fire and can be cancelled."""
        scheduler = AsyncioScheduler()
        fired = []
        scheduler.call_later(0.01, lambda: fired.append("kept"))
        scheduler.call_later(0.01, lambda: fired.append("cancelled")).cancel()

        await scheduler.sleep(0.05)

        assert fired == ["kept"]


class TestDebouncer:
    """Tests for Debouncer."""

    @pytest.mark.asyncio
    async def test_quiet_period_restarts(self):
        """Test only the last of a burst of triggers fires."""
        scheduler = VirtualScheduler()
        calls = []
        debouncer = Debouncer(scheduler, 0.5, lambda: calls.append(scheduler.now()))

        debouncer.trigger()
        await scheduler.advance(0.3)
        debouncer.trigger()
        await scheduler.advance(0.3)
        debouncer.trigger()
        assert calls == []
        assert debouncer.pending

        await scheduler.advance(0.5)
        assert calls == [pytest.approx(1.1)]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test a cancelled debounce never fires."""
        scheduler = VirtualScheduler()
        calls = []
        debouncer = Debouncer(scheduler, 0.5, lambda: calls.append(True))

        debouncer.trigger()
        debouncer.cancel()
        await scheduler.advance(1.0)

        assert calls == []

    def test_flush(self):
        """Test flush fires a waiting call immediately, once."""
        scheduler = VirtualScheduler()
        calls = []
        debouncer = Debouncer(scheduler, 0.5, lambda: calls.append(True))

        debouncer.flush()
        assert calls == []

        debouncer.trigger()
        debouncer.flush()
        debouncer.flush()
        assert calls == [True]
        assert scheduler.pending_timers == 0
