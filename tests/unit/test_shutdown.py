"""Tests for the shutdown coordinator."""

import asyncio
import gc
import os
import signal
import warnings

import pytest

from aprs_firehose.shutdown import ShutdownCoordinator, ShutdownRequested


@pytest.mark.unit
class TestShutdownCoordinator:
    """Test ShutdownCoordinator functionality."""

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        coordinator = ShutdownCoordinator()

        async def compute():
            return 7

        assert await coordinator.guard(compute) == 7

    @pytest.mark.asyncio
    async def test_guard_interrupted_by_shutdown(self):
        coordinator = ShutdownCoordinator()
        cancelled = asyncio.Event()

        async def blocked():
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.05, coordinator.request_shutdown, "test")

        with pytest.raises(ShutdownRequested):
            await coordinator.guard(blocked)

        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_guard_after_shutdown_raises_immediately(self):
        coordinator = ShutdownCoordinator()
        coordinator.request_shutdown("already")

        with pytest.raises(ShutdownRequested):
            await coordinator.guard(lambda: asyncio.sleep(60))

    @pytest.mark.asyncio
    async def test_guard_after_shutdown_never_creates_awaitable(self):
        coordinator = ShutdownCoordinator()
        coordinator.request_shutdown("already")
        queue = asyncio.Queue()
        calls = []

        def factory():
            calls.append(1)
            return asyncio.wait_for(queue.get(), timeout=1.0)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with pytest.raises(ShutdownRequested):
                await coordinator.guard(factory)
            gc.collect()

        assert calls == []
        assert not [w for w in caught if issubclass(w.category, RuntimeWarning)]

    @pytest.mark.asyncio
    async def test_sleep_is_cancellable(self):
        coordinator = ShutdownCoordinator()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, coordinator.request_shutdown, "test")
        started = loop.time()

        with pytest.raises(ShutdownRequested):
            await coordinator.sleep(60)

        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_first_reason_wins(self):
        coordinator = ShutdownCoordinator()

        coordinator.request_shutdown("first")
        coordinator.request_shutdown("second")

        assert coordinator.is_shutting_down
        assert coordinator.reason == "first"
        await asyncio.wait_for(coordinator.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_drain_finished_tasks(self):
        coordinator = ShutdownCoordinator(grace_period=1.0)
        task = asyncio.create_task(asyncio.sleep(0.01))

        assert await coordinator.drain([task]) is True
        assert task.done() and not task.cancelled()

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self):
        coordinator = ShutdownCoordinator(grace_period=0.05)
        slow = asyncio.create_task(asyncio.sleep(60), name="slow")

        assert await coordinator.drain([slow]) is False
        assert slow.cancelled()

    @pytest.mark.asyncio
    async def test_signal_triggers_shutdown(self):
        coordinator = ShutdownCoordinator()
        coordinator.install_signal_handlers()
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(coordinator.wait(), timeout=1.0)
        finally:
            coordinator.remove_signal_handlers()

        assert coordinator.reason == "signal SIGTERM"
