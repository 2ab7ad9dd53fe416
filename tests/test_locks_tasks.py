"""Tests for per-volume locks and periodic tasks."""

import asyncio

import pytest

from luksvault.core.errors import Busy
from luksvault.core.locks import VolumeLocks
from luksvault.core.tasks import PeriodicTask


class TestVolumeLocks:
    """Test per-volume mutual exclusion."""

    @pytest.mark.asyncio
    async def test_fail_fast(self):
        """Test a held lock raises Busy naming the holder."""
        locks = VolumeLocks()

        async with locks.hold("/dev/sda2", "rotate"):
            assert locks.is_locked("/dev/sda2")
            assert locks.holder("/dev/sda2") == "rotate"
            with pytest.raises(Busy, match="rotate"):
                async with locks.hold("/dev/sda2", "unlock"):
                    pass

        assert not locks.is_locked("/dev/sda2")
        assert locks.holder("/dev/sda2") is None

    @pytest.mark.asyncio
    async def test_volumes_independent(self):
        """Test different volumes never contend."""
        locks = VolumeLocks()

        async with locks.hold("/dev/sda2", "unlock"):
            async with locks.hold("/dev/sdb1", "unlock"):
                assert locks.is_locked("/dev/sdb1")

    @pytest.mark.asyncio
    async def test_wait_policy(self):
        """Test waiting for a lock that is released in time."""
        locks = VolumeLocks(wait_seconds=2)
        order = []

        async def first():
            async with locks.hold("/dev/sda2", "first"):
                await asyncio.sleep(0.1)
                order.append("first")

        async def second():
            await asyncio.sleep(0.01)
            async with locks.hold("/dev/sda2", "second"):
                order.append("second")

        await asyncio.gather(first(), second())

        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_wait_timeout(self):
        """Test waiting gives up with Busy after the wait period."""
        locks = VolumeLocks()

        async with locks.hold("/dev/sda2", "backup"):
            with pytest.raises(Busy):
                async with locks.hold("/dev/sda2", "unlock", wait_seconds=0.05):
                    pass

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        """Test the lock is released when the block raises."""
        locks = VolumeLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("/dev/sda2", "unlock"):
                raise RuntimeError("cryptsetup failed")

        assert not locks.is_locked("/dev/sda2")


class TestPeriodicTask:
    """Test background periodic tasks."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        """Test the function runs repeatedly and stops cleanly."""
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("tick", 0.02, tick)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert task.runs >= 2
        assert not task.running
        count = len(calls)
        await asyncio.sleep(0.05)
        assert len(calls) == count

    @pytest.mark.asyncio
    async def test_survives_failures(self):
        """Test one failing run does not end the schedule."""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")

        task = PeriodicTask("flaky", 0.02, flaky)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_delayed_first_run(self):
        """Test run_immediately=False waits one interval first."""
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("tick", 10, tick, run_immediately=False)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert calls == []

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        """Test stopping a task that never started."""
        await PeriodicTask("idle", 1, lambda: None).stop()
