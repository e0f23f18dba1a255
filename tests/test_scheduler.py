"""ScheduledLoop timing and shutdown"""

import asyncio

import pytest

from common.scheduler import ScheduledLoop


def test_runs_repeatedly():
    calls = []

    async def tick():
        calls.append(1)

    async def scenario():
        loop = ScheduledLoop(0.02, tick, name="test", run_immediately=True)
        await loop.start()
        await asyncio.sleep(0.11)
        await loop.stop()
        return loop.get_stats()

    stats = asyncio.run(scenario())
    assert len(calls) >= 3
    assert stats["execution_count"] == len(calls)
    assert stats["running"] is False


def test_errors_are_counted_and_loop_continues():
    calls = []

    async def tick():
        calls.append(1)
        raise RuntimeError("boom")

    async def scenario():
        loop = ScheduledLoop(0.02, tick, name="failing", run_immediately=True)
        await loop.start()
        await asyncio.sleep(0.07)
        await loop.stop()
        return loop.get_stats()

    stats = asyncio.run(scenario())
    assert len(calls) >= 2
    assert stats["error_count"] == len(calls)
    assert stats["execution_count"] == 0


def test_stop_waits_for_running_callback():
    finished = []

    async def tick():
        await asyncio.sleep(0.05)
        finished.append(1)

    async def scenario():
        loop = ScheduledLoop(10, tick, name="slow", run_immediately=True)
        await loop.start()
        await asyncio.sleep(0.01)
        await loop.stop(timeout=1.0)

    asyncio.run(scenario())
    assert finished == [1]


def test_stop_cancels_callback_after_timeout():
    finished = []

    async def tick():
        await asyncio.sleep(1.0)
        finished.append(1)

    async def scenario():
        loop = ScheduledLoop(10, tick, name="stuck", run_immediately=True)
        await loop.start()
        await asyncio.sleep(0.01)
        await loop.stop(timeout=0.02)
        return loop.is_running

    assert asyncio.run(scenario()) is False
    assert finished == []


def test_stop_before_start_is_harmless():
    async def tick():
        pass

    async def scenario():
        await ScheduledLoop(1, tick).stop()

    asyncio.run(scenario())


@pytest.mark.parametrize("interval", [0, -5])
def test_interval_must_be_positive(interval):
    async def tick():
        pass

    with pytest.raises(ValueError):
        ScheduledLoop(interval, tick)
