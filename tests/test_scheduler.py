import asyncio

import pytest

from scheduler import CycleTimer
from utils import RetryHelper, format_duration, gather_all_or_nothing


@pytest.mark.asyncio
async def test_cycle_timer_runs_callback_once():
    timer = CycleTimer("test")
    ran = []

    async def cycle():
        ran.append(asyncio.get_running_loop().time())

    timer.schedule(0.01, cycle)
    assert timer.pending
    with pytest.raises(RuntimeError):
        timer.schedule(0.01, cycle)

    await asyncio.sleep(0.05)
    await timer.wait_idle()

    assert len(ran) == 1
    assert not timer.pending


@pytest.mark.asyncio
async def test_cycle_timer_cancel_prevents_callback():
    timer = CycleTimer("test")
    ran = []

    async def cycle():
        ran.append(True)

    timer.schedule(0.01, cycle)
    assert timer.cancel() is True
    assert timer.cancel() is False

    await asyncio.sleep(0.05)
    assert ran == []


@pytest.mark.asyncio
async def test_callback_may_rearm_timer():
    timer = CycleTimer("test")
    runs = []

    async def cycle():
        runs.append(True)
        if len(runs) < 3:
            timer.schedule(0, cycle)

    timer.schedule(0, cycle)
    for _ in range(20):
        await asyncio.sleep(0.01)
        if len(runs) == 3:
            break
    await timer.wait_idle()

    assert len(runs) == 3
    assert not timer.pending


@pytest.mark.asyncio
async def test_gather_all_or_nothing_preserves_order():
    async def value(v, delay):
        await asyncio.sleep(delay)
        return v

    assert await gather_all_or_nothing([value(1, 0.02), value(2, 0), value(3, 0.01)]) == [1, 2, 3]
    assert await gather_all_or_nothing([]) == []


def test_retry_helper_caps_delay():
    helper = RetryHelper(base_delay=2, max_delay=10)
    assert [helper.calculate_delay(n) for n in range(4)] == [2, 4, 8, 10]


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(75) == "1m 15s"
    assert format_duration(3600) == "1h"
