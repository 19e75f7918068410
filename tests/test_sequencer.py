import asyncio

import pytest

from mitbot.service.errors import RequestCancelledError, RequestTimeoutError
from mitbot.service.sequencer import RequestSequencer


async def test_newer_request_cancels_older_one_for_same_key():
    sequencer = RequestSequencer()
    started = asyncio.Event()
    cancelled = []

    async def slow():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return "slow"

    async def fast():
        return "fast"

    first = asyncio.ensure_future(sequencer.run("u1", slow))
    await started.wait()
    second = await sequencer.run("u1", fast)

    with pytest.raises(RequestCancelledError) as exc_info:
        await first

    assert second == "fast"
    assert cancelled == [True]
    assert exc_info.value.status_code == 409
    assert exc_info.value.error_code == "cancelled"
    assert sequencer.active_keys == []


async def test_requests_for_different_keys_run_side_by_side():
    sequencer = RequestSequencer()
    both_running = asyncio.Event()
    running = set()

    def worker(key):
        async def run():
            running.add(key)
            if len(running) == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=1)
            return key

        return run

    results = await asyncio.gather(
        sequencer.run("u1", worker("u1")),
        sequencer.run("u2", worker("u2")),
    )

    assert results == ["u1", "u2"]


async def test_slow_request_times_out():
    sequencer = RequestSequencer(timeout_seconds=0.01)

    async def stuck():
        await asyncio.sleep(10)

    with pytest.raises(RequestTimeoutError) as exc_info:
        await sequencer.run("u1", stuck)

    assert exc_info.value.status_code == 504
    assert exc_info.value.detail == {"timeout_seconds": 0.01}


async def test_semaphore_limits_global_concurrency():
    sequencer = RequestSequencer(max_concurrent=1)
    order = []
    gate = asyncio.Event()

    async def first():
        order.append("first-start")
        await gate.wait()
        order.append("first-end")

    async def second():
        order.append("second-start")

    task = asyncio.ensure_future(sequencer.run("u1", first))
    await asyncio.sleep(0)
    other = asyncio.ensure_future(sequencer.run("u2", second))
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(task, other)

    assert order == ["first-start", "first-end", "second-start"]


async def test_errors_from_the_request_propagate():
    sequencer = RequestSequencer()

    async def broken():
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await sequencer.run("u1", broken)

    assert sequencer.active_keys == []
