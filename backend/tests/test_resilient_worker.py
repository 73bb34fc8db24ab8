"""Background worker supervision tests.

Tests focus on:
- Crashed workers restarting on a fresh task
- Shutdown reaching the task that is running now, not the first one
"""

import asyncio

import pytest

from tryon.app import create_resilient_worker


async def wait_until(predicate, timeout: float = 5):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_stop_cancels_the_restarted_task():
    started: list[asyncio.Task] = []
    running = asyncio.Event()

    async def flaky_worker(session_factory, settings):
        started.append(asyncio.current_task())
        if len(started) == 1:
            raise RuntimeError("database went away")
        running.set()
        await asyncio.Event().wait()

    handle = create_resilient_worker(
        flaky_worker, None, None, "flaky", asyncio.Event(), restart_delay=0
    )
    await asyncio.wait_for(running.wait(), timeout=5)

    assert handle.restarts == 1
    assert handle.task is started[1]

    await handle.stop()

    assert started[1].cancelled()
    assert handle.shutdown_event.is_set()


@pytest.mark.asyncio
async def test_stop_during_restart_delay_starts_nothing():
    calls = 0

    async def crashing_worker(session_factory, settings):
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    handle = create_resilient_worker(
        crashing_worker, None, None, "crashing", asyncio.Event(), restart_delay=60
    )
    await wait_until(lambda: handle.restart_task is not None)

    await handle.stop()

    assert handle.restart_task.cancelled()
    assert handle.restarts == 0
    assert calls == 1
