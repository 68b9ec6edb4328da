"""Tests for the scrape/acquisition pause handshake."""

import asyncio

import pytest

from cartwatch.worker.pause_control import PauseCoordinator


@pytest.mark.asyncio
async def test_request_pause_without_run_returns_false():
    pauses = PauseCoordinator()
    assert await pauses.request_pause(1, timeout=0.1) is False
    assert not pauses.is_pause_requested(1)


@pytest.mark.asyncio
async def test_pause_resolves_at_safe_point():
    pauses = PauseCoordinator()
    pauses.mark_acquisition_start(1)

    request = asyncio.create_task(pauses.request_pause(1, timeout=1))
    await asyncio.sleep(0)
    assert pauses.is_pause_requested(1)
    assert not request.done()

    assert pauses.notify_paused_at_safe_point(1) is True
    assert await request is True
    assert pauses.is_paused(1)

    waiter = asyncio.create_task(pauses.wait_until_resumed(1, poll_interval=0.01))
    await asyncio.sleep(0.03)
    assert not waiter.done()

    assert pauses.resume(1) is True
    await asyncio.wait_for(waiter, 1)
    assert not pauses.is_paused(1)


@pytest.mark.asyncio
async def test_pause_times_out_and_clears_request():
    pauses = PauseCoordinator()
    pauses.mark_acquisition_start(1)

    assert await pauses.request_pause(1, timeout=0.02) is False
    assert not pauses.is_pause_requested(1)
    assert pauses.notify_paused_at_safe_point(1) is False


@pytest.mark.asyncio
async def test_run_ending_releases_pause_request():
    pauses = PauseCoordinator()
    pauses.mark_acquisition_start(1)

    request = asyncio.create_task(pauses.request_pause(1, timeout=1))
    await asyncio.sleep(0)
    pauses.mark_acquisition_end(1)

    assert await request is True
    assert not pauses.is_acquisition_in_progress(1)


@pytest.mark.asyncio
async def test_waiting_callback_fires_each_poll():
    pauses = PauseCoordinator()
    pauses.mark_acquisition_start(1)
    request = asyncio.create_task(pauses.request_pause(1))
    await asyncio.sleep(0)
    pauses.notify_paused_at_safe_point(1)
    await request

    ticks = []
    waiter = asyncio.create_task(pauses.wait_until_resumed(1, poll_interval=0.01, on_waiting=lambda: ticks.append(1)))
    await asyncio.sleep(0.05)
    pauses.resume(1)
    await waiter

    assert len(ticks) >= 2


@pytest.mark.asyncio
async def test_paused_context_resumes_on_exit():
    pauses = PauseCoordinator()
    pauses.mark_acquisition_start(1)

    async def acquisition_side():
        while not pauses.is_pause_requested(1):
            await asyncio.sleep(0)
        pauses.notify_paused_at_safe_point(1)
        await pauses.wait_until_resumed(1, poll_interval=0.01)

    side = asyncio.create_task(acquisition_side())
    async with pauses.paused(1, timeout=1) as was_paused:
        assert was_paused is True
        assert pauses.is_paused(1)

    await asyncio.wait_for(side, 1)
    assert not pauses.is_pause_requested(1)


@pytest.mark.asyncio
async def test_wait_without_request_returns_immediately():
    pauses = PauseCoordinator()
    await asyncio.wait_for(pauses.wait_until_resumed(1), 0.1)
