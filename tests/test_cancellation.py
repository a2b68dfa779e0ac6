"""
Tests for cooperative cancellation.
"""

import asyncio

import pytest

from agent_runtime.cancellation import CancellationToken
from agent_runtime.errors import ErrorKind, OperationCancelled


def test_cancel_is_idempotent():
    """Test cancelling twice keeps the first reason and fires callbacks once."""
    token = CancellationToken()
    fired = []
    token.on_cancel(lambda: fired.append(1))

    token.cancel("first")
    token.cancel("second")

    assert token.cancelled
    assert token.reason == "first"
    assert fired == [1]


def test_on_cancel_after_cancel_runs_immediately():
    """Test late subscribers are called right away."""
    token = CancellationToken()
    token.cancel()
    fired = []

    token.on_cancel(lambda: fired.append(1))

    assert fired == [1]


def test_raise_if_cancelled():
    """Test raise_if_cancelled raises OperationCancelled with the reason."""
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("user pressed ctrl-c")
    with pytest.raises(OperationCancelled) as exc_info:
        token.raise_if_cancelled()

    assert exc_info.value.kind is ErrorKind.CANCELLED
    assert exc_info.value.message == "user pressed ctrl-c"


@pytest.mark.asyncio
async def test_guard_returns_result():
    """Test guard passes through the awaited value."""
    token = CancellationToken()

    async def work():
        return 42

    assert await token.guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_cancels_inner_work():
    """Test the guarded task is cancelled when the token fires."""
    token = CancellationToken()
    started = asyncio.Event()
    inner_cancelled = asyncio.Event()

    async def work():
        started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            inner_cancelled.set()
            raise

    task = asyncio.create_task(token.guard(work()))
    await started.wait()
    token.cancel()

    with pytest.raises(OperationCancelled):
        await asyncio.wait_for(task, 1)
    assert inner_cancelled.is_set()


@pytest.mark.asyncio
async def test_guard_on_cancelled_token_does_not_start():
    """Test guard refuses to start work once cancelled."""
    token = CancellationToken()
    token.cancel()

    async def work():
        raise AssertionError("should not run")

    coro = work()
    with pytest.raises(OperationCancelled):
        await token.guard(coro)
    coro.close()


@pytest.mark.asyncio
async def test_sleep_wakes_on_cancel():
    """Test a long sleep ends early on cancellation."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.01, token.cancel)

    with pytest.raises(OperationCancelled):
        await asyncio.wait_for(token.sleep(3600), 1)
