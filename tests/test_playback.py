from __future__ import annotations

import asyncio

import pytest

from core.errors import RetrievalAbortedError, ScopeCancelledError
from core.playback import CancelScope, is_expected_cancellation


@pytest.mark.asyncio
async def test_race_returns_result() -> None:
    async def quick() -> str:
        return "done"

    assert await CancelScope().race(quick()) == "done"


@pytest.mark.asyncio
async def test_race_raises_when_scope_cancelled_mid_wait() -> None:
    scope = CancelScope()
    started = asyncio.Event()
    stopped = asyncio.Event()

    async def slow() -> str:
        started.set()
        try:
            await asyncio.sleep(30)
        finally:
            stopped.set()
        return "late"

    async def cancel_soon() -> None:
        await started.wait()
        await asyncio.sleep(0.01)
        scope.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(ScopeCancelledError):
        await scope.race(slow())
    await canceller

    await asyncio.wait_for(stopped.wait(), 1.0)


@pytest.mark.asyncio
async def test_race_on_cancelled_scope_raises_immediately() -> None:
    scope = CancelScope()
    scope.cancel()
    ran = False

    async def body() -> None:
        nonlocal ran
        ran = True

    aw = body()
    with pytest.raises(ScopeCancelledError):
        await scope.race(aw)
    aw.close()
    assert not ran


def test_abort_is_expected_only_once_scope_is_cancelled() -> None:
    scope = CancelScope()
    error = RetrievalAbortedError("gone")

    assert not is_expected_cancellation(error, scope)
    scope.cancel()
    assert is_expected_cancellation(error, scope)
    assert is_expected_cancellation(ScopeCancelledError("x"), None)
    assert not is_expected_cancellation(ValueError("x"), scope)
