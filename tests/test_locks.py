from __future__ import annotations

import asyncio

import pytest

from utils.locks import ReadWriteLock


@pytest.mark.asyncio
async def test_readers_share() -> None:
    lock = ReadWriteLock()
    inside = 0
    peak = 0

    async def reader() -> None:
        nonlocal inside, peak
        async with lock.shared():
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*(reader() for _ in range(3)))

    assert peak == 3
    assert not lock.locked


@pytest.mark.asyncio
async def test_writer_excludes_readers() -> None:
    lock = ReadWriteLock()
    events: list[str] = []

    async def writer() -> None:
        async with lock.exclusive():
            events.append("write-start")
            await asyncio.sleep(0.02)
            events.append("write-end")

    async def reader() -> None:
        async with lock.shared():
            events.append("read")

    writing = asyncio.create_task(writer())
    await asyncio.sleep(0.005)
    assert lock.locked
    await asyncio.gather(reader(), writing)

    assert events == ["write-start", "write-end", "read"]


@pytest.mark.asyncio
async def test_waiting_writer_blocks_new_readers() -> None:
    lock = ReadWriteLock()
    events: list[str] = []
    release = asyncio.Event()

    async def first_reader() -> None:
        async with lock.shared():
            events.append("read-1")
            await release.wait()

    async def writer() -> None:
        async with lock.exclusive():
            events.append("write")

    async def late_reader() -> None:
        async with lock.shared():
            events.append("read-2")

    tasks = [asyncio.create_task(first_reader())]
    await asyncio.sleep(0)
    tasks.append(asyncio.create_task(writer()))
    await asyncio.sleep(0)
    tasks.append(asyncio.create_task(late_reader()))
    await asyncio.sleep(0.01)
    assert events == ["read-1"]

    release.set()
    await asyncio.gather(*tasks)
    assert events == ["read-1", "write", "read-2"]


@pytest.mark.asyncio
async def test_cancelled_writer_lets_readers_through() -> None:
    lock = ReadWriteLock()
    release = asyncio.Event()

    async def holder() -> None:
        async with lock.shared():
            await release.wait()

    holding = asyncio.create_task(holder())
    await asyncio.sleep(0)
    writer = asyncio.create_task(lock.exclusive().__aenter__())
    await asyncio.sleep(0)

    writer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await writer

    async with lock.shared():
        pass
    release.set()
    await holding
    assert not lock.locked
