from __future__ import annotations

import asyncio
import dataclasses

import pytest
import pytest_asyncio

from core.errors import (
    EmptyQueueError,
    InvalidPageError,
    NothingPlayingError,
    SeekRangeError,
    SessionClosedError,
    TrackNotFoundError,
    TransportClosedError,
)
from core.session import PlaybackSession, RoomContext, SessionState
from helpers import (
    FakeNotifier,
    FakeResolver,
    FakeTransport,
    ogg_stream,
    packet_page,
    wait_until,
)

ROOM = RoomContext(guild_id=1, voice_channel_id=10, text_channel_id=20, guild_name="guild")
HOURS = 3600.0

SHORT = {"A": packet_page([b"A"], granule=48000), "B": packet_page([b"B"], granule=48000)}


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture
async def build(messages, settings):
    """Factory for started sessions; every one is closed after the test."""
    sessions: list[PlaybackSession] = []

    def factory(resolver=None, transport=None, notifier=None, clock=None, closed=None, **overrides):
        session = PlaybackSession(
            ROOM,
            transport or FakeTransport(),
            resolver or FakeResolver(),
            notifier or FakeNotifier(),
            messages,
            settings=dataclasses.replace(settings, **overrides),
            on_close=closed.append if closed is not None else None,
            clock=clock or Clock(),
        )
        session.start()
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.leave()


def _playing(session: PlaybackSession, title: str):
    return lambda: session.now_playing is not None and session.now_playing.title == title


@pytest.mark.asyncio
async def test_first_play_reports_one_track_then_names_the_next(build) -> None:
    resolver = FakeResolver({"a": [("A", 5)], "b": [("B", 5)]}, audio=ogg_stream(50))
    session = build(resolver, FakeTransport(write_delay=0.005))

    assert await session.play("a") == "Queued: `1` track"
    assert await session.play("b") == "Queued: `artist` - `B`"


@pytest.mark.asyncio
async def test_tracks_play_in_queue_order(build) -> None:
    resolver = FakeResolver({"a": [("A", 1)], "b": [("B", 1)]}, audio_by_title=SHORT)
    transport = FakeTransport()
    session = build(resolver, transport)

    await session.play("a")
    await session.play("b")

    await wait_until(lambda: len(transport.streams) == 2 and session.now_playing is None)
    assert [w.packets for w in transport.streams] == [[b"A"], [b"B"]]
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_play_next_jumps_the_queue(build) -> None:
    resolver = FakeResolver({"a": [("A", 1)], "b": [("B", 1)]}, audio_by_title=SHORT)
    session = build(resolver, tick_interval=10.0)

    await session.play("a")
    await session.play("b", play_next=True)

    assert [t.title for t in session.queue.tracks()] == ["B", "A"]


@pytest.mark.asyncio
async def test_unknown_query_raises(build) -> None:
    session = build(FakeResolver())
    with pytest.raises(TrackNotFoundError):
        await session.play("missing")


@pytest.mark.asyncio
async def test_skip_moves_to_next_track(build) -> None:
    audio = {"A": ogg_stream(500), "B": SHORT["B"]}
    resolver = FakeResolver({"a": [("A", 500)], "b": [("B", 1)]}, audio_by_title=audio)
    transport = FakeTransport(write_delay=0.001)
    session = build(resolver, transport)

    await session.play("a")
    await session.play("b")
    await wait_until(lambda: _playing(session, "A")() and transport.streams and transport.streams[0].packets)

    await session.skip()

    await wait_until(lambda: len(transport.streams) == 2 and transport.streams[1].packets == [b"B"])
    assert len(transport.streams[0].packets) < 2500


@pytest.mark.asyncio
async def test_skip_without_track_raises(build) -> None:
    session = build()
    with pytest.raises(NothingPlayingError):
        await session.skip()


@pytest.mark.asyncio
async def test_loop_replays_without_refetching(build) -> None:
    resolver = FakeResolver({"a": [("A", 1)]}, audio_by_title=SHORT)
    transport = FakeTransport()
    session = build(resolver, transport)

    assert await session.toggle_loop() is True
    await session.play("a")
    await wait_until(lambda: len(transport.streams) >= 3)

    assert await session.toggle_loop() is False
    await wait_until(lambda: session.now_playing is None)
    assert all(w.packets == [b"A"] for w in transport.streams)
    assert resolver.fetched == ["A"]


@pytest.mark.asyncio
async def test_idle_session_leaves_after_timeout(build, messages) -> None:
    closed: list[PlaybackSession] = []
    transport = FakeTransport()
    notifier = FakeNotifier()
    session = build(transport=transport, notifier=notifier, closed=closed, inactivity_timeout=0.05)

    await wait_until(lambda: closed == [session])

    assert session.state is SessionState.CLOSED
    assert transport.disconnects == 1
    assert notifier.sent == [(20, messages.msg("inactive_leave"))]


@pytest.mark.asyncio
async def test_empty_channel_leaves_while_playing(build, messages) -> None:
    clock = Clock()
    resolver = FakeResolver({"a": [("A", 500)]}, audio=ogg_stream(500))
    transport = FakeTransport(write_delay=0.001)
    notifier = FakeNotifier()
    session = build(resolver, transport, notifier, clock)

    await session.play("a")
    await wait_until(lambda: transport.streams and transport.streams[0].packets)

    session.record_occupancy(0)
    clock.now = 3.0
    session.record_occupancy(0)
    clock.now = 5.5

    await wait_until(lambda: session.closing and transport.disconnects == 1)
    assert messages.msg("inactive_leave") in notifier.texts
    assert len(transport.streams[0].packets) < 2500
    assert len(session.queue) == 0


@pytest.mark.asyncio
async def test_listener_returning_resets_empty_clock(build) -> None:
    clock = Clock()
    session = build(clock=clock)

    session.record_occupancy(0)
    session.record_occupancy(2)
    clock.now = 100.0
    await asyncio.sleep(0.05)

    assert not session.closing
    assert session.empty_since is None


@pytest.mark.asyncio
async def test_concurrent_leave_tears_down_once(build) -> None:
    closed: list[PlaybackSession] = []
    transport = FakeTransport()
    session = build(transport=transport, closed=closed)

    await asyncio.gather(session.leave(), session.leave(), session.leave())

    assert transport.disconnects == 1
    assert closed == [session]
    assert session.state is SessionState.CLOSED
    with pytest.raises(SessionClosedError):
        await session.play("a")


@pytest.mark.asyncio
async def test_transport_failure_closes_session(build, messages) -> None:
    closed: list[PlaybackSession] = []
    resolver = FakeResolver({"a": [("A", 10)]}, audio=ogg_stream(10))
    transport = FakeTransport(fail_with=TransportClosedError("voice socket closed"))
    notifier = FakeNotifier()
    session = build(resolver, transport, notifier, closed=closed)

    await session.play("a")

    await wait_until(lambda: closed == [session])
    assert transport.disconnects == 1
    assert messages.msg("voice_error") in notifier.texts


@pytest.mark.asyncio
async def test_broken_track_is_reported_and_skipped(build) -> None:
    audio = {"A": b"RIFF" + bytes(60), "B": SHORT["B"]}
    resolver = FakeResolver({"a": [("A", 1)], "b": [("B", 1)]}, audio_by_title=audio)
    transport = FakeTransport()
    notifier = FakeNotifier()
    session = build(resolver, transport, notifier)

    await session.play("a")
    await session.play("b")

    await wait_until(lambda: len(transport.streams) == 2 and transport.streams[1].packets == [b"B"])
    assert "Error playing: `artist` - `A`" in notifier.texts
    assert not session.closing


@pytest.mark.asyncio
async def test_single_track_over_limit_is_refused(build) -> None:
    resolver = FakeResolver({"long": [("L", 4 * HOURS)]})
    session = build(resolver, tick_interval=10.0)

    reply = await session.play("long")

    assert reply == "Could not queue: `artist` - `L` - track is above 3 hours"
    assert len(session.queue) == 0


@pytest.mark.asyncio
async def test_batch_counts_long_and_unresolved_tracks_as_failed(build) -> None:
    catalog = {"list": [("A", 5), ("L", 4 * HOURS), ("B", 5)]}
    session = build(FakeResolver(catalog, failed=1), tick_interval=10.0)

    assert await session.play("list") == "Queued: `2` tracks - `2` failed"
    assert [t.title for t in session.queue.tracks()] == ["A", "B"]


@pytest.mark.asyncio
async def test_batch_without_failures(build) -> None:
    session = build(FakeResolver({"list": [("A", 5), ("B", 5)]}), tick_interval=10.0)

    assert await session.play("list") == "Queued: `2` tracks"


@pytest.mark.asyncio
async def test_leave_cancels_pending_play(build) -> None:
    gate = asyncio.Event()
    session = build(FakeResolver({"a": [("A", 5)]}, resolve_gate=gate))

    pending = asyncio.create_task(session.play("a"))
    await asyncio.sleep(0.01)
    await session.leave()

    with pytest.raises(SessionClosedError):
        await pending
    assert len(session.queue) == 0


@pytest.mark.asyncio
async def test_pause_holds_output_until_resume(build) -> None:
    resolver = FakeResolver({"a": [("A", 500)]}, audio=ogg_stream(500))
    transport = FakeTransport(write_delay=0.002)
    session = build(resolver, transport)

    await session.play("a")
    await wait_until(lambda: session.state is SessionState.PLAYING and transport.streams and transport.streams[0].packets)

    await session.pause()
    assert session.state is SessionState.PAUSED
    await asyncio.sleep(0.05)
    held = len(transport.streams[0].packets)
    await asyncio.sleep(0.05)
    assert len(transport.streams[0].packets) == held

    await session.resume()
    assert session.state is SessionState.PLAYING
    await wait_until(lambda: len(transport.streams[0].packets) > held)


@pytest.mark.asyncio
async def test_pause_and_resume_need_a_track(build) -> None:
    session = build()
    with pytest.raises(NothingPlayingError):
        await session.pause()
    with pytest.raises(NothingPlayingError):
        await session.resume()
    with pytest.raises(NothingPlayingError):
        await session.seek(10)


@pytest.mark.asyncio
async def test_queue_page_lists_tracks_and_totals(build) -> None:
    catalog = {"list": [("A", 65), ("B", 5), ("C", 30)]}
    session = build(FakeResolver(catalog), tick_interval=10.0, queue_page_size=2)
    await session.play("list")

    assert await session.queue_page(1) == (
        "1. `artist` - `A` (1:05)\n"
        "2. `artist` - `B` (0:05)\n"
        "Page: `1`/`2`, Length: `1:40`"
    )
    assert await session.queue_page(2) == (
        "3. `artist` - `C` (0:30)\n"
        "Page: `2`/`2`, Length: `1:40`"
    )
    for page in (0, 3):
        with pytest.raises(InvalidPageError):
            await session.queue_page(page)


@pytest.mark.asyncio
async def test_queue_page_on_empty_queue(build) -> None:
    session = build()
    with pytest.raises(EmptyQueueError):
        await session.queue_page()


@pytest.mark.asyncio
async def test_now_playing_text(build) -> None:
    resolver = FakeResolver({"a": [("A", 500)]}, audio=ogg_stream(500))
    session = build(resolver, FakeTransport(write_delay=0.002))
    with pytest.raises(NothingPlayingError):
        await session.now_playing_text()

    await session.play("a")
    await wait_until(_playing(session, "A"))

    assert (await session.now_playing_text()).startswith("`A` by `artist` - ")


@pytest.mark.asyncio
async def test_queue_edits_through_session(build) -> None:
    catalog = {"list": [("A", 5), ("B", 5), ("C", 5), ("D", 5)]}
    session = build(FakeResolver(catalog), tick_interval=10.0)
    await session.play("list")

    assert (await session.move(3, 0)).title == "D"
    assert [t.title for t in await session.remove(1, 2)] == ["A", "B"]
    assert [t.title for t in await session.remove(0)] == ["D"]
    assert [t.title for t in session.queue.tracks()] == ["C"]

    await session.clear()
    assert len(session.queue) == 0


@pytest.mark.asyncio
async def test_join_connects_once_per_channel(build) -> None:
    transport = FakeTransport()
    session = build(transport=transport)

    assert await session.join(ROOM) is True
    assert await session.join(ROOM) is False
    assert transport.connects == [10]

    moved = dataclasses.replace(ROOM, voice_channel_id=11)
    assert await session.join(moved) is True
    assert transport.connects == [10, 11]
    assert session.room is moved


@pytest.mark.asyncio
async def test_seek_moves_playback_to_requested_second(build) -> None:
    resolver = FakeResolver({"a": [("A", 500)]}, audio=ogg_stream(500))
    transport = FakeTransport(write_delay=0.002)
    session = build(resolver, transport)

    await session.play("a")
    await wait_until(lambda: transport.streams and transport.streams[0].packets)
    out = transport.streams[0].packets

    await session.seek(200)
    assert session.decoder.time == 200.0
    written = len(out)

    await wait_until(lambda: len(out) > written)
    assert out[written][0] == 200
    assert session.state is SessionState.PLAYING


@pytest.mark.asyncio
async def test_seek_past_end_raises_and_playback_continues(build) -> None:
    resolver = FakeResolver({"a": [("A", 500)]}, audio=ogg_stream(500))
    transport = FakeTransport(write_delay=0.002)
    session = build(resolver, transport)

    await session.play("a")
    await wait_until(lambda: transport.streams and transport.streams[0].packets)
    out = transport.streams[0].packets

    with pytest.raises(SeekRangeError):
        await session.seek(10_000)
    written = len(out)

    await wait_until(lambda: len(out) > written + 5)
    assert out[written][0] < 200
    assert _playing(session, "A")()
    assert session.state is SessionState.PLAYING


@pytest.mark.asyncio
async def test_skip_while_track_is_downloading_is_not_an_error(build) -> None:
    download = asyncio.Event()
    resolver = FakeResolver(
        {"a": [("A", 5)], "b": [("B", 1)]}, audio_by_title=SHORT, hold={"A": download}
    )
    transport = FakeTransport()
    notifier = FakeNotifier()
    session = build(resolver, transport, notifier)

    await session.play("a")
    await session.play("b")
    await wait_until(lambda: _playing(session, "A")() and session._scope is not None)

    await session.skip()

    await wait_until(lambda: transport.streams and transport.streams[0].packets == [b"B"])
    assert not any(text.startswith("Error playing") for text in notifier.texts)
    assert not session.closing
    download.set()


@pytest.mark.asyncio
async def test_leave_while_track_is_downloading_is_not_an_error(build) -> None:
    download = asyncio.Event()
    resolver = FakeResolver({"a": [("A", 5)]}, audio_by_title=SHORT, hold={"A": download})
    notifier = FakeNotifier()
    closed: list[PlaybackSession] = []
    session = build(resolver, notifier=notifier, closed=closed)

    await session.play("a")
    await wait_until(lambda: _playing(session, "A")() and session._scope is not None)

    await session.leave()

    assert closed == [session]
    assert not any(text.startswith("Error playing") for text in notifier.texts)
    download.set()
