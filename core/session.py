# Copyright (C) 2026 grodz
#
# This file is part of Riptide.
#
# Riptide is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Per-room playback session.

A PlaybackSession owns one guild's queue, decoder and voice transport. Three
background tasks run for its lifetime:

- the playback loop pops tracks and pipes them through the decoder
- the signal listener turns SKIP into cancelling the current pipe
- the occupancy watchdog leaves a channel that stayed empty too long

Commands call into the session from their own tasks. State they touch is
guarded by a shared/exclusive lock: queue and flag changes are exclusive,
inspections are shared. Teardown happens exactly once, in its own task.
"""

import asyncio
import io
from dataclasses import dataclass
from enum import Enum
from math import ceil
from time import monotonic as _now
from typing import AsyncContextManager, Callable, Protocol

from core.decoder import Decoder, PacketWriter
from core.errors import (
    EmptyQueueError,
    InvalidPageError,
    NothingPlayingError,
    ResolveTimeoutError,
    SessionClosedError,
    TrackNotFoundError,
    TransportError,
)
from core.playback import CancelScope, is_expected_cancellation
from core.queue import TrackQueue
from core.track import Track
from utils.duration import format_duration
from utils.locks import ReadWriteLock
from utils.log import room_logger


class SessionState(Enum):
    IDLE = 0
    PLAYING = 1
    PAUSED = 2
    CLOSED = 3


class Signal(Enum):
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class RoomContext:
    """Where a command came from."""

    guild_id: int
    voice_channel_id: int | None
    text_channel_id: int | None = None
    guild_name: str = ""
    voice_channel_name: str = ""
    user_name: str = ""


@dataclass(frozen=True)
class SessionSettings:
    tick_interval: float = 1.0
    inactivity_timeout: float = 300.0
    occupancy_check_interval: float = 15.0
    drain_delay: float = 1.0
    stuck_threshold: float = 10.0
    play_timeout: float = 300.0
    max_track_hours: int = 3
    queue_page_size: int = 25
    prefetch_window: int = 3
    prefetch_workers: int = 2

    @property
    def max_track_duration(self) -> float:
        return self.max_track_hours * 3600.0

    @classmethod
    def from_config(cls, config_manager) -> "SessionSettings":
        playback = config_manager.section("playback")
        prefetch = config_manager.section("prefetch")
        return cls(
            tick_interval=float(playback["tick_interval"]),
            inactivity_timeout=float(config_manager.get("inactivity_timeout", 5)) * 60,
            occupancy_check_interval=float(playback["occupancy_check_interval"]),
            drain_delay=float(playback["drain_delay"]),
            stuck_threshold=float(playback["stuck_threshold"]),
            play_timeout=float(playback["play_timeout"]),
            max_track_hours=int(config_manager.get("max_track_hours", 3)),
            queue_page_size=int(config_manager.get("queue_page_size", 25)),
            prefetch_window=int(prefetch["window"]),
            prefetch_workers=int(prefetch["workers"]),
        )


class VoiceTransport(Protocol):
    @property
    def channel_id(self) -> int | None: ...
    def is_connected(self) -> bool: ...
    async def connect(self, channel_id: int) -> None: ...
    async def disconnect(self) -> None: ...
    def stream(self, scope: CancelScope) -> AsyncContextManager[PacketWriter]: ...


class Notifier(Protocol):
    async def send(self, channel_id: int | None, text: str) -> None: ...


class PlaybackSession:
    def __init__(
        self,
        room: RoomContext,
        transport: VoiceTransport,
        resolver,
        notifier: Notifier,
        messages,
        settings: SessionSettings | None = None,
        on_close: Callable[["PlaybackSession"], None] | None = None,
        log=None,
        clock: Callable[[], float] = _now,
    ) -> None:
        self.room = room
        self.transport = transport
        self.resolver = resolver
        self.notifier = notifier
        self.messages = messages
        self.settings = settings or SessionSettings()
        self.log = log or room_logger(room.guild_name, room.guild_id)
        self._on_close = on_close
        self._clock = clock

        self.queue = TrackQueue(
            resolver.fetch,
            window=self.settings.prefetch_window,
            workers=self.settings.prefetch_workers,
            log=self.log,
        )
        self.decoder = Decoder(self.settings.drain_delay, self.log)
        self.state = SessionState.IDLE
        self.looping = False
        self.now_playing: Track | None = None
        self.empty_since: float | None = None

        self._lock = ReadWriteLock()
        self._signals: asyncio.Queue[Signal] = asyncio.Queue()
        self._scope: CancelScope | None = None
        self._play_tasks: set[asyncio.Task] = set()
        self._tasks: list[asyncio.Task] = []
        self._teardown: asyncio.Task | None = None

    @property
    def closing(self) -> bool:
        return self.state is SessionState.CLOSED

    def start(self) -> None:
        """Start the background tasks. Called once by the manager."""
        if self._tasks or self.closing:
            return
        guild = self.room.guild_id
        self._tasks = [
            asyncio.create_task(self._playback_loop(), name=f"playback-{guild}"),
            asyncio.create_task(self._process_signals(), name=f"signals-{guild}"),
            asyncio.create_task(self._watch_occupancy(), name=f"occupancy-{guild}"),
        ]

    def _ensure_open(self) -> None:
        if self.closing:
            raise SessionClosedError("session is closed")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def join(self, room: RoomContext) -> bool:
        """Connect to ``room``'s voice channel. Returns False if already there."""
        async with self._lock.exclusive():
            self._ensure_open()
            already_there = (
                self.transport.is_connected()
                and self.transport.channel_id == room.voice_channel_id
            )
            self.room = room
            if already_there:
                return False
            await self.transport.connect(room.voice_channel_id)
            self.log.info(f"summoned by {room.user_name} to #{room.voice_channel_name}")
            return True

    async def leave(self) -> None:
        """Close the session. Every caller waits on the same teardown."""
        if self._teardown is None:
            self.state = SessionState.CLOSED
            self.log.debug("closing session")
            self._teardown = asyncio.create_task(
                self._close(), name=f"teardown-{self.room.guild_id}"
            )
        await asyncio.shield(self._teardown)

    async def play(self, query: str, play_next: bool = False) -> str:
        """Resolve ``query`` and queue the result. Returns the reply text."""
        self._ensure_open()
        task = asyncio.create_task(
            asyncio.wait_for(self.resolver.resolve(query), self.settings.play_timeout)
        )
        self._play_tasks.add(task)
        try:
            resolution = await task
        except asyncio.CancelledError:
            task.cancel()
            if self.closing and not asyncio.current_task().cancelling():
                raise SessionClosedError("session closed while resolving") from None
            raise
        except asyncio.TimeoutError as e:
            raise ResolveTimeoutError(f"resolving {query!r} timed out") from e
        finally:
            self._play_tasks.discard(task)

        tracks = resolution.tracks
        if not tracks:
            raise TrackNotFoundError(f"nothing found for {query!r}")

        limit = self.settings.max_track_duration
        async with self._lock.exclusive():
            self._ensure_open()
            was_idle = self.now_playing is None and not self.queue
            accepted = [track for track in tracks if track.duration <= limit]
            too_long = len(tracks) - len(accepted)

            if len(tracks) == 1 and not resolution.failed:
                track = tracks[0]
                if too_long:
                    self.log.info(f"rejected {track.title!r}: {format_duration(track.duration)} long")
                    return self.messages.msg(
                        "track_too_long", track=track.pretty(), hours=self.settings.max_track_hours
                    )
                self._enqueue(accepted, play_next)
                if was_idle:
                    return self.messages.msg("queued_first")
                return self.messages.msg("queued_track", track=track.pretty())

            self._enqueue(accepted, play_next)
            failed = too_long + resolution.failed
            if failed:
                return self.messages.msg("queued_many_failed", count=len(accepted), failed=failed)
            return self.messages.msg("queued_many", count=len(accepted))

    def _enqueue(self, tracks: list[Track], play_next: bool) -> None:
        if not tracks:
            return
        if play_next:
            self.queue.push_front(*tracks)
        else:
            self.queue.push_back(*tracks)
        where = "front" if play_next else "back"
        self.log.info(f"queued {len(tracks)} track(s) at the {where}")

    async def pause(self) -> None:
        async with self._lock.shared():
            self._ensure_open()
            if self.now_playing is None:
                raise NothingPlayingError("nothing to pause")
            await self.decoder.pause()
            if self.now_playing is not None and not self.closing:
                self.state = SessionState.PAUSED

    async def resume(self) -> None:
        async with self._lock.shared():
            self._ensure_open()
            if not self.decoder.paused:
                if self.now_playing is None:
                    raise NothingPlayingError("nothing to resume")
                return
            await self.decoder.resume()
            if not self.closing:
                self.state = SessionState.PLAYING if self.now_playing else SessionState.IDLE

    async def skip(self) -> None:
        self._ensure_open()
        if self.now_playing is None:
            raise NothingPlayingError("nothing to skip")
        self._signals.put_nowait(Signal.SKIP)

    async def seek(self, goal: float) -> None:
        async with self._lock.shared():
            self._ensure_open()
            if self.now_playing is None or not self.decoder.active:
                raise NothingPlayingError("nothing to seek")
            await self.decoder.seek(goal)

    async def toggle_loop(self) -> bool:
        async with self._lock.exclusive():
            self._ensure_open()
            self.looping = not self.looping
            return self.looping

    async def queue_page(self, page: int = 1) -> str:
        async with self._lock.shared():
            tracks = self.queue.tracks()
        if not tracks:
            raise EmptyQueueError("queue is empty")

        size = self.settings.queue_page_size
        pages = ceil(len(tracks) / size)
        if not 1 <= page <= pages:
            raise InvalidPageError(f"page {page} outside 1..{pages}", page=page, pages=pages)

        start = (page - 1) * size
        lines = [
            self.messages.msg(
                "queue_line",
                position=start + offset + 1,
                track=track.pretty(),
                duration=format_duration(track.duration),
            )
            for offset, track in enumerate(tracks[start:start + size])
        ]
        total = sum(track.duration for track in tracks)
        lines.append(self.messages.msg(
            "queue_footer", page=page, pages=pages, length=format_duration(total)
        ))
        return "\n".join(lines)

    async def now_playing_text(self) -> str:
        async with self._lock.shared():
            track = self.now_playing
            elapsed = self.decoder.time
        if track is None:
            raise NothingPlayingError("nothing playing")
        return self.messages.msg(
            "now_playing",
            title=track.title,
            artist=track.artist or "unknown",
            elapsed=format_duration(elapsed),
            duration=format_duration(track.duration),
        )

    async def remove(self, i: int, j: int | None = None) -> list[Track]:
        async with self._lock.exclusive():
            self._ensure_open()
            return self.queue.remove(i, i if j is None else j)

    async def move(self, i: int, j: int) -> Track:
        async with self._lock.exclusive():
            self._ensure_open()
            return self.queue.move(i, j)

    async def shuffle(self) -> None:
        async with self._lock.exclusive():
            self._ensure_open()
            self.queue.shuffle()

    async def clear(self) -> None:
        async with self._lock.exclusive():
            self._ensure_open()
            self.queue.clear()

    def record_occupancy(self, listeners: int) -> None:
        """Note how many people are listening; zero starts the empty clock."""
        if listeners:
            if self.empty_since is not None:
                self.log.debug("channel occupied again")
            self.empty_since = None
        elif self.empty_since is None:
            self.log.debug("channel is empty")
            self.empty_since = self._clock()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _empty_too_long(self) -> bool:
        return (
            self.empty_since is not None
            and self._clock() - self.empty_since > self.settings.inactivity_timeout
        )

    async def _playback_loop(self) -> None:
        idle = 0.0
        while not self.closing:
            await asyncio.sleep(self.settings.tick_interval)
            idle += self.settings.tick_interval
            if idle > self.settings.inactivity_timeout or self._empty_too_long():
                self.log.info("leaving voice due to inactivity")
                await self._leave_with_notice("inactive_leave")
                return

            async with self._lock.exclusive():
                if self.closing:
                    return
                if not self.queue:
                    continue
                track = self.queue.pop()
                self.now_playing = track

            idle = 0.0
            try:
                while await self._pipe_safely(track) and self.looping and not self.closing:
                    self.log.debug(f"looping {track.title!r}")
            finally:
                self.now_playing = None
                if not self.closing:
                    self.state = SessionState.IDLE

    async def _pipe_safely(self, track: Track) -> bool:
        """Pipe one track. True only when it played to its natural end."""
        scope = CancelScope(track_id=track.id)
        self._scope = scope
        try:
            await self._pipe(scope, track)
            return not scope.cancelled
        except TransportError as e:
            self.log.warning(f"voice transport failed during {track.title!r}: {e}")
            await self._leave_with_notice("voice_error")
            return False
        except Exception as e:
            if is_expected_cancellation(e, scope):
                self.log.debug(f"pipe for {track.title!r} cancelled ({e.__class__.__name__})")
            else:
                self.log.opt(exception=e).error(f"failed to play {track.title!r} from {track.locator}")
                await self._notify("track_error", track=track.pretty())
            return False
        finally:
            scope.cancel()
            if self._scope is scope:
                self._scope = None

    async def _pipe(self, scope: CancelScope, track: Track) -> None:
        audio = await scope.race(track.audio())
        self.state = SessionState.PAUSED if self.decoder.paused else SessionState.PLAYING
        self.log.info(f"now playing {track.title!r}")
        await self._notify("now_playing_notice", track=track.pretty())
        async with self.transport.stream(scope) as out:
            await self.decoder.decode(scope, out, io.BytesIO(audio))

    async def _process_signals(self) -> None:
        while True:
            signal = await self._signals.get()
            if signal is Signal.ABORT:
                return
            scope = self._scope
            if scope is not None and not scope.cancelled:
                self.log.debug(f"skipping {scope.track_id}")
                scope.cancel()

    async def _watch_occupancy(self) -> None:
        while not self.closing:
            await asyncio.sleep(self.settings.occupancy_check_interval)
            if self._empty_too_long():
                self.log.info("leaving empty voice channel")
                await self._leave_with_notice("inactive_leave")
                return

    async def _leave_with_notice(self, key: str) -> None:
        await self._notify(key)
        try:
            await self.leave()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.opt(exception=True).error("failed to leave voice")

    async def _notify(self, key: str, **kwargs) -> None:
        if not self.messages.is_enabled(key):
            return
        try:
            await self.notifier.send(self.room.text_channel_id, self.messages.msg(key, **kwargs))
        except Exception as e:
            self.log.warning(f"failed to send {key} notice: {e}")

    async def _close(self) -> None:
        for task in list(self._play_tasks):
            task.cancel()
        if self._scope is not None:
            self._scope.cancel()
        self._signals.put_nowait(Signal.ABORT)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        try:
            await self.transport.disconnect()
        finally:
            async with self._lock.exclusive():
                self.queue.clear()
                self.now_playing = None
            self.empty_since = None
            self.log.info("session closed")
            if self._on_close is not None:
                self._on_close(self)
