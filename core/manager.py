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

"""Room to session mapping."""

import asyncio
from typing import Callable

from loguru import logger

from core.errors import NoSessionError, NotSameRoomError
from core.session import Notifier, PlaybackSession, RoomContext, SessionSettings, VoiceTransport
from utils.log import room_logger

TransportFactory = Callable[[RoomContext, object], VoiceTransport]


class SessionManager:
    """Keeps at most one live PlaybackSession per guild.

    Sessions are created on the first join or play and drop themselves from
    the map when they close. Creation is serialized by a lock so concurrent
    commands in a fresh guild end up sharing one session.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        resolver,
        notifier: Notifier,
        messages,
        settings: SessionSettings | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._resolver = resolver
        self._notifier = notifier
        self._messages = messages
        self.settings = settings or SessionSettings()
        self._clock = clock
        self._sessions: dict[int, PlaybackSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def _live(self, guild_id: int) -> PlaybackSession | None:
        session = self._sessions.get(guild_id)
        if session is not None and session.closing:
            self._sessions.pop(guild_id, None)
            return None
        return session

    def same_room(self, room: RoomContext) -> bool:
        """True when no session exists or it sits in the room's voice channel."""
        session = self._live(room.guild_id)
        return session is None or session.room.voice_channel_id == room.voice_channel_id

    def get(self, room: RoomContext) -> PlaybackSession:
        session = self._live(room.guild_id)
        if session is None:
            raise NoSessionError(f"no session for guild {room.guild_id}")
        if session.room.voice_channel_id != room.voice_channel_id:
            raise NotSameRoomError(f"session lives in channel {session.room.voice_channel_id}")
        return session

    async def join(self, room: RoomContext) -> PlaybackSession:
        """Get or create the guild's session and connect it to the room."""
        async with self._lock:
            session = self._live(room.guild_id)
            created = session is None
            if session is None:
                session = self._create(room)
            elif session.room.voice_channel_id != room.voice_channel_id:
                raise NotSameRoomError(f"session lives in channel {session.room.voice_channel_id}")

        try:
            await session.join(room)
        except Exception:
            if created:
                logger.debug(f"first join failed, discarding session for guild {room.guild_id}")
                try:
                    await session.leave()
                except Exception:
                    logger.opt(exception=True).warning("cleanup after failed join failed")
            raise
        return session

    async def play(self, room: RoomContext, query: str, play_next: bool = False) -> str:
        session = await self.join(room)
        return await session.play(query, play_next)

    async def leave(self, room: RoomContext) -> None:
        await self.get(room).leave()

    async def drop(self, guild_id: int) -> None:
        """Close a guild's session regardless of room (voice kicked us out)."""
        session = self._live(guild_id)
        if session is not None:
            await session.leave()

    def record_occupancy(self, guild_id: int, channel_id: int, listeners: int) -> None:
        session = self._live(guild_id)
        if session is None or session.room.voice_channel_id != channel_id:
            return
        session.record_occupancy(listeners)

    async def shutdown(self) -> None:
        """Leave every session, e.g. when the bot is closing."""
        sessions = list(self._sessions.values())
        if not sessions:
            return
        logger.info(f"closing {len(sessions)} session(s)")
        results = await asyncio.gather(*(s.leave() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                session.log.opt(exception=result).warning("error while closing session")

    def _create(self, room: RoomContext) -> PlaybackSession:
        log = room_logger(room.guild_name, room.guild_id)
        kwargs = {"clock": self._clock} if self._clock else {}
        session = PlaybackSession(
            room,
            self._transport_factory(room, log),
            self._resolver,
            self._notifier,
            self._messages,
            settings=self.settings,
            on_close=self._discard,
            log=log,
            **kwargs,
        )
        self._sessions[room.guild_id] = session
        session.start()
        log.debug("session created")
        return session

    def _discard(self, session: PlaybackSession) -> None:
        if self._sessions.get(session.room.guild_id) is session:
            del self._sessions[session.room.guild_id]
