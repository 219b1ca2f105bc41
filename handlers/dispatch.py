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

"""
Command Dispatch

Every user command is declared once in COMMANDS and handled by the coroutine
registered for it in HANDLERS. The two tables are checked against each other
when the dispatcher is built, so a command without a handler (or a handler
for an unknown command) stops the bot at startup instead of failing later.

Handlers receive 1-based positions from users and convert them to the
0-based indexes the queue works with.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from core.errors import (
    CommandRegistryError,
    EmptyQueueError,
    InvalidArgumentError,
    InvalidPageError,
    InvalidRangeError,
    NoSessionError,
    NothingPlayingError,
    NotSameRoomError,
    QueueIndexError,
    RiptideError,
    SeekRangeError,
    TrackNotFoundError,
)
from core.manager import SessionManager
from core.session import RoomContext
from utils.duration import format_duration, parse_duration


@dataclass(frozen=True)
class Option:
    name: str
    description: str
    required: bool = True


@dataclass(frozen=True)
class Command:
    name: str
    description: str
    options: tuple[Option, ...] = ()
    deferred: bool = False


COMMANDS: tuple[Command, ...] = (
    Command("join", "Join your voice channel", deferred=True),
    Command("leave", "Leave the voice channel", deferred=True),
    Command("play", "Queue a track or playlist",
            (Option("track", "Search term, playlist name or link to an Ogg file"),), deferred=True),
    Command("playnext", "Queue a track or playlist to play next",
            (Option("track", "Search term, playlist name or link to an Ogg file"),), deferred=True),
    Command("skip", "Skip the current track"),
    Command("pause", "Pause the current track", deferred=True),
    Command("resume", "Resume the current track", deferred=True),
    Command("seek", "Jump to a time in the current track",
            (Option("time", "Time like 1:23, 01:02:03 or 90"),), deferred=True),
    Command("loop", "Toggle looping the current track"),
    Command("queue", "Show the queue", (Option("page", "Page of the queue", required=False),)),
    Command("np", "Show the current track"),
    Command("clear", "Clear the queue"),
    Command("remove", "Remove tracks from the queue",
            (Option("position", "Position of the track"),
             Option("end", "Last position of a range to remove", required=False))),
    Command("move", "Move a track to another position",
            (Option("from", "Position of the track"), Option("to", "New position of the track"))),
    Command("shuffle", "Shuffle the queue"),
)

COMMAND_DESCRIPTIONS = {command.name: command.description for command in COMMANDS}

Handler = Callable[[SessionManager, RoomContext, dict, Any], Awaitable[str]]

# Errors that are a normal answer to a bad request, not a malfunction
_QUIET_ERRORS = (
    EmptyQueueError,
    InvalidArgumentError,
    InvalidPageError,
    InvalidRangeError,
    NoSessionError,
    NothingPlayingError,
    NotSameRoomError,
    QueueIndexError,
    SeekRangeError,
    TrackNotFoundError,
)


@dataclass(frozen=True)
class Reply:
    text: str
    ephemeral: bool = False


def _index(value) -> int:
    """User position (1-based) to queue index (0-based)."""
    try:
        return int(value) - 1
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"not a position: {value!r}", value=value) from None


async def handle_join(manager, room, args, messages) -> str:
    await manager.join(room)
    return messages.msg("joined")


async def handle_leave(manager, room, args, messages) -> str:
    await manager.leave(room)
    return messages.msg("left")


async def handle_play(manager, room, args, messages) -> str:
    return await manager.play(room, args["track"])


async def handle_playnext(manager, room, args, messages) -> str:
    return await manager.play(room, args["track"], play_next=True)


async def handle_skip(manager, room, args, messages) -> str:
    await manager.get(room).skip()
    return messages.msg("skipped")


async def handle_pause(manager, room, args, messages) -> str:
    await manager.get(room).pause()
    return messages.msg("paused")


async def handle_resume(manager, room, args, messages) -> str:
    await manager.get(room).resume()
    return messages.msg("resumed")


async def handle_seek(manager, room, args, messages) -> str:
    goal = parse_duration(str(args["time"]))
    await manager.get(room).seek(goal)
    return messages.msg("seek_to", position=format_duration(goal))


async def handle_loop(manager, room, args, messages) -> str:
    looping = await manager.get(room).toggle_loop()
    return messages.msg("loop_on" if looping else "loop_off")


async def handle_queue(manager, room, args, messages) -> str:
    page = args.get("page")
    try:
        page = int(page) if page is not None else 1
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"not a page: {page!r}", value=page) from None
    return await manager.get(room).queue_page(page)


async def handle_np(manager, room, args, messages) -> str:
    return await manager.get(room).now_playing_text()


async def handle_clear(manager, room, args, messages) -> str:
    await manager.get(room).clear()
    return messages.msg("cleared")


async def handle_remove(manager, room, args, messages) -> str:
    start = _index(args["position"])
    end = args.get("end")
    removed = await manager.get(room).remove(start, _index(end) if end is not None else None)
    if len(removed) == 1:
        return messages.msg("removed_one", track=removed[0].pretty())
    return messages.msg("removed_many", count=len(removed))


async def handle_move(manager, room, args, messages) -> str:
    target = _index(args["to"])
    track = await manager.get(room).move(_index(args["from"]), target)
    return messages.msg("moved", track=track.pretty(), position=target + 1)


async def handle_shuffle(manager, room, args, messages) -> str:
    await manager.get(room).shuffle()
    return messages.msg("shuffled")


HANDLERS: dict[str, Handler] = {
    "join": handle_join,
    "leave": handle_leave,
    "play": handle_play,
    "playnext": handle_playnext,
    "skip": handle_skip,
    "pause": handle_pause,
    "resume": handle_resume,
    "seek": handle_seek,
    "loop": handle_loop,
    "queue": handle_queue,
    "np": handle_np,
    "clear": handle_clear,
    "remove": handle_remove,
    "move": handle_move,
    "shuffle": handle_shuffle,
}


def validate_handlers(commands: tuple[Command, ...], handlers: dict[str, Handler]) -> None:
    """Raise CommandRegistryError unless every command has exactly one handler."""
    names = {command.name for command in commands}
    missing = sorted(names - handlers.keys())
    unknown = sorted(handlers.keys() - names)
    if missing or unknown:
        raise CommandRegistryError(
            f"command table mismatch: missing handlers {missing}, unknown handlers {unknown}"
        )


class CommandDispatcher:
    """Routes a named command from a room to its handler and words the reply."""

    def __init__(
        self,
        manager: SessionManager,
        messages,
        handlers: dict[str, Handler] | None = None,
        commands: tuple[Command, ...] = COMMANDS,
    ) -> None:
        self.manager = manager
        self.messages = messages
        self.commands = {command.name: command for command in commands}
        self.handlers = dict(HANDLERS if handlers is None else handlers)
        validate_handlers(commands, self.handlers)

    def command(self, name: str) -> Command:
        return self.commands[name]

    async def dispatch(self, name: str, room: RoomContext, args: dict | None = None) -> Reply:
        args = {key: value for key, value in (args or {}).items() if value is not None}
        handler = self.handlers.get(name)
        if handler is None:
            raise CommandRegistryError(f"no handler for /{name}")

        if room.voice_channel_id is None:
            return Reply(self.messages.msg("not_in_vc"), ephemeral=True)
        if not self.manager.same_room(room):
            return Reply(self.messages.msg("wrong_vc"), ephemeral=True)

        logger.info(
            f"{room.user_name} ran /{name} {args or ''} "
            f"in {room.guild_name} #{room.voice_channel_name}"
        )
        try:
            return Reply(await handler(self.manager, room, args, self.messages))
        except RiptideError as e:
            if isinstance(e, _QUIET_ERRORS):
                logger.debug(f"/{name} refused: {e}")
            else:
                logger.warning(f"/{name} failed: {e}")
            return Reply(self._error_text(e), ephemeral=True)
        except Exception:
            logger.opt(exception=True).error(f"/{name} failed unexpectedly")
            return Reply(self.messages.msg("error_generic"), ephemeral=True)

    def _error_text(self, error: RiptideError) -> str:
        if error.message_key is None:
            return self.messages.msg("error_generic")
        return self.messages.msg(error.message_key, **error.details)
