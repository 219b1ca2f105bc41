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
Voice Transport

Feeds Opus packets from the decoder into a discord.py voice client, and
posts channel notices for playback sessions.

discord.py pulls audio from an AudioSource on its player thread every 20ms.
PacketSource bridges that thread to the event loop with a small bounded
queue, so a full queue is the backpressure the decoder waits on.
"""

import asyncio
import queue
import threading
from time import monotonic as _now

import discord
from discord.ext import commands
from loguru import logger

from core.errors import (
    TrackExceptionError,
    TrackStuckError,
    TransportClosedError,
    VoiceConnectError,
)
from core.playback import CancelScope

FRAME_LENGTH = 0.02  # seconds of audio per Opus frame
SILENCE_FRAME = b"\xf8\xff\xfe"
BUFFERED_FRAMES = 50
CONNECT_TIMEOUT = 30.0


def count_listeners(channel) -> int:
    """Members in ``channel`` that are not bots."""
    if channel is None:
        return 0
    return sum(1 for member in channel.members if not member.bot)


class PacketSource(discord.AudioSource):
    """AudioSource that plays packets pushed from the event loop.

    Returns silence while the queue is empty (decoder paused or slow) and an
    empty read, which ends playback, once finished and drained.
    """

    def __init__(self, capacity: int = BUFFERED_FRAMES) -> None:
        self._packets: queue.Queue[bytes] = queue.Queue(maxsize=capacity)
        self._finished = threading.Event()
        self.last_read = _now()

    def is_opus(self) -> bool:
        return True

    def push(self, packet: bytes) -> bool:
        try:
            self._packets.put_nowait(packet)
            return True
        except queue.Full:
            return False

    def finish(self) -> None:
        self._finished.set()

    def read(self) -> bytes:
        self.last_read = _now()
        try:
            return self._packets.get_nowait()
        except queue.Empty:
            if self._finished.is_set():
                return b""
            return SILENCE_FRAME


class OpusPacketStream:
    """One track's worth of packets flowing into a voice client.

    Use as an async context manager. Leaving normally waits for the player to
    drain; leaving with an error or a cancelled scope stops the player.
    """

    def __init__(self, voice: discord.VoiceClient, scope: CancelScope, stuck_threshold: float = 10.0, log=None) -> None:
        self.log = log or logger
        self._voice = voice
        self._scope = scope
        self._stuck_threshold = stuck_threshold
        self._loop = asyncio.get_running_loop()
        self._source = PacketSource()
        self._done = asyncio.Event()
        self._error: Exception | None = None

    async def __aenter__(self) -> "OpusPacketStream":
        if not self._voice.is_connected():
            raise TransportClosedError("voice client is not connected")
        if self._voice.is_playing():
            self._voice.stop()
        try:
            self._voice.play(self._source, after=self._after)
        except discord.ClientException as e:
            raise TransportClosedError(f"player refused the stream: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None or self._scope.cancelled:
            self._voice.stop()
            return
        self._source.finish()
        while not self._done.is_set():
            self._check_alive()
            try:
                await asyncio.wait_for(self._done.wait(), timeout=0.25)
            except asyncio.TimeoutError:
                pass
        if self._error is not None:
            raise self._error

    def _after(self, error: Exception | None) -> None:
        # Runs on the player thread
        self._loop.call_soon_threadsafe(self._finished, error)

    def _finished(self, error: Exception | None) -> None:
        if error is not None and self._error is None:
            self._error = TrackExceptionError(f"player failed: {error}")
        self._done.set()

    def _check_alive(self) -> None:
        if self._error is not None:
            raise self._error
        if not self._voice.is_connected():
            raise TransportClosedError("voice connection closed")
        if _now() - self._source.last_read > self._stuck_threshold:
            raise TrackStuckError(f"player idle for over {self._stuck_threshold:.0f}s")

    async def write(self, packet: bytes) -> None:
        # Empty reads end discord.py playback, so zero-length packets are dropped here
        if not packet:
            return
        while not self._source.push(packet):
            if self._scope.cancelled:
                return
            self._check_alive()
            if self._done.is_set():
                raise TransportClosedError("player stopped mid-track")
            await asyncio.sleep(FRAME_LENGTH)


class DiscordVoiceTransport:
    """Voice connection of one guild."""

    def __init__(self, bot: commands.Bot, guild_id: int, stuck_threshold: float = 10.0, log=None) -> None:
        self.bot = bot
        self.guild_id = guild_id
        self.stuck_threshold = stuck_threshold
        self.log = log or logger

    @property
    def voice_client(self) -> discord.VoiceClient | None:
        guild = self.bot.get_guild(self.guild_id)
        vc = guild.voice_client if guild else None
        return vc if isinstance(vc, discord.VoiceClient) else None

    @property
    def channel_id(self) -> int | None:
        vc = self.voice_client
        return vc.channel.id if vc and vc.channel else None

    def is_connected(self) -> bool:
        vc = self.voice_client
        return vc is not None and vc.is_connected()

    async def connect(self, channel_id: int) -> None:
        channel = self.bot.get_channel(channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise VoiceConnectError(f"channel {channel_id} is not a voice channel")

        vc = self.voice_client
        try:
            if vc is not None and vc.is_connected():
                await vc.move_to(channel)
                self.log.info(f"moved to #{channel.name}")
            else:
                await channel.connect(timeout=CONNECT_TIMEOUT, self_deaf=True)
                self.log.info(f"joined #{channel.name}")
        except (asyncio.TimeoutError, discord.ClientException) as e:
            raise VoiceConnectError(f"cannot join #{channel.name}: {e}") from e

    async def disconnect(self) -> None:
        vc = self.voice_client
        if vc is None:
            return
        await vc.disconnect(force=True)
        self.log.info("left voice")

    def stream(self, scope: CancelScope) -> OpusPacketStream:
        vc = self.voice_client
        if vc is None:
            raise TransportClosedError("not connected to voice")
        return OpusPacketStream(vc, scope, self.stuck_threshold, self.log)


class ChannelNotifier:
    """Posts session notices to a guild text channel."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    async def send(self, channel_id: int | None, text: str) -> None:
        if channel_id is None:
            return
        channel = self.bot.get_channel(channel_id)
        if channel is None or not hasattr(channel, "send"):
            return
        await channel.send(text)
