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
Riptide Music Bot
========================================================

Streams Ogg/Opus tracks from a local library or plain links into Discord
voice channels, one independent session per guild.
"""

import asyncio
import os

import aiohttp
import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from core.manager import SessionManager
from core.session import SessionSettings
from handlers.dispatch import CommandDispatcher
from systems.resolver import TrackResolver
from systems.voice_manager import ChannelNotifier, DiscordVoiceTransport
from utils.config import ConfigManager, default_config_path, default_music_path, validate_configuration
from utils.library import MusicLibrary
from utils.log import setup_logging

load_dotenv()


class Riptide(commands.Bot):
    """Bot that owns the shared services every cog uses."""

    def __init__(self, config_manager: ConfigManager, library: MusicLibrary) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.members = True
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
        )
        self.config_manager = config_manager
        self.library = library
        self.http_session: aiohttp.ClientSession | None = None
        self.resolver: TrackResolver | None = None
        self.sessions: SessionManager | None = None
        self.dispatcher: CommandDispatcher | None = None

    async def setup_hook(self) -> None:
        self.http_session = aiohttp.ClientSession()
        self.resolver = TrackResolver.from_config(self.library, self.http_session, self.config_manager)

        settings = SessionSettings.from_config(self.config_manager)
        self.sessions = SessionManager(
            lambda room, log: DiscordVoiceTransport(self, room.guild_id, settings.stuck_threshold, log),
            self.resolver,
            ChannelNotifier(self),
            self.config_manager,
            settings=settings,
        )
        self.dispatcher = CommandDispatcher(self.sessions, self.config_manager)

        await self.load_extension("cogs.music")

        guild_id = os.getenv("GUILD_ID")
        if guild_id:
            guild = discord.Object(id=int(guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
        else:
            synced = await self.tree.sync()
        logger.debug(f"synced {len(synced)} slash commands")

    async def on_ready(self) -> None:
        logger.log("NOTICE", f"logged in as {self.user} in {len(self.guilds)} guild(s)")

    async def close(self) -> None:
        if self.sessions is not None:
            await self.sessions.shutdown()
        if self.http_session is not None:
            await self.http_session.close()
        await super().close()


async def main() -> None:
    setup_logging(os.getenv("LOG_LEVEL", "verbose").lower())
    await validate_configuration()

    config_manager = ConfigManager(default_config_path())
    await config_manager.load()
    setup_logging(config_manager.get("logging", {}).get("level", "verbose"))

    library = MusicLibrary(default_music_path())
    await library.scan()

    bot = Riptide(config_manager, library)
    async with bot:
        await bot.start(os.getenv("DISCORD_TOKEN").strip())


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.log("NOTICE", "shutting down")


if __name__ == "__main__":
    run()
