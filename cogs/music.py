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

"""Music playback commands for Riptide."""

from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.errors import CommandRegistryError
from core.manager import SessionManager
from core.session import RoomContext
from handlers.dispatch import COMMAND_DESCRIPTIONS, CommandDispatcher
from systems.voice_manager import count_listeners
from utils.response import ResponseMixin

TRACK_HELP = "search term, playlist name or link to an Ogg file"


class Music(ResponseMixin, commands.Cog):
    """Slash command surface. Each command is a thin call into the dispatcher."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.dispatcher: CommandDispatcher = bot.dispatcher
        self.sessions: SessionManager = bot.sessions
        self._check_surface()

    def _check_surface(self) -> None:
        """Every declared command must be exposed as a slash command and vice versa."""
        exposed = {command.name for command in self.get_app_commands()}
        declared = set(COMMAND_DESCRIPTIONS)
        if exposed != declared:
            raise CommandRegistryError(
                f"slash commands out of sync: missing {sorted(declared - exposed)}, "
                f"undeclared {sorted(exposed - declared)}"
            )

    async def cog_unload(self) -> None:
        await self.sessions.shutdown()

    @staticmethod
    def room_context(interaction: discord.Interaction) -> RoomContext:
        voice = getattr(interaction.user, "voice", None)
        channel = voice.channel if voice else None
        return RoomContext(
            guild_id=interaction.guild_id,
            voice_channel_id=channel.id if channel else None,
            text_channel_id=interaction.channel_id,
            guild_name=interaction.guild.name if interaction.guild else "",
            voice_channel_name=channel.name if channel else "",
            user_name=interaction.user.display_name,
        )

    async def run(self, interaction: discord.Interaction, name: str, **args) -> None:
        room = self.room_context(interaction)
        if self.dispatcher.command(name).deferred and room.voice_channel_id is not None:
            await interaction.response.defer(thinking=True)
        reply = await self.dispatcher.dispatch(name, room, args)
        await self.respond(interaction, reply.text, ephemeral=reply.ephemeral)

    @app_commands.command(name="join", description=COMMAND_DESCRIPTIONS["join"])
    @app_commands.guild_only()
    async def join(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "join")

    @app_commands.command(name="leave", description=COMMAND_DESCRIPTIONS["leave"])
    @app_commands.guild_only()
    async def leave(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "leave")

    @app_commands.command(name="play", description=COMMAND_DESCRIPTIONS["play"])
    @app_commands.guild_only()
    @app_commands.describe(track=TRACK_HELP)
    async def play(self, interaction: discord.Interaction, track: str) -> None:
        await self.run(interaction, "play", track=track)

    @app_commands.command(name="playnext", description=COMMAND_DESCRIPTIONS["playnext"])
    @app_commands.guild_only()
    @app_commands.describe(track=TRACK_HELP)
    async def playnext(self, interaction: discord.Interaction, track: str) -> None:
        await self.run(interaction, "playnext", track=track)

    @app_commands.command(name="skip", description=COMMAND_DESCRIPTIONS["skip"])
    @app_commands.guild_only()
    async def skip(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "skip")

    @app_commands.command(name="pause", description=COMMAND_DESCRIPTIONS["pause"])
    @app_commands.guild_only()
    async def pause(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "pause")

    @app_commands.command(name="resume", description=COMMAND_DESCRIPTIONS["resume"])
    @app_commands.guild_only()
    async def resume(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "resume")

    @app_commands.command(name="seek", description=COMMAND_DESCRIPTIONS["seek"])
    @app_commands.guild_only()
    @app_commands.describe(time="time like 1:23, 01:02:03 or 90")
    async def seek(self, interaction: discord.Interaction, time: str) -> None:
        await self.run(interaction, "seek", time=time)

    @app_commands.command(name="loop", description=COMMAND_DESCRIPTIONS["loop"])
    @app_commands.guild_only()
    async def loop(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "loop")

    @app_commands.command(name="queue", description=COMMAND_DESCRIPTIONS["queue"])
    @app_commands.guild_only()
    @app_commands.describe(page="page of the queue")
    async def queue(self, interaction: discord.Interaction, page: Optional[app_commands.Range[int, 1]] = None) -> None:
        await self.run(interaction, "queue", page=page)

    @app_commands.command(name="np", description=COMMAND_DESCRIPTIONS["np"])
    @app_commands.guild_only()
    async def now_playing(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "np")

    @app_commands.command(name="clear", description=COMMAND_DESCRIPTIONS["clear"])
    @app_commands.guild_only()
    async def clear(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "clear")

    @app_commands.command(name="remove", description=COMMAND_DESCRIPTIONS["remove"])
    @app_commands.guild_only()
    @app_commands.describe(position="position of the track", end="last position of a range to remove")
    async def remove(
        self,
        interaction: discord.Interaction,
        position: app_commands.Range[int, 1],
        end: Optional[app_commands.Range[int, 1]] = None,
    ) -> None:
        await self.run(interaction, "remove", position=position, end=end)

    @app_commands.command(name="move", description=COMMAND_DESCRIPTIONS["move"])
    @app_commands.guild_only()
    @app_commands.rename(source="from", target="to")
    @app_commands.describe(source="position of the track", target="new position of the track")
    async def move(
        self,
        interaction: discord.Interaction,
        source: app_commands.Range[int, 1],
        target: app_commands.Range[int, 1],
    ) -> None:
        await self.run(interaction, "move", **{"from": source, "to": target})

    @app_commands.command(name="shuffle", description=COMMAND_DESCRIPTIONS["shuffle"])
    @app_commands.guild_only()
    async def shuffle(self, interaction: discord.Interaction) -> None:
        await self.run(interaction, "shuffle")

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Track listeners in the bot's channel and notice forced disconnects."""
        guild = member.guild

        if member.id == self.bot.user.id:
            if before.channel and not after.channel:
                logger.info(f"disconnected from #{before.channel.name}")
                await self.sessions.drop(guild.id)
            elif after.channel:
                self.sessions.record_occupancy(guild.id, after.channel.id, count_listeners(after.channel))
            return

        if member.bot:
            return
        vc = guild.voice_client
        channel = getattr(vc, "channel", None)
        if channel is None:
            return
        if before.channel != channel and after.channel != channel:
            return
        self.sessions.record_occupancy(guild.id, channel.id, count_listeners(channel))


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
