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

"""Response utilities for Discord interactions.

Provides ResponseMixin for consistent reply handling in cogs.
"""

import asyncio

import discord

# Track fire-and-forget cleanup tasks to prevent GC warnings
_cleanup_tasks: set[asyncio.Task] = set()

# Discord message content limit is 2000
MESSAGE_MAX = 1990


def truncate_for_display(text: str, max_length: int) -> str:
    """Truncate text with ellipsis for Discord display."""
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


class ResponseMixin:
    """Mixin providing standardized interaction responses for cogs.

    Requirements:
        self.bot must have a config_manager with msg(key, **kwargs) and
        get(key, default).
    """

    def msg(self, key: str, **kwargs) -> str:
        return self.bot.config_manager.msg(key, **kwargs)

    async def _delete_response(self, interaction: discord.Interaction, delay: float) -> None:
        """Delete interaction response after delay (for followup path)."""
        try:
            await asyncio.sleep(delay)
            await interaction.delete_original_response()
        except asyncio.CancelledError:
            pass  # Shutdown during wait - acceptable
        except discord.HTTPException:
            pass  # Already gone

    async def respond(self, interaction: discord.Interaction, text: str, ephemeral: bool = False) -> None:
        """Reply to an interaction, whether or not it was deferred.

        Ephemeral replies are removed after ui.brief_auto_delete seconds.
        """
        text = truncate_for_display(text, MESSAGE_MAX)

        ui_config = self.bot.config_manager.get("ui", {})
        timeout = ui_config.get("brief_auto_delete", 10)
        delete_after = timeout if ephemeral and timeout > 0 else None

        if not interaction.response.is_done():
            await interaction.response.send_message(text, ephemeral=ephemeral, delete_after=delete_after)
        else:
            await interaction.followup.send(text, ephemeral=ephemeral)
            if delete_after:
                task = asyncio.create_task(self._delete_response(interaction, delete_after))
                _cleanup_tasks.add(task)
                task.add_done_callback(_cleanup_tasks.discard)
