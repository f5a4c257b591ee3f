# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
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

"""Settings and cache maintenance commands for Encore."""

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.exceptions import CacheIOError
from core.player import MAX_VOLUME_PERCENT
from utils.permissions import require_admin
from utils.response import ResponseMixin


class Settings(ResponseMixin, commands.Cog):
    """Bot settings and maintenance."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @app_commands.command(name="volume", description="set playback volume")
    @app_commands.guild_only()
    @app_commands.describe(level=f"volume level from 0 to {MAX_VOLUME_PERCENT}")
    async def volume(
        self,
        interaction: discord.Interaction,
        level: app_commands.Range[int, 0, MAX_VOLUME_PERCENT]
    ) -> None:
        """Set volume level. Persists per server. VC check only when the room is connected."""
        player = self.bot.registry.get(interaction.guild_id)
        if player:
            channel = getattr(player.sink, "channel", None) if player.sink else None
            if not await self._check_same_vc(interaction, channel):
                return
            await player.set_volume(level)

        self.bot.state_manager.set_volume(interaction.guild_id, level)
        await self.bot.state_manager.save()

        logger.info(f"{interaction.user.display_name} set volume to {level}")
        await self.respond(interaction, "volume_set", level=level)

    @app_commands.command(name="clearcache", description="delete every cached download")
    @app_commands.guild_only()
    @require_admin("clearcache")
    async def clear_cache(self, interaction: discord.Interaction) -> None:
        """Empty the artifact cache. Files a room is playing are picked up
        again on the next request."""
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            count = await self.bot.artifact_cache.clear()
        except CacheIOError:
            logger.opt(exception=True).error("cache clear failed")
            await self.respond(interaction, "cache_clear_failed")
            return

        logger.info(f"{interaction.user.display_name} cleared the cache ({count} files)")
        await self.respond(interaction, "cache_cleared", count=count)

    @app_commands.command(name="cachestats", description="show cache usage")
    @app_commands.guild_only()
    @require_admin("cachestats")
    async def cache_stats(self, interaction: discord.Interaction) -> None:
        cache = self.bot.artifact_cache
        await self.respond(
            interaction, "cache_stats",
            count=len(cache),
            size_mb=cache.total_size / (1024 * 1024),
            max_mb=cache.max_size_bytes // (1024 * 1024),
        )


async def setup(bot: commands.Bot) -> None:
    """Load the Settings cog."""
    await bot.add_cog(Settings(bot))
