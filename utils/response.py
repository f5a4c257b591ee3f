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

"""Response utilities for Discord interactions.

Provides ResponseMixin for consistent message handling across cogs.
All cogs inherit from this mixin to get respond() and msg() helpers.
"""

import asyncio

import discord

# Track fire-and-forget cleanup tasks to prevent GC warnings
_cleanup_tasks: set[asyncio.Task] = set()


def escape_markdown(text: str) -> str:
    """Escape markdown characters that commonly appear in video titles.

    Use for: embed descriptions, embed field values, message content.
    Do NOT use for: autocomplete choices (plain text).
    """
    for char in ("\\", "*", "_", "`", "~", "|"):
        text = text.replace(char, "\\" + char)
    return text


# =============================================================================
# DISPLAY TRUNCATION
# =============================================================================
# Discord limits and safe truncation thresholds.
# Always truncate BEFORE escape_markdown (escaping can add characters).

QUEUE_TITLE_MAX = 60       # 50 items × ~75 chars/line stays under the 4096 description limit
CHOICE_NAME_MAX = 97       # app_commands.Choice.name (limit 100) - room for "..."
EMBED_FIELD_MAX = 1000     # embed field value (limit 1024) - room for "..." + escapes


def truncate_for_display(text: str, max_length: int) -> str:
    """Truncate text with ellipsis for Discord display.

    Always call BEFORE escape_markdown(). Escaping can add characters
    which would throw off length calculations.
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def display_title(text: str, max_length: int = EMBED_FIELD_MAX) -> str:
    """Truncate then escape, in that order."""
    return escape_markdown(truncate_for_display(text, max_length))


class ResponseMixin:
    """Mixin providing standardized interaction responses for cogs.

    Provides respond() which handles:
    - Per-message enable/disable from messages.yaml
    - Auto-deletion after configurable timeout
    - Both response and followup paths

    Requirements:
        self.bot must have a config_manager with:
        - msg(key, **kwargs) -> str
        - is_enabled(key) -> bool
        - get(key, default) -> value

    Usage:
        class MyCog(ResponseMixin, commands.Cog):
            async def my_command(self, interaction):
                await self.respond(interaction, "volume_set", level=80)
    """

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text from config."""
        return self.bot.config_manager.msg(key, **kwargs)

    def _timeout(self, name: str, default: int) -> float | None:
        timeout = self.bot.config_manager.section("ui").get(name, default)
        return timeout if timeout > 0 else None

    async def _delete_response(self, interaction: discord.Interaction, delay: float) -> None:
        """Delete interaction response after delay (for followup path).

        Silently handles cancellation (shutdown) and Discord errors.
        """
        try:
            await asyncio.sleep(delay)
            await interaction.delete_original_response()
        except asyncio.CancelledError:
            pass  # Shutdown during wait - acceptable
        except discord.HTTPException:
            pass

    def _schedule_delete(self, interaction: discord.Interaction, delay: float | None) -> None:
        if delay:
            task = asyncio.create_task(self._delete_response(interaction, delay))
            _cleanup_tasks.add(task)
            task.add_done_callback(_cleanup_tasks.discard)

    async def respond(self, interaction: discord.Interaction, key: str, **kwargs) -> None:
        """Send ephemeral message if enabled, otherwise acknowledge silently.

        If the interaction was deferred, the deferred response is edited
        instead of sending a followup, so progress messages get replaced.

        Config:
            messages.yaml - Per-message `enabled` flag
            settings.yaml - `ui.brief_auto_delete` (default 10s, 0 to disable)
        """
        if not self.bot.config_manager.is_enabled(key):
            # Silent acknowledgment - defer then delete
            if not interaction.response.is_done():
                await interaction.response.defer(ephemeral=True)
            try:
                await interaction.delete_original_response()
            except discord.NotFound:
                pass  # Already deleted or never created
            return

        text = self.msg(key, **kwargs)
        delete_after = self._timeout("brief_auto_delete", 10)

        if not interaction.response.is_done():
            # Response path - use native delete_after
            await interaction.response.send_message(text, ephemeral=True, delete_after=delete_after)
        else:
            # Deferred path - replace the placeholder, manual deletion via task
            await interaction.edit_original_response(content=text, embed=None)
            self._schedule_delete(interaction, delete_after)

    async def progress(self, interaction: discord.Interaction, key: str, **kwargs) -> None:
        """Edit a deferred response with a progress line. Never auto-deletes."""
        if not self.bot.config_manager.is_enabled(key):
            return
        try:
            await interaction.edit_original_response(content=self.msg(key, **kwargs))
        except discord.HTTPException:
            pass  # Progress is cosmetic

    async def send_embed(self, interaction: discord.Interaction, embed: discord.Embed) -> None:
        """Send an ephemeral embed that auto-deletes after ui.extended_auto_delete."""
        delete_after = self._timeout("extended_auto_delete", 90)
        if not interaction.response.is_done():
            await interaction.response.send_message(embed=embed, ephemeral=True, delete_after=delete_after)
        else:
            await interaction.edit_original_response(content=None, embed=embed)
            self._schedule_delete(interaction, delete_after)

    async def _check_same_vc(self, interaction: discord.Interaction, channel) -> bool:
        """Check user is in the bot's voice channel. Returns True if allowed.

        Sends not_in_vc or wrong_vc via respond() on denial. A room without
        a voice channel (idle, disconnected) only requires the user be in voice.
        """
        if not interaction.user.voice or not interaction.user.voice.channel:
            await self.respond(interaction, "not_in_vc")
            return False
        if channel is not None and interaction.user.voice.channel != channel:
            await self.respond(interaction, "wrong_vc", channel=channel.mention)
            return False
        return True
