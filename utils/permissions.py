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

"""Permission checks for admin-only commands."""

import functools
from typing import Any, Callable

import discord
from loguru import logger


def is_admin(member) -> bool:
    """Administrator or Manage Server permission in the current guild."""
    if not isinstance(member, discord.Member):
        return False
    perms = member.guild_permissions
    return perms.administrator or perms.manage_guild


def require_admin(command_name: str) -> Callable:
    """Decorator restricting a slash command to server admins.

    If denied, sends the "no_permission" message and returns early.

    Usage:
        @require_admin("clearcache")
        async def clear_cache(self, interaction):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, interaction: discord.Interaction, *args, **kwargs) -> Any:
            if not is_admin(interaction.user):
                logger.debug(f"{command_name} denied for {interaction.user.display_name} (not admin)")
                config = getattr(self.bot, 'config_manager', None)
                message = config.msg("no_permission") if config else "that one's for server admins"
                delete_after = None
                if config:
                    timeout = config.section("ui").get("brief_auto_delete", 10)
                    delete_after = timeout if timeout > 0 else None
                await interaction.response.send_message(message, ephemeral=True, delete_after=delete_after)
                return

            return await func(self, interaction, *args, **kwargs)
        return wrapper
    return decorator
