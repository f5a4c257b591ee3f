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

"""Music playback commands for Encore."""

import asyncio

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.exceptions import (
    AcquisitionError,
    DownloadError,
    QueueFullError,
    ResolutionError,
    RoomClosedError,
    SinkError,
)
from core.filters import AudioFilter, filter_names
from core.playback import VoiceSink
from core.player import ConnectCallback, RoomPlayer
from core.track import format_duration
from utils.response import (
    CHOICE_NAME_MAX,
    QUEUE_TITLE_MAX,
    ResponseMixin,
    display_title,
    truncate_for_display,
)
from utils.search import autocomplete_filters, suggest_filter


class Music(ResponseMixin, commands.Cog):
    """Core music playback functionality."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    async def cog_unload(self) -> None:
        """Stop every room when the cog is unloaded."""
        await self.bot.registry.stop_all()

    # =========================================================================
    # Helpers
    # =========================================================================

    def get_room(self, guild_id: int) -> RoomPlayer | None:
        return self.bot.registry.get(guild_id)

    @staticmethod
    def _room_channel(player: RoomPlayer | None):
        """Voice channel the room is playing in, or None if not connected."""
        if player is None or player.sink is None:
            return None
        return getattr(player.sink, "channel", None)

    def _connector(self, interaction: discord.Interaction) -> ConnectCallback:
        """Build the connect callback for RoomPlayer.enqueue()."""
        guild = interaction.guild
        channel = interaction.user.voice.channel

        async def connect() -> VoiceSink:
            existing = guild.voice_client
            try:
                if existing and existing.is_connected():
                    if existing.channel != channel:
                        await existing.move_to(channel)
                    return VoiceSink(existing)
                voice_client = await channel.connect(self_deaf=True, timeout=10.0)
            except (asyncio.TimeoutError, discord.DiscordException) as e:
                raise SinkError(f"could not join #{channel.name}: {e}") from e
            logger.info(f"summoned by {interaction.user.display_name} to #{channel.name}")
            return VoiceSink(voice_client)

        return connect

    async def _guard_room(self, interaction: discord.Interaction, *, require_current: bool = True) -> RoomPlayer | None:
        """Fetch the room and check the user shares its voice channel.

        Responds and returns None if there is nothing to act on.
        """
        player = self.get_room(interaction.guild_id)
        if player is None or (require_current and player.current is None):
            await self.respond(interaction, "nothing_playing")
            return None
        if not await self._check_same_vc(interaction, self._room_channel(player)):
            return None
        return player

    # =========================================================================
    # Playback
    # =========================================================================

    @app_commands.command(name="play", description="play a song from a link or search")
    @app_commands.guild_only()
    @app_commands.describe(query="youtube link or search words")
    async def play(self, interaction: discord.Interaction, query: str) -> None:
        """Acquire a track and queue it, joining the caller's voice channel if idle.

        Acquisition runs outside the room lock. If the room is stopped while
        the download is in flight, the result is discarded.
        """
        guild_id = interaction.guild_id
        existing = self.get_room(guild_id)
        if not await self._check_same_vc(interaction, self._room_channel(existing)):
            return

        channel = interaction.user.voice.channel
        permissions = channel.permissions_for(interaction.guild.me)
        if not permissions.connect or not permissions.speak:
            await self.respond(interaction, "need_vc_permissions")
            return

        await interaction.response.defer(ephemeral=True, thinking=True)

        default_volume = self.bot.config_manager.get("default_volume", 100)
        shown_query = display_title(query, 100)

        async def on_progress(stage: str) -> None:
            await self.progress(interaction, f"acquire_{stage}", query=shown_query)

        with self.bot.registry.claim(
            guild_id,
            volume_percent=self.bot.state_manager.get_volume(guild_id, default_volume),
        ) as player:
            try:
                track = await self.bot.pipeline.acquire(
                    query,
                    player.active_filters,
                    requested_by=interaction.user.display_name,
                    progress=on_progress,
                )
            except ResolutionError as e:
                logger.info(f"no result for {query!r}: {e}")
                await self.respond(interaction, "song_not_found", query=shown_query)
                return
            except DownloadError as e:
                logger.warning(f"download failed for {query!r}: {e}")
                await self.respond(interaction, "download_failed")
                return

            try:
                started = await player.enqueue(track, self._connector(interaction))
            except QueueFullError:
                player.release(track)
                await self.respond(interaction, "queue_full", max=player.max_queue_size)
                return
            except RoomClosedError:
                player.release(track)
                await self.respond(interaction, "room_closed")
                return
            except SinkError as e:
                logger.error(f"voice connection failed: {e}")
                player.release(track)
                await self.respond(interaction, "failed_join_vc")
                return

        title = display_title(track.title, 200)
        logger.info(f"{interaction.user.display_name} queued {track.title!r}")
        if started:
            await self.respond(interaction, "now_playing", title=title, duration=track.display_duration)
        else:
            await self.respond(
                interaction, "queued",
                title=title, duration=track.display_duration, position=len(player.queue) - 1,
            )

    @app_commands.command(name="skip", description="skip to the next track")
    @app_commands.guild_only()
    async def skip(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction)
        if not player:
            return

        if await player.skip():
            logger.info(f"{interaction.user.display_name} skipped")
            await self.respond(interaction, "skipped")
        else:
            await self.respond(interaction, "nothing_playing")

    @app_commands.command(name="stop", description="stop playback, clear the queue and disconnect")
    @app_commands.guild_only()
    async def stop(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction, require_current=False)
        if not player:
            return

        await interaction.response.defer(ephemeral=True)
        await self.bot.registry.stop(interaction.guild_id)
        logger.info(f"stopped by {interaction.user.display_name}")
        await self.respond(interaction, "stopped")

    @app_commands.command(name="pause", description="pause playback")
    @app_commands.guild_only()
    async def pause(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction)
        if not player:
            return

        if await player.pause():
            logger.info(f"paused by {interaction.user.display_name}")
            await self.respond(interaction, "paused")
        else:
            await self.respond(interaction, "already_paused")

    @app_commands.command(name="resume", description="resume paused playback")
    @app_commands.guild_only()
    async def resume(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction)
        if not player:
            return

        if await player.resume():
            logger.info(f"resumed by {interaction.user.display_name}")
            await self.respond(interaction, "resumed")
        else:
            await self.respond(interaction, "not_paused")

    @app_commands.command(name="loop", description="toggle looping the queue")
    @app_commands.guild_only()
    async def loop(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction, require_current=False)
        if not player:
            return

        enabled = player.toggle_loop()
        await self.respond(interaction, "loop_on" if enabled else "loop_off")

    @app_commands.command(name="shuffle", description="shuffle the upcoming tracks")
    @app_commands.guild_only()
    async def shuffle(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction, require_current=False)
        if not player:
            return

        if len(player.upcoming) < 2:
            await self.respond(interaction, "nothing_to_shuffle")
            return

        count = await player.shuffle()
        logger.info(f"{interaction.user.display_name} shuffled {count} tracks")
        await self.respond(interaction, "shuffled", count=count)

    # =========================================================================
    # Info
    # =========================================================================

    def _status_line(self, player: RoomPlayer) -> str:
        loop = "loop on" if player.loop else "loop off"
        return f"{loop} · filters: {filter_names(player.active_filters)} · volume {player.volume_percent}%"

    @app_commands.command(name="queue", description="show the queue")
    @app_commands.guild_only()
    async def queue(self, interaction: discord.Interaction) -> None:
        player = self.get_room(interaction.guild_id)
        if player is None or not player.queue:
            await self.respond(interaction, "queue_empty")
            return

        display_size = self.bot.config_manager.get("queue_display_size", 15)
        lines = []
        current = player.current
        if current:
            lines.append(f"**now:** {display_title(current.title, QUEUE_TITLE_MAX)} ({current.display_duration})")

        upcoming = player.upcoming
        for i, track in enumerate(upcoming[:display_size], start=1):
            lines.append(f"`{i}.` {display_title(track.title, QUEUE_TITLE_MAX)} ({track.display_duration})")
        if len(upcoming) > display_size:
            lines.append(f"...and {len(upcoming) - display_size} more")

        total = sum(t.duration for t in player.queue)
        embed = discord.Embed(
            title=f"queue · {len(player.queue)} tracks · {format_duration(total)}",
            description="\n".join(lines),
            color=self.bot.config_manager.get("embed_color"),
        )
        embed.set_footer(text=self._status_line(player))
        await self.send_embed(interaction, embed)

    @app_commands.command(name="np", description="show what's playing")
    @app_commands.guild_only()
    async def now_playing(self, interaction: discord.Interaction) -> None:
        player = self.get_room(interaction.guild_id)
        track = player.current if player else None
        if track is None:
            await self.respond(interaction, "nothing_playing")
            return

        embed = discord.Embed(color=self.bot.config_manager.get("embed_color"))
        embed.add_field(name="song", value=f"[{display_title(track.title, 200)}]({track.source_ref})", inline=False)
        embed.add_field(name="length", value=track.display_duration, inline=True)
        if track.requested_by:
            embed.add_field(name="requested by", value=display_title(track.requested_by, 100), inline=True)
        embed.add_field(name="status", value=player.status.value, inline=True)
        embed.add_field(name="up next", value=str(len(player.upcoming)), inline=True)
        embed.set_footer(text=self._status_line(player))
        await self.send_embed(interaction, embed)

    # =========================================================================
    # Filters
    # =========================================================================

    async def filter_autocomplete(
        self,
        interaction: discord.Interaction,
        current: str
    ) -> list[app_commands.Choice[str]]:
        """Fuzzy-match filter names and descriptions."""
        return [
            app_commands.Choice(
                name=truncate_for_display(f"{f.value} - {f.description}", CHOICE_NAME_MAX),
                value=f.value,
            )
            for f in autocomplete_filters(current)
        ]

    @app_commands.command(name="filter", description="apply an audio filter to the current track")
    @app_commands.guild_only()
    @app_commands.describe(name="filter to add (see /filters)")
    @app_commands.autocomplete(name=filter_autocomplete)
    async def filter(self, interaction: discord.Interaction, name: str) -> None:
        """Add a filter and restart the current track with it.

        With nothing playing the filter is kept for the next track.
        """
        audio_filter = AudioFilter.from_name(name)
        if audio_filter is None:
            shown = truncate_for_display(name, 50)
            if suggestion := suggest_filter(name):
                await self.respond(interaction, "filter_unknown_suggest", name=shown, suggestion=suggestion.value)
            else:
                await self.respond(interaction, "filter_unknown", name=shown)
            return

        player = await self._guard_room(interaction, require_current=False)
        if not player:
            return

        if audio_filter in player.active_filters:
            await self.respond(interaction, "filter_already_active", name=audio_filter.value)
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            track = await player.apply_filter(audio_filter, self.bot.pipeline)
        except AcquisitionError as e:
            logger.warning(f"could not re-acquire for filter {audio_filter.value}: {e}")
            await self.respond(interaction, "filter_reacquire_failed")
            return
        except RoomClosedError:
            await self.respond(interaction, "room_closed")
            return

        logger.info(f"{interaction.user.display_name} applied filter {audio_filter.value}")
        if track is None:
            await self.respond(interaction, "filter_queued", name=audio_filter.value)
        elif not track.filtered:
            await self.respond(interaction, "filter_failed")
        else:
            await self.respond(interaction, "filter_applied", name=audio_filter.value)

    @app_commands.command(name="clearfilters", description="remove all audio filters")
    @app_commands.guild_only()
    async def clear_filters(self, interaction: discord.Interaction) -> None:
        player = await self._guard_room(interaction, require_current=False)
        if not player:
            return

        if not player.active_filters:
            await self.respond(interaction, "no_active_filters")
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            await player.clear_filters(self.bot.pipeline)
        except AcquisitionError as e:
            logger.warning(f"could not re-acquire without filters: {e}")
            await self.respond(interaction, "filter_reacquire_failed")
            return
        except RoomClosedError:
            await self.respond(interaction, "room_closed")
            return

        logger.info(f"{interaction.user.display_name} cleared filters")
        await self.respond(interaction, "filters_cleared")

    @app_commands.command(name="filters", description="list audio filters")
    @app_commands.guild_only()
    async def filters(self, interaction: discord.Interaction) -> None:
        player = self.get_room(interaction.guild_id)
        active = player.active_filters if player else []

        lines = []
        for audio_filter in AudioFilter:
            marker = " **(active)**" if audio_filter in active else ""
            lines.append(f"`{audio_filter.value}` - {audio_filter.description}{marker}")

        embed = discord.Embed(
            title="🎛️ filters",
            description="\n".join(lines),
            color=self.bot.config_manager.get("embed_color"),
        )
        embed.set_footer(text="/filter <name> to apply · /clearfilters to remove all")
        await self.send_embed(interaction, embed)

    # =========================================================================
    # Events
    # =========================================================================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Stop the room if the bot is disconnected from voice by someone else."""
        if member.id != self.bot.user.id:
            return
        if before.channel and not after.channel:
            player = self.get_room(member.guild.id)
            # sink is cleared before intentional disconnects
            if player and player.sink is not None:
                logger.info("disconnected from voice, stopping room")
                await self.bot.registry.stop(member.guild.id)
        elif before.channel != after.channel and after.channel:
            logger.info(f"moved to #{after.channel.name}")


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
