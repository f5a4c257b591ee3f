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

"""
Encore Music Bot
========================================================
VERSION: 1.0.0
========================================================

A Discord music bot built on discord.py. Plays links and searches,
keeps downloaded audio in a local cache and applies ffmpeg filters.
"""

import asyncio
import logging
import os
import shutil
import signal
import sys
from pathlib import Path

import discord
from discord import app_commands
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

# Load environment variables before anything reads them
load_dotenv()

from core.acquisition import AcquisitionPipeline  # noqa: E402
from core.player import RoomRegistry  # noqa: E402
from systems.downloader import YtDlpDownloader  # noqa: E402
from systems.resolver import YtDlpResolver  # noqa: E402
from systems.transcoder import FfmpegTranscoder  # noqa: E402
from utils.artifact_cache import ArtifactCache  # noqa: E402
from utils.config import ConfigManager, resolve_paths, validate_configuration  # noqa: E402
from utils.query_cache import SECONDS_PER_DAY, QueryCache  # noqa: E402
from utils.state import StateManager  # noqa: E402

EXTENSIONS = ("cogs.music", "cogs.settings")

# =============================================================================
# LOGGING SETUP
# =============================================================================

# settings.yaml logging.level -> loguru level
LOG_LEVELS = {
    "minimal": "WARNING",
    "verbose": "INFO",
    "debug": "DEBUG",
}

# 4-character level names for aligned logs
LEVEL_NAMES = {
    "DEBUG": "DBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARN",
    "ERROR": "FAIL",
    "CRITICAL": "CRIT",
}


def _format(record) -> str:
    level = LEVEL_NAMES.get(record["level"].name, record["level"].name[:4])
    return f"[{{time:YYYY-MM-DD HH:mm:ss}}] [{level}] {{message}}\n{{exception}}"


class InterceptHandler(logging.Handler):
    """Route stdlib logging (discord.py, yt-dlp) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so loguru reports the right origin
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str = "verbose") -> None:
    """(Re)configure loguru. Library logs stay at WARNING unless level is debug."""
    loguru_level = LOG_LEVELS.get(level, "INFO")
    logger.remove()
    logger.add(sys.stderr, level=loguru_level, format=_format, backtrace=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    library_level = logging.DEBUG if level == "debug" else logging.WARNING
    for name in ("discord", "discord.player", "discord.voice_state"):
        logging.getLogger(name).setLevel(library_level)


def _reset_temp_dir(temp_dir: Path) -> int:
    """Delete leftover transient files from a previous run. Returns count removed."""
    temp_dir.mkdir(parents=True, exist_ok=True)
    removed = 0
    for path in temp_dir.iterdir():
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)
        removed += 1
    return removed

# =============================================================================
# BOT
# =============================================================================


class Encore(commands.Bot):
    """Bot with the acquisition pipeline and room registry attached.

    Attributes set in setup_hook():
        config_manager, state_manager: settings and persisted volumes
        artifact_cache, query_cache: download and search caches
        pipeline: AcquisitionPipeline shared by every room
        registry: RoomRegistry holding one RoomPlayer per server
    """

    def __init__(self, config_path: Path, data_path: Path) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents, help_command=None)

        self.config_path = config_path
        self.data_path = data_path
        self.config_manager = ConfigManager(config_path)
        self.state_manager = StateManager(data_path)
        self.artifact_cache: ArtifactCache | None = None
        self.query_cache: QueryCache | None = None
        self.pipeline: AcquisitionPipeline | None = None
        self.registry: RoomRegistry | None = None

        self.tree.error(self.on_app_command_error)

    async def setup_hook(self) -> None:
        """Load config and state, prepare caches, then register commands."""
        await self.config_manager.load()
        configure_logging(self.config_manager.section("logging")["level"])
        await self.state_manager.load()

        audio = self.config_manager.section("audio")
        cache = self.config_manager.section("cache")

        temp_dir = self.data_path / "temp"
        removed = await asyncio.to_thread(_reset_temp_dir, temp_dir)
        if removed:
            logger.debug(f"removed {removed} leftover temp files")

        self.artifact_cache = ArtifactCache(
            self.data_path / "cache",
            max_size_bytes=cache["max_size_mb"] * 1024 * 1024,
            max_age_seconds=cache["max_age_days"] * SECONDS_PER_DAY,
            max_song_duration=audio["max_song_duration"],
        )
        await self.artifact_cache.init()

        self.query_cache = QueryCache(
            self.data_path,
            ttl_days=self.config_manager.section("query_cache")["ttl_days"],
        )
        await self.query_cache.load()
        await self.query_cache.cleanup()

        self.pipeline = AcquisitionPipeline(
            YtDlpResolver(),
            YtDlpDownloader(bitrate=audio["bitrate"]),
            FfmpegTranscoder(bitrate=audio["bitrate"]),
            self.artifact_cache,
            self.query_cache,
            temp_dir,
            max_concurrent_jobs=self.config_manager.section("acquisition")["max_concurrent_jobs"],
        )
        self.registry = RoomRegistry(self.artifact_cache, max_queue_size=audio["max_queue_size"])

        for extension in EXTENSIONS:
            await self.load_extension(extension)
        logger.debug(f"loaded {len(EXTENSIONS)} extensions")

        await self._sync_commands()

    async def _sync_commands(self) -> None:
        """Sync to GUILD_ID when set (instant), globally otherwise (up to an hour)."""
        guild_id = os.getenv("GUILD_ID")
        if guild_id:
            try:
                guild = discord.Object(id=int(guild_id))
            except ValueError:
                logger.warning(f"GUILD_ID={guild_id!r} is not a number, syncing globally")
            else:
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
                logger.info(f"synced {len(synced)} commands to guild {guild_id}")
                return

        synced = await self.tree.sync()
        logger.info(f"synced {len(synced)} commands globally")

    async def on_ready(self) -> None:
        logger.info("Encore v1.0.0 - Copyright (C) 2026 grodz")
        logger.info("Licensed under GPL 3.0 - See LICENSE.md for details")
        logger.info(f"connected as {self.user}")
        logger.info(
            f"cache: {len(self.artifact_cache)} files, "
            f"{self.artifact_cache.total_size / (1024 * 1024):.1f} MB · "
            f"{len(self.query_cache)} remembered searches"
        )
        logger.info("Press Ctrl+C or send SIGTERM to shutdown")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        logger.info(f"removed from {guild.name}")
        if self.registry:
            await self.registry.stop(guild.id)

    async def on_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError
    ) -> None:
        """Log unexpected command failures and tell the user something broke."""
        if isinstance(error, app_commands.CheckFailure):
            logger.debug(f"check failed for /{interaction.command.name if interaction.command else '?'}: {error}")
            return

        original = getattr(error, "original", error)
        logger.opt(exception=original).error(
            f"command /{interaction.command.name if interaction.command else '?'} failed"
        )
        text = self.config_manager.msg("error_generic")
        try:
            if interaction.response.is_done():
                await interaction.edit_original_response(content=text, embed=None)
            else:
                await interaction.response.send_message(text, ephemeral=True)
        except discord.HTTPException:
            pass

    async def close(self) -> None:
        """Stop every room (disconnects voice, deletes transient files), then close."""
        if self.is_closed():
            return
        logger.info("shutting down...")
        if self.registry:
            await self.registry.stop_all()
        await self.state_manager.save()
        await super().close()
        logger.info("shutdown complete")

# =============================================================================
# MAIN
# =============================================================================


async def run_bot() -> None:
    config_path, data_path = resolve_paths()
    bot = Encore(config_path, data_path)

    # SIGINT = Ctrl+C, SIGTERM = docker / systemd stop
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(_shutdown(bot, s)))
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt handles Ctrl+C

    async with bot:
        await bot.start(os.environ["DISCORD_TOKEN"].strip())


async def _shutdown(bot: Encore, sig: signal.Signals) -> None:
    logger.info(f"received {sig.name}, shutting down...")
    await bot.close()


def main() -> None:
    configure_logging(os.getenv("LOG_LEVEL", "verbose").lower())
    validate_configuration()
    logger.info("starting bot...")
    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        logger.info("bot stopped by user (Ctrl+C)")
    except discord.LoginFailure:
        logger.critical("DISCORD_TOKEN was rejected by Discord - get a fresh one from the developer portal")
        sys.exit(1)


if __name__ == "__main__":
    main()
