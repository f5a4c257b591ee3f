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
Playback Sessions and Voice Sink

PlaybackSession scopes end-of-track callbacks to one play attempt.
VoiceSink adapts a discord.py VoiceClient to the PlaybackSink protocol.
"""

from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from time import monotonic as _now
from typing import Callable

import discord
from loguru import logger

from core.exceptions import SinkError

_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes callbacks to a specific play attempt.

    Each playback session receives a unique ``id`` so asynchronous callbacks can
    verify that they are still acting on the most recent request. The
    ``track_id`` is stored for logging, while ``started_at`` records when the
    attempt began. The ``cancelled`` flag is set when a skip, stop or filter
    restart supersedes the session, so the stale end callback exits without
    touching room state.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    track_id: int | None = None
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        """Mark the session as cancelled so callbacks know to exit early."""
        self.cancelled = True


class VoiceSink:
    """PlaybackSink backed by a discord.py VoiceClient.

    Each play() builds a fresh FFmpegPCMAudio wrapped in PCMVolumeTransformer
    (audio sources are single-use). Volume is a float where 1.0 is 100%.

    The on_end callback passed to play() is invoked from discord.py's audio
    thread. Callers must marshal back to the event loop themselves.
    """

    def __init__(self, voice_client: discord.VoiceClient) -> None:
        self.voice_client = voice_client
        self._source: discord.PCMVolumeTransformer | None = None

    @property
    def channel(self):
        return self.voice_client.channel

    def is_connected(self) -> bool:
        return self.voice_client.is_connected()

    def play(self, path: Path, volume: float, on_end: Callable[[Exception | None], None]) -> None:
        if not path.exists():
            raise SinkError(f"audio file missing: {path.name}")
        if not self.voice_client.is_connected():
            raise SinkError("voice client not connected")

        try:
            source = discord.PCMVolumeTransformer(discord.FFmpegPCMAudio(str(path)), volume=volume)
        except discord.ClientException as e:
            raise SinkError(f"could not open {path.name}: {e}", hint="is ffmpeg installed?") from e

        def after(error: Exception | None) -> None:
            # Runs in discord.py's audio thread
            if error:
                logger.error(f"playback error on {path.name}: {error}")
            on_end(error)

        try:
            self.voice_client.play(source, after=after)
        except (discord.ClientException, OSError) as e:
            source.cleanup()
            raise SinkError(f"could not start {path.name}: {e}") from e
        self._source = source

    def pause(self) -> None:
        if self.voice_client.is_playing():
            self.voice_client.pause()

    def resume(self) -> None:
        if self.voice_client.is_paused():
            self.voice_client.resume()

    def stop(self) -> None:
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()
        self._source = None

    def set_volume(self, volume: float) -> None:
        if self._source is not None:
            self._source.volume = volume

    async def disconnect(self) -> None:
        try:
            await self.voice_client.disconnect(force=True)
        except (discord.HTTPException, discord.ClientException) as e:
            logger.debug(f"voice disconnect error (continuing): {e}")
