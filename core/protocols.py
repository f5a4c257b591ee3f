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

"""Interfaces for the external collaborators of the core.

Concrete implementations live in systems/ (yt-dlp, ffmpeg) and
core/playback.py (voice). Tests substitute fakes that satisfy these
protocols structurally.
"""

from pathlib import Path
from typing import Callable, Protocol

from core.track import MediaDescriptor


class Resolver(Protocol):
    async def resolve(self, query: str, *, search: bool) -> MediaDescriptor:
        """Resolve a URL or search text to a descriptor.

        Raises:
            ResolutionError: No usable result.
        """
        ...


class Downloader(Protocol):
    async def download(self, source_ref: str, output: Path) -> None:
        """Download source_ref as audio into output.

        Raises:
            DownloadError: Download failed or output missing afterwards.
        """
        ...


class Transcoder(Protocol):
    async def transcode(self, source: Path, output: Path, chain: str) -> None:
        """Apply an ffmpeg filter chain to source, writing output.

        Raises:
            FilterError: Non-zero exit or missing output.
        """
        ...


class PlaybackSink(Protocol):
    """Audio output for one room.

    on_end is called exactly once per play() call, from any thread, with
    the playback error or None.
    """

    def is_connected(self) -> bool: ...

    def play(self, path: Path, volume: float, on_end: Callable[[Exception | None], None]) -> None:
        """Start streaming path. Raises SinkError if playback cannot start."""
        ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    def set_volume(self, volume: float) -> None: ...

    async def disconnect(self) -> None: ...
