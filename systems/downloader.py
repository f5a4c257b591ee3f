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

"""yt-dlp backed audio downloader."""

import asyncio
from pathlib import Path
from typing import Any

import yt_dlp
import yt_dlp.utils
from loguru import logger

from core.exceptions import DownloadError


class YtDlpDownloader:
    """Downloads the best audio stream and converts it to mp3.

    yt-dlp writes ``<stem>.<ext>`` first and the FFmpegExtractAudio
    postprocessor replaces it with ``<stem>.mp3``, so the output path
    must end in .mp3.
    """

    AUDIO_FORMAT = "bestaudio[acodec=opus]/bestaudio/best"

    def __init__(self, bitrate: str = "96K") -> None:
        # yt-dlp wants the number only ("96"), config carries "96K"
        self.quality = bitrate.upper().removesuffix("K")

    def _build_opts(self, output: Path) -> dict[str, Any]:
        return {
            "format": self.AUDIO_FORMAT,
            "outtmpl": str(output.with_suffix("")) + ".%(ext)s",
            "quiet": True,
            "no_warnings": True,
            "no_color": True,
            "noplaylist": True,
            "overwrites": True,
            "postprocessors": [{
                "key": "FFmpegExtractAudio",
                "preferredcodec": "mp3",
                "preferredquality": self.quality,
            }],
        }

    async def download(self, source_ref: str, output: Path) -> None:
        await asyncio.to_thread(self._download_sync, source_ref, output)

    def _download_sync(self, source_ref: str, output: Path) -> None:
        try:
            with yt_dlp.YoutubeDL(self._build_opts(output)) as ydl:
                ydl.download([source_ref])
        except yt_dlp.utils.DownloadError as exc:
            self._remove_leftovers(output)
            raise DownloadError(
                f"download failed for {source_ref}: {exc}",
                hint="the video may be private, region locked, or removed",
            ) from exc
        except Exception as exc:
            self._remove_leftovers(output)
            raise DownloadError(f"unexpected yt-dlp error downloading {source_ref}: {exc}") from exc

        if not output.exists():
            self._remove_leftovers(output)
            raise DownloadError(f"download of {source_ref} produced no {output.suffix} file")

        logger.debug(f"downloaded {source_ref} -> {output.name}")

    @staticmethod
    def _remove_leftovers(output: Path) -> None:
        """Delete intermediate files (<stem>.webm, <stem>.webm.part, ...)."""
        for leftover in output.parent.glob(f"{output.stem}.*"):
            leftover.unlink(missing_ok=True)
