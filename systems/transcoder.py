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

"""ffmpeg filter transcoder."""

import asyncio
from pathlib import Path

from loguru import logger

from core.exceptions import FilterError


class FfmpegTranscoder:
    """Runs ``ffmpeg -i <source> -af <chain> <output>`` as a subprocess.

    Arguments are passed as a vector, never through a shell, so filter
    chains and file names need no quoting.
    """

    def __init__(self, ffmpeg: str = "ffmpeg", bitrate: str = "96K") -> None:
        self.ffmpeg = ffmpeg
        self.bitrate = bitrate.lower()

    async def transcode(self, source: Path, output: Path, chain: str) -> None:
        args = [
            self.ffmpeg, "-hide_banner", "-loglevel", "error", "-y",
            "-i", str(source),
            "-af", chain,
            "-b:a", self.bitrate,
            str(output),
        ]

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FilterError(f"could not start ffmpeg: {e}", hint="is ffmpeg installed and on PATH?") from e

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            output.unlink(missing_ok=True)
            detail = stderr.decode(errors="replace").strip()[-500:]
            raise FilterError(f"ffmpeg exited with {proc.returncode}: {detail}")

        if not output.exists():
            raise FilterError(f"ffmpeg produced no output for {source.name}")

        logger.debug(f"filtered {source.name} -> {output.name} ({chain})")
