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

"""Audio file probing with Mutagen.

Used when the resolver reports no duration (live-ish sources, some
direct links). Duration feeds the cache length policy and /queue.
"""

import asyncio
from pathlib import Path

from loguru import logger
from mutagen import File, MutagenError


def probe_duration_sync(filepath: Path) -> int:
    """Read stream length in whole seconds. Returns 0 if unreadable."""
    try:
        audio = File(filepath)
    except (MutagenError, OSError):
        logger.warning(f"error reading audio info from {filepath.name}")
        return 0

    if audio is None or audio.info is None:
        return 0
    return int(getattr(audio.info, "length", 0) or 0)


async def probe_duration(filepath: Path, timeout: float = 15.0) -> int:
    """Probe duration in a worker thread, giving up after timeout."""
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(probe_duration_sync, filepath),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning(f"duration probe timed out: {filepath.name}")
        return 0
