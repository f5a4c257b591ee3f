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

"""Exception hierarchy for Encore.

Raw yt-dlp, ffmpeg and OS errors never leave the adapter layer
(systems/, utils/*_cache.py). They are caught there and re-raised as
one of the types below, so cogs only ever handle EncoreError.

Hierarchy
---------
EncoreError
├── AcquisitionError
│   ├── ResolutionError
│   └── DownloadError
├── FilterError
├── QueueFullError
├── CacheIOError
├── SinkError
└── RoomClosedError
"""


class EncoreError(Exception):
    """Base exception for all Encore errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint: str | None = hint


# --- Acquisition -------------------------------------------------------------

class AcquisitionError(EncoreError):
    """A query could not be turned into a playable track."""


class ResolutionError(AcquisitionError):
    """Resolver produced no usable media reference."""


class DownloadError(AcquisitionError):
    """Downloader failed or left no output file."""


# --- Processing --------------------------------------------------------------

class FilterError(EncoreError):
    """Filter transcode failed. Recovered by playing the unfiltered file."""


# --- Playback ----------------------------------------------------------------

class QueueFullError(EncoreError):
    """Room queue is at capacity."""


class SinkError(EncoreError):
    """Voice sink refused to connect or start a track."""


class RoomClosedError(EncoreError):
    """Room was stopped while a request for it was in flight."""


# --- Storage -----------------------------------------------------------------

class CacheIOError(EncoreError):
    """Artifact cache disk operation failed."""
