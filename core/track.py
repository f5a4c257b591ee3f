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
Track and Media Descriptor

Value types passed between resolution, caching and playback, plus the
query helpers that decide how a user request is looked up.
"""

import re
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path

# Module-level patterns (used by is_direct_reference)
_SCHEME_PATTERN = re.compile(r'^https?://\S+$', re.IGNORECASE)
_BARE_DOMAIN_PATTERN = re.compile(r'^(www\.)?[a-z0-9-]+(\.[a-z0-9-]+)*\.[a-z]{2,}(/\S*)?$', re.IGNORECASE)

_TRACK_IDS = count(1)


@dataclass(frozen=True, slots=True)
class MediaDescriptor:
    """Resolved media reference, as returned by the resolver or query cache."""

    source_ref: str
    """Canonical URL handed to the downloader."""

    title: str
    """Human-readable title for display."""

    duration: int = 0
    """Length in seconds. 0 when the source did not report one."""


@dataclass(slots=True)
class Track:
    """A playable track owned by a room queue.

    ``local_path`` points either into the artifact cache (shared, never
    deleted by the room) or at a transient file in the temp directory
    (owned by this track, deleted when the track is released). ``filtered``
    tracks are always transient.
    """

    source_ref: str
    title: str
    duration: int
    local_path: Path
    filtered: bool = False
    requested_by: str | None = None
    track_id: int = field(default_factory=lambda: next(_TRACK_IDS))

    @property
    def descriptor(self) -> MediaDescriptor:
        """Descriptor used to re-acquire this track (filter changes)."""
        return MediaDescriptor(self.source_ref, self.title, self.duration)

    @property
    def display_duration(self) -> str:
        return format_duration(self.duration)


def normalize_query(query: str) -> str:
    """Normalize a free-text query into a query cache key.

    Lowercases and drops every non-alphanumeric character. Unicode letters
    and digits are kept, so non-Latin queries still produce a usable key.
    Idempotent: normalize_query(normalize_query(q)) == normalize_query(q).

    Examples:
        "Daft Punk - One More Time!" -> "daftpunkonemoretime"
        "daft punk one more time"    -> "daftpunkonemoretime"
    """
    return "".join(ch for ch in query.lower() if ch.isalnum())


def is_direct_reference(query: str) -> bool:
    """Check whether a query is a URL rather than search text.

    Accepts http(s) URLs and bare domains with a TLD ("youtu.be/abc").
    Anything containing whitespace is search text.
    """
    query = query.strip()
    if not query or any(ch.isspace() for ch in query):
        return False
    return bool(_SCHEME_PATTERN.match(query) or _BARE_DOMAIN_PATTERN.match(query))


def format_duration(seconds: int | float | None) -> str:
    """Format seconds as m:ss, or h:mm:ss past an hour. Unknown is '?:??'."""
    if not seconds or seconds < 0:
        return "?:??"
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
