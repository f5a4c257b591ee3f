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

"""yt-dlp backed media resolver.

Only place that calls yt-dlp metadata extraction. yt-dlp exceptions are
caught here and re-raised as ResolutionError.
"""

import asyncio
from typing import Any

import yt_dlp
import yt_dlp.utils
from loguru import logger

from core.exceptions import ResolutionError
from core.track import MediaDescriptor


class YtDlpResolver:
    """Turns a URL or search text into a MediaDescriptor.

    Search text becomes a ``ytsearch1:`` request and the first result
    wins. URLs are extracted directly with playlists disabled.
    """

    def __init__(self, search_prefix: str = "ytsearch") -> None:
        self.search_prefix = search_prefix

    @staticmethod
    def _build_opts() -> dict[str, Any]:
        return {
            "quiet": True,
            "no_warnings": True,
            "no_color": True,
            "skip_download": True,
            "noplaylist": True,
            "extract_flat": "in_playlist",
        }

    async def resolve(self, query: str, *, search: bool) -> MediaDescriptor:
        return await asyncio.to_thread(self._resolve_sync, query, search)

    def _resolve_sync(self, query: str, search: bool) -> MediaDescriptor:
        target = f"{self.search_prefix}1:{query}" if search else query

        try:
            with yt_dlp.YoutubeDL(self._build_opts()) as ydl:
                info = ydl.extract_info(target, download=False)
        except yt_dlp.utils.DownloadError as exc:
            raise ResolutionError(
                f"could not resolve {query!r}: {exc}",
                hint="check the link or try different search words",
            ) from exc
        except Exception as exc:
            raise ResolutionError(f"unexpected yt-dlp error resolving {query!r}: {exc}") from exc

        if not info:
            raise ResolutionError(f"no result for {query!r}")

        # Searches and playlist links come back wrapped in entries
        if "entries" in info:
            entry = next((e for e in info["entries"] or [] if e), None)
            if entry is None:
                raise ResolutionError(f"no result for {query!r}", hint="try different search words")
            info = entry

        source_ref = info.get("webpage_url") or info.get("url") or info.get("original_url")
        if not source_ref:
            raise ResolutionError(f"result for {query!r} has no media reference")

        duration = info.get("duration") or 0
        descriptor = MediaDescriptor(
            source_ref=source_ref,
            title=info.get("title") or source_ref,
            duration=int(duration),
        )
        logger.debug(f"resolved {query!r} -> {descriptor.source_ref}")
        return descriptor
