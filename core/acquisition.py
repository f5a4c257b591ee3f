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
Acquisition Pipeline

Turns a user query into a playable Track:

    query -> [query cache | resolver] -> descriptor
          -> [artifact cache | downloader] -> temp/cached file
          -> [transcoder if filters] -> Track

Every external call (resolver, downloader, transcoder) is bounded by one
semaphore. Concurrent unfiltered fetches of the same source share a
single download.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from loguru import logger

from core.exceptions import CacheIOError, FilterError, ResolutionError
from core.filters import AudioFilter, build_filter_chain, filter_names
from core.protocols import Downloader, Resolver, Transcoder
from core.track import MediaDescriptor, Track, is_direct_reference
from utils.artifact_cache import ArtifactCache
from utils.metadata import probe_duration
from utils.query_cache import QueryCache

# Progress stages reported to the optional progress callback
STAGE_SEARCHING = "searching"
STAGE_CACHED = "cached"
STAGE_DOWNLOADING = "downloading"
STAGE_FILTERING = "filtering"

ProgressCallback = Callable[[str], Awaitable[None]]


class AcquisitionPipeline:
    """Resolves, downloads, caches and filters tracks.

    Failure semantics:
    - ResolutionError / DownloadError propagate to the caller, temp files removed
    - CacheIOError on store: logged, the temp file is played as a transient track
    - FilterError: logged, the unfiltered temp file is played (filtered=False)
    - No retries

    Attributes:
        temp_dir: Directory for transient downloads and filter output
    """

    def __init__(
        self,
        resolver: Resolver,
        downloader: Downloader,
        transcoder: Transcoder,
        artifact_cache: ArtifactCache,
        query_cache: QueryCache,
        temp_dir: Path,
        max_concurrent_jobs: int = 4,
    ) -> None:
        self.resolver = resolver
        self.downloader = downloader
        self.transcoder = transcoder
        self.artifact_cache = artifact_cache
        self.query_cache = query_cache
        self.temp_dir = temp_dir
        self._jobs = asyncio.Semaphore(max_concurrent_jobs)
        # cache key -> future completed when the leading download finishes
        self._inflight: dict[str, asyncio.Future] = {}

    def _temp_path(self, suffix: str = ".mp3") -> Path:
        return self.temp_dir / f"{uuid.uuid4().hex}{suffix}"

    async def acquire(
        self,
        query: str,
        filters: Iterable[AudioFilter] = (),
        *,
        requested_by: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> Track:
        """Resolve query and fetch its audio with the given filters.

        Raises:
            ResolutionError: Query could not be resolved.
            DownloadError: Audio could not be downloaded.
        """
        descriptor = await self.describe(query, progress=progress)
        return await self.fetch(descriptor, filters, requested_by=requested_by, progress=progress)

    async def describe(self, query: str, *, progress: ProgressCallback | None = None) -> MediaDescriptor:
        """Resolve query to a descriptor, using the query cache for search text."""
        query = query.strip()
        if not query:
            raise ResolutionError("empty query", hint="tell me what to play")

        direct = is_direct_reference(query)
        if direct:
            if "://" not in query:
                query = f"https://{query}"
        else:
            cached = await self.query_cache.resolve(query)
            if cached:
                return cached

        await _report(progress, STAGE_SEARCHING)
        async with self._jobs:
            descriptor = await self.resolver.resolve(query, search=not direct)

        if not direct:
            await self.query_cache.record(query, descriptor)
        return descriptor

    async def fetch(
        self,
        descriptor: MediaDescriptor,
        filters: Iterable[AudioFilter] = (),
        *,
        requested_by: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> Track:
        """Produce a playable file for an already resolved descriptor.

        Used directly when re-applying filters to the current track.

        Raises:
            DownloadError: Audio could not be downloaded.
        """
        filters = list(dict.fromkeys(filters))

        if not filters:
            path = await self._fetch_unfiltered(descriptor, progress)
            filtered = False
        else:
            path, filtered = await self._fetch_filtered(descriptor, filters, progress)

        duration = descriptor.duration
        if not duration:
            duration = await probe_duration(path)

        return Track(
            source_ref=descriptor.source_ref,
            title=descriptor.title,
            duration=duration,
            local_path=path,
            filtered=filtered,
            requested_by=requested_by,
        )

    async def _fetch_unfiltered(self, descriptor: MediaDescriptor, progress: ProgressCallback | None) -> Path:
        """Cache hit, or a single shared download per source."""
        key = ArtifactCache.key_for(descriptor.source_ref)

        while True:
            cached = await self.artifact_cache.get(descriptor.source_ref)
            if cached:
                await _report(progress, STAGE_CACHED)
                return cached

            pending = self._inflight.get(key)
            if pending is None:
                break
            # Shield so a cancelled follower cannot cancel the leader's future
            logger.debug(f"waiting on in-flight download of {descriptor.source_ref}")
            await asyncio.shield(pending)

        done = asyncio.get_running_loop().create_future()
        self._inflight[key] = done
        try:
            return await self._download_and_store(descriptor, progress)
        finally:
            self._inflight.pop(key, None)
            if not done.done():
                done.set_result(None)

    async def _download_and_store(self, descriptor: MediaDescriptor, progress: ProgressCallback | None) -> Path:
        temp = await self._download(descriptor, progress)

        duration = descriptor.duration or await probe_duration(temp)
        try:
            stored = await self.artifact_cache.put(descriptor.source_ref, temp, duration)
        except CacheIOError as e:
            logger.warning(f"{e}, playing {descriptor.title!r} from temp file")
            return temp

        if stored is None:
            return temp

        temp.unlink(missing_ok=True)
        return stored

    async def _download(self, descriptor: MediaDescriptor, progress: ProgressCallback | None) -> Path:
        """Download to a fresh temp file. The file is removed on any failure."""
        await _report(progress, STAGE_DOWNLOADING)
        temp = self._temp_path()
        try:
            async with self._jobs:
                await self.downloader.download(descriptor.source_ref, temp)
        except BaseException:
            temp.unlink(missing_ok=True)
            raise
        return temp

    async def _fetch_filtered(
        self,
        descriptor: MediaDescriptor,
        filters: list[AudioFilter],
        progress: ProgressCallback | None,
    ) -> tuple[Path, bool]:
        """Download and transcode. Filtered output never enters the artifact cache."""
        raw = await self._download(descriptor, progress)
        output = self._temp_path()
        chain = build_filter_chain(filters)

        await _report(progress, STAGE_FILTERING)
        try:
            async with self._jobs:
                await self.transcoder.transcode(raw, output, chain)
        except FilterError as e:
            output.unlink(missing_ok=True)
            logger.warning(f"filters {filter_names(filters)} failed for {descriptor.title!r}, playing unfiltered: {e}")
            return raw, False
        except BaseException:
            output.unlink(missing_ok=True)
            raw.unlink(missing_ok=True)
            raise

        raw.unlink(missing_ok=True)
        logger.debug(f"applied {filter_names(filters)} to {descriptor.title!r}")
        return output, True


async def _report(progress: ProgressCallback | None, stage: str) -> None:
    """Forward a stage to the progress callback. Callback errors are logged, not raised."""
    if progress is None:
        return
    try:
        await progress(stage)
    except Exception:
        logger.opt(exception=True).debug(f"progress callback failed at {stage}")
