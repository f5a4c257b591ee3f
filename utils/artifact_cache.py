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

"""Content-addressed on-disk cache of finished audio files."""

import asyncio
import hashlib
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from core.exceptions import CacheIOError


@dataclass(slots=True)
class CacheEntry:
    """Index record for one cached file."""
    key: str
    size_bytes: int
    last_accessed: float


class ArtifactCache:
    """Stores downloaded, unfiltered audio keyed by md5(source_ref).

    The directory is flat: every file is ``<md5>.mp3`` and there is no
    metadata file. The in-memory index is rebuilt from file stats on
    init(), so recency survives restarts through the file mtime (get()
    touches it).

    Bounds (enforced by evict()):
    - total size <= max_size_bytes
    - no entry last accessed more than max_age_seconds ago

    Eviction removes least recently accessed entries first. A file that
    cannot be unlinked is logged and left in place.

    Usage:
        cache = ArtifactCache(Path("data/cache"), 2048 * 1024**2, 7 * 86400, 1800)
        await cache.init()
        path = await cache.get(url) or await cache.put(url, temp_file, duration)

    Attributes:
        directory: Cache directory
        max_size_bytes: Total size bound
        max_age_seconds: Age bound, measured from last access
        max_song_duration: put() declines anything longer (seconds)
    """

    def __init__(
        self,
        directory: Path,
        max_size_bytes: int,
        max_age_seconds: float,
        max_song_duration: int,
    ) -> None:
        self.directory = directory
        self.max_size_bytes = max_size_bytes
        self.max_age_seconds = max_age_seconds
        self.max_song_duration = max_song_duration
        self._index: dict[str, CacheEntry] = {}
        self._evict_lock = asyncio.Lock()

    @staticmethod
    def key_for(source_ref: str) -> str:
        """Cache filename for a source reference."""
        return hashlib.md5(source_ref.encode("utf-8")).hexdigest() + ".mp3"

    @property
    def total_size(self) -> int:
        return sum(entry.size_bytes for entry in self._index.values())

    def __len__(self) -> int:
        return len(self._index)

    def owns(self, path: Path) -> bool:
        """Whether path lives directly inside the cache directory."""
        return path.resolve().parent == self.directory.resolve()

    async def init(self) -> None:
        """Create the directory, rebuild the index from disk, then evict."""
        try:
            self._index = await asyncio.to_thread(self._scan_sync)
        except OSError:
            logger.opt(exception=True).warning(f"failed to scan cache directory {self.directory}")
            self._index = {}

        size_mb = self.total_size / (1024 * 1024)
        logger.info(f"artifact cache: {len(self._index)} files, {size_mb:.1f} MB")
        await self.evict()

    def _scan_sync(self) -> dict[str, CacheEntry]:
        """Synchronous helper for init(). Drops leftover partial copies.

        A file that cannot be inspected is skipped so the rest of the
        directory is still indexed.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        index = {}
        for path in self.directory.iterdir():
            try:
                if not path.is_file():
                    continue
                if path.suffix == ".part":
                    path.unlink(missing_ok=True)
                    logger.debug(f"removed partial cache file {path.name}")
                    continue
                stat = path.stat()
            except OSError as e:
                logger.warning(f"skipping cache file {path.name}: {e}")
                continue
            index[path.name] = CacheEntry(path.name, stat.st_size, stat.st_mtime)
        return index

    async def get(self, source_ref: str) -> Path | None:
        """Return the cached file for source_ref and mark it as used.

        A miss is never an error. Index entries whose file disappeared are
        dropped.
        """
        key = self.key_for(source_ref)
        path = self.directory / key
        now = time.time()

        try:
            size = await asyncio.to_thread(self._touch_sync, path, now)
        except FileNotFoundError:
            if self._index.pop(key, None):
                logger.debug(f"cache entry {key} vanished from disk")
            return None
        except OSError as e:
            logger.warning(f"cache lookup failed for {key}: {e}")
            return None

        entry = self._index.get(key)
        if entry is None:
            self._index[key] = CacheEntry(key, size, now)
        else:
            entry.last_accessed = now
        logger.debug(f"cache hit {key}")
        return path

    @staticmethod
    def _touch_sync(path: Path, now: float) -> int:
        os.utime(path, (now, now))
        return path.stat().st_size

    async def put(self, source_ref: str, source_path: Path, duration: int) -> Path | None:
        """Copy source_path into the cache under source_ref's key.

        Returns the cached path, or None when the track is longer than
        max_song_duration or is too large to survive eviction. The source
        file is left untouched either way.

        Raises:
            CacheIOError: The copy failed. Nothing is left in the cache.
        """
        if duration > self.max_song_duration:
            logger.debug(f"not caching {source_ref}: {duration}s exceeds {self.max_song_duration}s")
            return None

        key = self.key_for(source_ref)
        dest = self.directory / key
        try:
            size = await asyncio.to_thread(self._copy_sync, source_path, dest)
        except OSError as e:
            raise CacheIOError(f"failed to store {key}: {e}") from e

        self._index[key] = CacheEntry(key, size, time.time())
        logger.debug(f"cached {key} ({size} bytes)")

        if self.total_size > self.max_size_bytes:
            await self.evict()
            if key not in self._index:
                logger.warning(f"{key} evicted immediately, larger than the cache bound")
                return None
        return dest

    def _copy_sync(self, source: Path, dest: Path) -> int:
        """Copy to a .part file then rename, so readers never see a partial file."""
        self.directory.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        try:
            shutil.copyfile(source, part)
            part.replace(dest)
        except OSError:
            part.unlink(missing_ok=True)
            raise
        return dest.stat().st_size

    async def evict(self) -> int:
        """Remove expired entries, then oldest entries until under the size bound.

        The victim is re-picked from the live index on every step, so an
        entry touched by get() while a previous unlink was in flight is
        judged by its new access time. Returns the number of files removed.
        """
        async with self._evict_lock:
            removed = 0
            failed: set[str] = set()

            while True:
                candidates = [e for e in self._index.values() if e.key not in failed]
                if not candidates:
                    break
                entry = min(candidates, key=lambda e: e.last_accessed)
                expired = time.time() - entry.last_accessed > self.max_age_seconds
                if not expired and self.total_size <= self.max_size_bytes:
                    break

                try:
                    await asyncio.to_thread((self.directory / entry.key).unlink)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"failed to evict {entry.key}: {e}")
                    failed.add(entry.key)
                    continue

                # put() may have replaced the entry while the unlink ran
                if self._index.get(entry.key) is entry:
                    del self._index[entry.key]
                removed += 1

            if removed:
                logger.info(f"evicted {removed} cached files, {self.total_size / (1024 * 1024):.1f} MB remaining")
            return removed

    async def clear(self) -> int:
        """Delete every file in the cache directory. Returns the count.

        Files removed before a failure are dropped from the index as well.

        Raises:
            CacheIOError: The directory could not be listed or a file could not be removed.
        """
        async with self._evict_lock:
            removed: list[str] = []
            try:
                await asyncio.to_thread(self._clear_sync, removed)
            except OSError as e:
                raise CacheIOError(f"failed to clear cache: {e}") from e
            finally:
                for name in removed:
                    self._index.pop(name, None)
            self._index.clear()
            logger.info(f"cache cleared, {len(removed)} files removed")
            return len(removed)

    def _clear_sync(self, removed: list[str]) -> None:
        if not self.directory.exists():
            return
        for path in self.directory.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
                removed.append(path.name)
