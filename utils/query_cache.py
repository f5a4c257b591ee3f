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

"""Persistent cache of search query resolutions."""

import asyncio
import json
import os
import tempfile
import time
from pathlib import Path

from loguru import logger

from core.track import MediaDescriptor, normalize_query

SECONDS_PER_DAY = 86400


class QueryCache:
    """Maps normalized search queries to resolved media descriptors.

    Saves a resolver round trip for repeated searches. Only free-text
    queries go through here; URLs are resolved directly.

    Stored in query_cache.json as a single mapping:
        {"<normalized query>": {"source_ref", "title", "duration", "timestamp"}}

    File safety:
    - Whole-file rewrite on every record(), temp-file-then-rename
    - Lock serializes concurrent saves
    - Save failures logged but not raised
    - Corrupt file backed up to .bak, cache starts empty

    Expiry:
    - Entries older than ttl_days are misses and dropped on lookup
    - cleanup() prunes every expired entry in one pass

    Attributes:
        cache_file: Full path to query_cache.json
        ttl_seconds: Entry lifetime
        entries: In-memory mapping (normalized key -> entry dict)
    """

    def __init__(self, data_path: Path, ttl_days: int = 30) -> None:
        self.data_path = data_path
        self.cache_file = data_path / "query_cache.json"
        self.ttl_seconds = ttl_days * SECONDS_PER_DAY
        self.entries: dict[str, dict] = {}
        self._save_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.entries)

    async def load(self) -> None:
        """Load the persisted mapping. Missing file means an empty cache."""
        if not self.cache_file.exists():
            logger.info("query cache not found, starting empty")
            self.entries = {}
            return

        try:
            content = await asyncio.to_thread(self.cache_file.read_text, encoding='utf-8')
            loaded = json.loads(content)
            if not isinstance(loaded, dict):
                raise ValueError("query cache root is not a mapping")
            self.entries = {
                key: entry for key, entry in loaded.items()
                if isinstance(entry, dict) and entry.get("source_ref")
            }
            logger.info(f"restored {len(self.entries)} cached queries")
        except (json.JSONDecodeError, ValueError, OSError):
            backup = self.cache_file.with_suffix('.json.bak')
            try:
                self.cache_file.rename(backup)
                logger.warning(f"query cache corrupt, backed up to {backup.name}")
            except OSError:
                logger.warning("query cache corrupt, starting empty")
            self.entries = {}

    def _is_expired(self, entry: dict, now: float) -> bool:
        try:
            return now - float(entry.get("timestamp", 0)) > self.ttl_seconds
        except (TypeError, ValueError):
            return True

    async def resolve(self, query: str) -> MediaDescriptor | None:
        """Return the cached descriptor for query, or None on a miss."""
        key = normalize_query(query)
        if not key:
            return None

        entry = self.entries.get(key)
        if entry is None:
            return None

        if self._is_expired(entry, time.time()):
            del self.entries[key]
            logger.debug(f"query cache entry expired: {key!r}")
            await self.save()
            return None

        logger.debug(f"query cache hit: {key!r}")
        return MediaDescriptor(
            source_ref=entry["source_ref"],
            title=entry.get("title") or entry["source_ref"],
            duration=int(entry.get("duration") or 0),
        )

    async def record(self, query: str, descriptor: MediaDescriptor) -> None:
        """Store a resolution and persist the whole mapping."""
        key = normalize_query(query)
        if not key:
            return

        self.entries[key] = {
            "source_ref": descriptor.source_ref,
            "title": descriptor.title,
            "duration": descriptor.duration,
            "timestamp": time.time(),
        }
        await self.save()

    async def cleanup(self) -> int:
        """Prune expired entries. Returns how many were removed."""
        now = time.time()
        expired = [key for key, entry in self.entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self.entries[key]

        if expired:
            logger.info(f"pruned {len(expired)} expired queries")
            await self.save()
        return len(expired)

    async def save(self) -> None:
        """Persist entries to query_cache.json. Exceptions are logged, not raised."""
        async with self._save_lock:
            temp_path = None
            try:
                self.data_path.mkdir(parents=True, exist_ok=True)
                temp_fd, temp_path = tempfile.mkstemp(dir=self.data_path, suffix='.tmp')
                snapshot = dict(self.entries)
                await asyncio.to_thread(self._write_atomic, temp_fd, temp_path, snapshot)
                logger.debug("query cache saved")
            except Exception:
                if temp_path:
                    Path(temp_path).unlink(missing_ok=True)
                logger.opt(exception=True).warning("failed to save query_cache.json")

    def _write_atomic(self, temp_fd: int, temp_path: str, data: dict) -> None:
        """Synchronous helper for atomic JSON write."""
        # fdopen can fail after mkstemp - close fd manually to prevent leak
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        Path(temp_path).replace(self.cache_file)
