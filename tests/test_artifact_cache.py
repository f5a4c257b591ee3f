"""Tests for the on-disk artifact cache: storage, lookup and eviction."""

from __future__ import annotations

import hashlib
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

import utils.artifact_cache as artifact_cache_module
from core.exceptions import CacheIOError
from utils.artifact_cache import ArtifactCache


class Clock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock(monkeypatch) -> Clock:
    clock = Clock()
    monkeypatch.setattr(artifact_cache_module, "time", SimpleNamespace(time=clock))
    return clock


def _source(tmp_path: Path, name: str, size: int = 1000) -> Path:
    path = tmp_path / name
    path.write_bytes(b"x" * size)
    return path


def _small_cache(tmp_path: Path, *, max_size_bytes: int = 2500, max_age_seconds: float = 3600) -> ArtifactCache:
    cache = ArtifactCache(tmp_path / "cache", max_size_bytes, max_age_seconds, max_song_duration=600)
    cache.directory.mkdir()
    return cache


class TestKeys:
    def test_key_is_md5_of_source(self) -> None:
        ref = "https://www.youtube.com/watch?v=abc123"
        assert ArtifactCache.key_for(ref) == hashlib.md5(ref.encode()).hexdigest() + ".mp3"

    def test_owns(self, artifact_cache: ArtifactCache, tmp_path: Path) -> None:
        assert artifact_cache.owns(artifact_cache.directory / "abc.mp3")
        assert not artifact_cache.owns(tmp_path / "abc.mp3")


class TestPutGet:
    @pytest.mark.asyncio
    async def test_put_then_get(self, artifact_cache: ArtifactCache, tmp_path: Path) -> None:
        source = _source(tmp_path, "dl.mp3")
        stored = await artifact_cache.put("https://example.com/a", source, duration=120)

        assert stored == artifact_cache.directory / ArtifactCache.key_for("https://example.com/a")
        assert stored.read_bytes() == source.read_bytes()
        assert source.exists()  # caller still owns the source
        assert await artifact_cache.get("https://example.com/a") == stored
        assert len(artifact_cache) == 1
        assert artifact_cache.total_size == 1000

    @pytest.mark.asyncio
    async def test_miss(self, artifact_cache: ArtifactCache) -> None:
        assert await artifact_cache.get("https://example.com/missing") is None

    @pytest.mark.asyncio
    async def test_long_track_not_cached(self, artifact_cache: ArtifactCache, tmp_path: Path) -> None:
        source = _source(tmp_path, "long.mp3")
        assert await artifact_cache.put("https://example.com/long", source, duration=1801) is None
        assert list(artifact_cache.directory.iterdir()) == []

    @pytest.mark.asyncio
    async def test_vanished_file_is_a_miss(self, artifact_cache: ArtifactCache, tmp_path: Path) -> None:
        stored = await artifact_cache.put("https://example.com/a", _source(tmp_path, "a.mp3"), duration=60)
        stored.unlink()

        assert await artifact_cache.get("https://example.com/a") is None
        assert len(artifact_cache) == 0

    @pytest.mark.asyncio
    async def test_copy_failure_raises_cache_io_error(self, artifact_cache: ArtifactCache, tmp_path: Path) -> None:
        source = _source(tmp_path, "a.mp3")
        with patch("utils.artifact_cache.shutil.copyfile", side_effect=OSError("disk full")):
            with pytest.raises(CacheIOError):
                await artifact_cache.put("https://example.com/a", source, duration=60)

        assert len(artifact_cache) == 0
        assert list(artifact_cache.directory.iterdir()) == []


class TestEviction:
    @pytest.mark.asyncio
    async def test_size_bound_evicts_least_recently_used(self, tmp_path: Path, clock: Clock) -> None:
        cache = _small_cache(tmp_path)

        a = await cache.put("a", _source(tmp_path, "a"), duration=60)
        clock.advance(1)
        await cache.put("b", _source(tmp_path, "b"), duration=60)
        clock.advance(1)
        assert await cache.get("a") == a  # a is now newer than b
        clock.advance(1)
        await cache.put("c", _source(tmp_path, "c"), duration=60)

        assert cache.total_size <= cache.max_size_bytes
        assert await cache.get("b") is None
        assert await cache.get("a") is not None
        assert await cache.get("c") is not None

    @pytest.mark.asyncio
    async def test_age_bound(self, tmp_path: Path, clock: Clock) -> None:
        cache = _small_cache(tmp_path, max_size_bytes=10_000, max_age_seconds=100)
        await cache.put("old", _source(tmp_path, "old"), duration=60)
        clock.advance(50)
        await cache.put("new", _source(tmp_path, "new"), duration=60)
        clock.advance(60)

        assert await cache.evict() == 1
        assert await cache.get("old") is None
        assert await cache.get("new") is not None

    @pytest.mark.asyncio
    async def test_oversized_file_is_not_kept(self, tmp_path: Path, clock: Clock) -> None:
        cache = _small_cache(tmp_path, max_size_bytes=500)
        assert await cache.put("big", _source(tmp_path, "big", size=1000), duration=60) is None
        assert cache.total_size == 0

    @pytest.mark.asyncio
    async def test_init_rebuilds_index_and_drops_partials(self, tmp_path: Path) -> None:
        directory = tmp_path / "cache"
        directory.mkdir()
        (directory / "aaa.mp3").write_bytes(b"x" * 10)
        (directory / "bbb.mp3").write_bytes(b"x" * 20)
        (directory / "ccc.mp3.part").write_bytes(b"x" * 5)

        cache = ArtifactCache(directory, 10_000, 7 * 86400, 600)
        await cache.init()

        assert len(cache) == 2
        assert cache.total_size == 30
        assert not (directory / "ccc.mp3.part").exists()

    @pytest.mark.asyncio
    async def test_init_creates_directory(self, tmp_path: Path) -> None:
        cache = ArtifactCache(tmp_path / "new" / "cache", 10_000, 3600, 600)
        await cache.init()
        assert cache.directory.is_dir()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_clear(self, artifact_cache: ArtifactCache, tmp_path: Path) -> None:
        await artifact_cache.put("a", _source(tmp_path, "a"), duration=60)
        await artifact_cache.put("b", _source(tmp_path, "b"), duration=60)

        assert await artifact_cache.clear() == 2
        assert len(artifact_cache) == 0
        assert list(artifact_cache.directory.iterdir()) == []

    @pytest.mark.asyncio
    async def test_init_skips_unreadable_file(self, tmp_path: Path, monkeypatch) -> None:
        directory = tmp_path / "cache"
        directory.mkdir()
        for name in ("aaa.mp3", "bbb.mp3", "ccc.mp3"):
            (directory / name).write_bytes(b"x" * 10)

        real_stat = Path.stat

        def flaky_stat(self, *args, **kwargs):
            if self.name == "bbb.mp3":
                raise PermissionError(f"cannot stat {self.name}")
            return real_stat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", flaky_stat)
        cache = ArtifactCache(directory, 10_000, 7 * 86400, 600)
        await cache.init()

        assert len(cache) == 2
        assert cache.total_size == 20

    @pytest.mark.asyncio
    async def test_failed_unlink_does_not_stop_eviction(self, tmp_path: Path, clock: Clock, monkeypatch) -> None:
        cache = _small_cache(tmp_path, max_size_bytes=10_000, max_age_seconds=100)
        for ref in ("a", "b", "c"):
            await cache.put(ref, _source(tmp_path, ref), duration=60)
        clock.advance(200)

        locked = ArtifactCache.key_for("a")
        real_unlink = Path.unlink

        def stubborn_unlink(self, *args, **kwargs):
            if self.name == locked:
                raise PermissionError(f"{self.name} is in use")
            return real_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", stubborn_unlink)

        assert await cache.evict() == 2
        assert len(cache) == 1
        assert (cache.directory / locked).exists()
        assert sorted(p.name for p in cache.directory.iterdir()) == [locked]

    @pytest.mark.asyncio
    async def test_entry_used_during_eviction_keeps_its_place(self, tmp_path: Path, clock: Clock, monkeypatch) -> None:
        cache = _small_cache(tmp_path, max_size_bytes=10_000)
        for ref in ("a", "b", "c"):
            await cache.put(ref, _source(tmp_path, ref), duration=60)
            clock.advance(1)

        real_unlink = Path.unlink

        def unlink_while_b_is_played(self, *args, **kwargs):
            if self.name == ArtifactCache.key_for("a"):
                # a lookup of b lands while the first unlink is in flight
                cache._index[ArtifactCache.key_for("b")].last_accessed = clock.now + 10
            return real_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", unlink_while_b_is_played)
        cache.max_size_bytes = 1000

        assert await cache.evict() == 2
        assert (cache.directory / ArtifactCache.key_for("b")).exists()
        assert not (cache.directory / ArtifactCache.key_for("c")).exists()
        assert not (cache.directory / ArtifactCache.key_for("a")).exists()

    @pytest.mark.asyncio
    async def test_partial_clear_keeps_index_in_sync(self, artifact_cache: ArtifactCache, tmp_path: Path,
                                                     monkeypatch) -> None:
        for ref in ("a", "b", "c"):
            await artifact_cache.put(ref, _source(tmp_path, ref), duration=60)

        locked = ArtifactCache.key_for("b")
        real_unlink = Path.unlink

        def stubborn_unlink(self, *args, **kwargs):
            if self.name == locked:
                raise PermissionError(f"{self.name} is in use")
            return real_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", stubborn_unlink)

        with pytest.raises(CacheIOError):
            await artifact_cache.clear()

        on_disk = {p.name for p in artifact_cache.directory.iterdir()}
        assert locked in on_disk
        assert len(artifact_cache) == len(on_disk)
        assert await artifact_cache.get("b") is not None
