"""Shared pytest fixtures for the Encore test suite.

Guidelines
----------
* No network, no Discord, no ffmpeg: every external stage is faked at
  the protocol boundary (Resolver, Downloader, Transcoder, PlaybackSink).
* Fakes write real files so ownership and cleanup can be asserted.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from core.acquisition import AcquisitionPipeline
from core.exceptions import SinkError
from core.track import MediaDescriptor, Track, normalize_query
from utils.artifact_cache import ArtifactCache
from utils.query_cache import QueryCache


async def settle(rounds: int = 20) -> None:
    """Let scheduled callbacks (track end handling) run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fake adapters
# ---------------------------------------------------------------------------

class FakeResolver:
    """Resolves search text to example.com URLs and URLs to themselves."""

    def __init__(self, duration: int = 180, error: Exception | None = None) -> None:
        self.duration = duration
        self.error = error
        self.calls: list[tuple[str, bool]] = []

    async def resolve(self, query: str, *, search: bool) -> MediaDescriptor:
        self.calls.append((query, search))
        if self.error:
            raise self.error
        if search:
            return MediaDescriptor(f"https://example.com/{normalize_query(query)}", query.title(), self.duration)
        return MediaDescriptor(query, f"video at {query}", self.duration)


class FakeDownloader:
    """Writes a small file per download. Optionally blocks until released."""

    def __init__(self, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.error = error
        self.gate = gate
        self.calls: list[str] = []

    async def download(self, source_ref: str, output: Path) -> None:
        self.calls.append(source_ref)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        output.write_bytes(b"audio:" + source_ref.encode())


class FakeTranscoder:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.chains: list[str] = []

    async def transcode(self, source: Path, output: Path, chain: str) -> None:
        self.chains.append(chain)
        if self.error:
            raise self.error
        output.write_bytes(source.read_bytes() + b"|" + chain.encode())


class FakeSink:
    """PlaybackSink that records calls. finish() simulates the track ending."""

    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.played: list[Path] = []
        self.on_end = None
        self.volume: float | None = None
        self.paused = False
        self.stops = 0
        self.disconnected = False

    def is_connected(self) -> bool:
        return self.connected and not self.disconnected

    def play(self, path: Path, volume: float, on_end) -> None:
        if not path.exists():
            raise SinkError(f"audio file missing: {path.name}")
        self.played.append(path)
        self.volume = volume
        self.on_end = on_end
        self.paused = False

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def stop(self) -> None:
        self.stops += 1

    def set_volume(self, volume: float) -> None:
        self.volume = volume

    async def disconnect(self) -> None:
        self.disconnected = True

    def finish(self, error: Exception | None = None) -> None:
        self.on_end(error)


def connector(sink: FakeSink):
    async def connect() -> FakeSink:
        return sink
    return connect


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    path = tmp_path / "temp"
    path.mkdir()
    return path


@pytest.fixture
def artifact_cache(tmp_path: Path) -> ArtifactCache:
    cache = ArtifactCache(
        tmp_path / "cache",
        max_size_bytes=10 * 1024 * 1024,
        max_age_seconds=7 * 86400,
        max_song_duration=1800,
    )
    cache.directory.mkdir()
    return cache


@pytest.fixture
def query_cache(tmp_path: Path) -> QueryCache:
    return QueryCache(tmp_path / "data", ttl_days=30)


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def pipeline(resolver, downloader, transcoder, artifact_cache, query_cache, temp_dir) -> AcquisitionPipeline:
    return AcquisitionPipeline(
        resolver, downloader, transcoder, artifact_cache, query_cache, temp_dir, max_concurrent_jobs=2,
    )


@pytest.fixture
def make_track(temp_dir: Path):
    """Factory for transient tracks backed by a real file in temp_dir."""
    counter = iter(range(1, 10_000))

    def _make(title: str | None = None, *, duration: int = 120, filtered: bool = False) -> Track:
        n = next(counter)
        path = temp_dir / f"track{n}.mp3"
        path.write_bytes(b"audio")
        return Track(
            source_ref=f"https://example.com/{n}",
            title=title or f"track {n}",
            duration=duration,
            local_path=path,
            filtered=filtered,
        )

    return _make
