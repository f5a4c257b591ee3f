"""Tests for per-room queue and playback state (RoomPlayer, RoomRegistry).

A FakeSink stands in for the voice connection. sink.finish() plays the
part of discord.py's after-callback.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.exceptions import DownloadError, QueueFullError, RoomClosedError, SinkError
from core.filters import AudioFilter
from core.player import PlaybackStatus, RoomPlayer, RoomRegistry
from core.track import Track

from tests.conftest import FakeSink, connector, settle


@pytest.fixture
def player(artifact_cache) -> RoomPlayer:
    return RoomPlayer(1, artifact_cache, max_queue_size=3)


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_first_track_starts_playing(self, player, sink, make_track) -> None:
        track = make_track()
        assert await player.enqueue(track, connector(sink)) is True

        assert player.status is PlaybackStatus.PLAYING
        assert player.current is track
        assert sink.played == [track.local_path]
        assert sink.volume == 1.0

    @pytest.mark.asyncio
    async def test_later_tracks_are_queued(self, player, sink, make_track) -> None:
        first, second = make_track(), make_track()
        await player.enqueue(first, connector(sink))

        assert await player.enqueue(second, connector(sink)) is False
        assert player.upcoming == [second]
        assert sink.played == [first.local_path]

    @pytest.mark.asyncio
    async def test_queue_cap(self, player, sink, make_track) -> None:
        for _ in range(3):
            await player.enqueue(make_track(), connector(sink))

        with pytest.raises(QueueFullError):
            await player.enqueue(make_track(), connector(sink))
        assert len(player.queue) == 3

    @pytest.mark.asyncio
    async def test_connect_failure_leaves_queue_empty(self, player, make_track) -> None:
        async def fail():
            raise SinkError("no permission")

        with pytest.raises(SinkError):
            await player.enqueue(make_track(), fail)
        assert not player.queue
        assert player.status is PlaybackStatus.IDLE

    @pytest.mark.asyncio
    async def test_closed_room_rejects(self, player, sink, make_track) -> None:
        await player.stop()
        with pytest.raises(RoomClosedError):
            await player.enqueue(make_track(), connector(sink))

    @pytest.mark.asyncio
    async def test_unplayable_head_is_dropped(self, player, sink, make_track) -> None:
        broken, good = make_track(), make_track()
        broken.local_path.unlink()
        await player.enqueue(broken, connector(sink))  # nothing to play, goes idle
        assert player.status is PlaybackStatus.IDLE

        assert await player.enqueue(good, connector(FakeSink())) is True
        assert player.current is good


class TestTrackEnd:
    @pytest.mark.asyncio
    async def test_advances_and_releases_transient_file(self, player, sink, make_track) -> None:
        first, second = make_track(), make_track()
        await player.enqueue(first, connector(sink))
        await player.enqueue(second, connector(sink))

        sink.finish()
        await settle()

        assert player.current is second
        assert sink.played == [first.local_path, second.local_path]
        assert not first.local_path.exists()

    @pytest.mark.asyncio
    async def test_last_track_goes_idle_and_disconnects(self, player, sink, make_track) -> None:
        await player.enqueue(make_track(), connector(sink))

        sink.finish()
        await settle()

        assert player.status is PlaybackStatus.IDLE
        assert player.current is None
        assert player.sink is None
        assert sink.disconnected

    @pytest.mark.asyncio
    async def test_loop_requeues_finished_track(self, player, sink, make_track) -> None:
        first, second = make_track(), make_track()
        await player.enqueue(first, connector(sink))
        await player.enqueue(second, connector(sink))
        assert player.toggle_loop() is True

        sink.finish()
        await settle()
        sink.finish()
        await settle()

        assert player.current is first
        assert first.local_path.exists()
        assert sink.played == [first.local_path, second.local_path, first.local_path]

    @pytest.mark.asyncio
    async def test_loop_single_track_repeats(self, player, sink, make_track) -> None:
        track = make_track()
        player.toggle_loop()
        await player.enqueue(track, connector(sink))

        sink.finish()
        await settle()

        assert player.current is track
        assert sink.played == [track.local_path, track.local_path]

    @pytest.mark.asyncio
    async def test_stale_callback_after_skip_is_ignored(self, player, sink, make_track) -> None:
        first, second, third = make_track(), make_track(), make_track()
        for track in (first, second, third):
            await player.enqueue(track, connector(sink))
        stale_on_end = sink.on_end

        assert await player.skip() is True
        stale_on_end(None)
        await settle()

        assert player.current is second
        assert player.upcoming == [third]

    @pytest.mark.asyncio
    async def test_cached_file_survives_release(self, player, sink, artifact_cache, tmp_path) -> None:
        source = tmp_path / "dl.mp3"
        source.write_bytes(b"audio")
        cached = await artifact_cache.put("https://example.com/c", source, duration=60)
        track = Track("https://example.com/c", "Cached", 60, cached)

        await player.enqueue(track, connector(sink))
        sink.finish()
        await settle()

        assert cached.exists()


class TestTransport:
    @pytest.mark.asyncio
    async def test_skip_with_nothing_playing(self, player) -> None:
        assert await player.skip() is False

    @pytest.mark.asyncio
    async def test_pause_resume(self, player, sink, make_track) -> None:
        await player.enqueue(make_track(), connector(sink))

        assert await player.pause() is True
        assert await player.pause() is False
        assert player.status is PlaybackStatus.PAUSED
        assert sink.paused

        assert await player.resume() is True
        assert await player.resume() is False
        assert player.status is PlaybackStatus.PLAYING

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, player, sink, make_track) -> None:
        tracks = [make_track() for _ in range(3)]
        for track in tracks:
            await player.enqueue(track, connector(sink))

        await player.stop()

        assert player.closed
        assert not player.queue
        assert sink.disconnected
        assert not any(t.local_path.exists() for t in tracks)

    @pytest.mark.asyncio
    async def test_volume(self, player, sink, make_track) -> None:
        await player.enqueue(make_track(), connector(sink))
        await player.set_volume(150)

        assert player.volume_percent == 150
        assert sink.volume == 1.5
        with pytest.raises(ValueError):
            await player.set_volume(151)

    @pytest.mark.asyncio
    async def test_shuffle_keeps_current(self, player, sink, make_track) -> None:
        player.max_queue_size = 20
        tracks = [make_track() for _ in range(10)]
        for track in tracks:
            await player.enqueue(track, connector(sink))

        assert await player.shuffle() == 9
        assert player.current is tracks[0]
        assert sorted(t.track_id for t in player.queue) == sorted(t.track_id for t in tracks)


class TestFilters:
    @pytest.mark.asyncio
    async def test_idle_filter_applies_to_future_tracks(self, player) -> None:
        pipeline = AsyncMock()
        assert await player.apply_filter(AudioFilter.BASS, pipeline) is None

        assert player.active_filters == [AudioFilter.BASS]
        pipeline.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_restart_current_with_filter(self, player, sink, make_track) -> None:
        current = make_track("current")
        old_path = current.local_path
        await player.enqueue(current, connector(sink))

        fresh = make_track("current", filtered=True)
        pipeline = AsyncMock()
        pipeline.fetch.return_value = fresh

        result = await player.apply_filter(AudioFilter.NIGHTCORE, pipeline)

        assert result is current
        assert current.local_path == fresh.local_path
        assert current.filtered
        assert not old_path.exists()
        assert sink.played == [old_path, fresh.local_path]
        assert player.active_filters == [AudioFilter.NIGHTCORE]
        pipeline.fetch.assert_awaited_once()
        assert pipeline.fetch.await_args.args[1] == [AudioFilter.NIGHTCORE]

    @pytest.mark.asyncio
    async def test_filters_stack(self, player) -> None:
        pipeline = AsyncMock()
        await player.apply_filter(AudioFilter.BASS, pipeline)
        await player.apply_filter(AudioFilter.ECHO, pipeline)
        await player.apply_filter(AudioFilter.BASS, pipeline)
        assert player.active_filters == [AudioFilter.BASS, AudioFilter.ECHO]

    @pytest.mark.asyncio
    async def test_failed_reacquire_leaves_filters(self, player, sink, make_track) -> None:
        await player.enqueue(make_track(), connector(sink))
        pipeline = AsyncMock()
        pipeline.fetch.side_effect = DownloadError("HTTP 403")

        with pytest.raises(DownloadError):
            await player.apply_filter(AudioFilter.BASS, pipeline)
        assert player.active_filters == []
        assert len(sink.played) == 1

    @pytest.mark.asyncio
    async def test_clear_filters(self, player, sink, make_track) -> None:
        pipeline = AsyncMock()
        await player.apply_filter(AudioFilter.BASS, pipeline)
        await player.enqueue(make_track(filtered=True), connector(sink))
        pipeline.fetch.return_value = make_track()

        await player.clear_filters(pipeline)

        assert player.active_filters == []
        assert not player.current.filtered
        assert pipeline.fetch.await_args.args[1] == []

    @pytest.mark.asyncio
    async def test_track_skipped_during_reacquire(self, player, sink, make_track) -> None:
        current, following = make_track("current"), make_track("following")
        await player.enqueue(current, connector(sink))
        await player.enqueue(following, connector(sink))

        fresh = make_track("current", filtered=True)
        gate = asyncio.Event()

        async def slow_fetch(*args, **kwargs):
            await gate.wait()
            return fresh

        pipeline = AsyncMock()
        pipeline.fetch.side_effect = slow_fetch

        task = asyncio.create_task(player.apply_filter(AudioFilter.BASS, pipeline))
        await settle()
        assert await player.skip() is True
        gate.set()

        assert await task is None
        assert not fresh.local_path.exists()
        assert player.active_filters == [AudioFilter.BASS]
        assert player.current is following
        assert list(player.queue) == [following]
        assert sink.played == [current.local_path, following.local_path]


class TestRoomRegistry:
    def test_get_or_create_is_idempotent(self, artifact_cache) -> None:
        registry = RoomRegistry(artifact_cache, max_queue_size=7)
        room = registry.get_or_create(42, volume_percent=80)

        assert registry.get_or_create(42) is room
        assert room.max_queue_size == 7
        assert room.volume_percent == 80
        assert 42 in registry and len(registry) == 1

    @pytest.mark.asyncio
    async def test_stop_removes_room(self, artifact_cache, make_track) -> None:
        registry = RoomRegistry(artifact_cache)
        room = registry.get_or_create(1)
        sink = FakeSink()
        await room.enqueue(make_track(), connector(sink))

        assert await registry.stop(1) is True
        assert registry.get(1) is None
        assert room.closed and sink.disconnected
        assert await registry.stop(1) is False

    def test_discard_if_idle(self, artifact_cache) -> None:
        registry = RoomRegistry(artifact_cache)
        registry.get_or_create(1)
        registry.discard_if_idle(1)
        assert 1 not in registry

    def test_failed_claim_discards_fresh_room(self, artifact_cache) -> None:
        registry = RoomRegistry(artifact_cache)
        with pytest.raises(DownloadError):
            with registry.claim(1):
                raise DownloadError("HTTP 403")
        assert 1 not in registry

    @pytest.mark.asyncio
    async def test_room_kept_while_another_command_holds_it(self, artifact_cache, make_track) -> None:
        registry = RoomRegistry(artifact_cache)
        sink = FakeSink()

        with registry.claim(1) as waiting:
            with registry.claim(1) as failing:
                assert failing is waiting
            # the failed command exited while the other is still acquiring
            assert registry.get(1) is waiting
            assert await waiting.enqueue(make_track(), connector(sink)) is True

        assert registry.get(1) is waiting
        assert waiting.status is PlaybackStatus.PLAYING
        assert waiting.holders == 0
        assert registry.get_or_create(1) is waiting

    @pytest.mark.asyncio
    async def test_stop_all(self, artifact_cache, make_track) -> None:
        registry = RoomRegistry(artifact_cache)
        sinks = [FakeSink(), FakeSink()]
        for room_id, sink in enumerate(sinks):
            await registry.get_or_create(room_id).enqueue(make_track(), connector(sink))

        await registry.stop_all()
        assert len(registry) == 0
        assert all(s.disconnected for s in sinks)
