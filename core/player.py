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
Room Player - Per-Room Playback State Machine

One RoomPlayer per guild. The queue head is the current track; the rest
are upcoming. Every state transition runs under the room lock, including
the sink's end-of-track callback (marshalled onto the event loop).

    IDLE --enqueue--> PLAYING <--pause/resume--> PAUSED
    PLAYING/PAUSED --natural end | skip--> PLAYING (next head) | IDLE (queue empty)
    any --stop--> closed, removed from the registry
"""

import asyncio
import random
from collections import deque
from contextlib import contextmanager
from enum import Enum
from typing import Awaitable, Callable, Iterable, Iterator

from loguru import logger

from core.exceptions import QueueFullError, RoomClosedError, SinkError
from core.filters import AudioFilter, filter_names
from core.playback import PlaybackSession
from core.protocols import PlaybackSink
from core.track import Track
from utils.artifact_cache import ArtifactCache

MAX_VOLUME_PERCENT = 150

ConnectCallback = Callable[[], Awaitable[PlaybackSink]]


class PlaybackStatus(Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"


class RoomPlayer:
    """
    Queue, loop/filter settings and playback state for one room.

    Track file ownership:
    - Files inside the artifact cache directory are shared and never deleted here
    - Everything else (filtered output, uncached downloads) belongs to the track
      and is deleted when the track is released
    - A track re-queued by loop keeps its file

    Attributes:
        room_id: Guild ID
        queue: Head is the current track while PLAYING/PAUSED
        status: PlaybackStatus
        loop: Re-queue finished tracks at the tail
        active_filters: Filters applied to new and re-applied tracks (ordered)
        volume: 1.0 = 100%
        sink: Connected PlaybackSink, or None while disconnected
        closed: Set by stop(); later requests raise RoomClosedError
        holders: Commands currently holding the room through RoomRegistry.claim()
    """

    def __init__(
        self,
        room_id: int,
        artifact_cache: ArtifactCache,
        *,
        max_queue_size: int = 50,
        volume_percent: int = 100,
    ) -> None:
        self.room_id = room_id
        self.artifact_cache = artifact_cache
        self.max_queue_size = max_queue_size
        self.queue: deque[Track] = deque()
        self.status = PlaybackStatus.IDLE
        self.loop = False
        self.active_filters: list[AudioFilter] = []
        self.volume = volume_percent / 100
        self.sink: PlaybackSink | None = None
        self.closed = False
        # Commands between get_or_create and enqueue; the room is not discarded while > 0
        self.holders = 0
        self.lock = asyncio.Lock()
        # Serializes filter changes so concurrent /filter calls stack instead of overwrite
        self._filter_lock = asyncio.Lock()
        self._session: PlaybackSession | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def current(self) -> Track | None:
        if self.status is PlaybackStatus.IDLE or not self.queue:
            return None
        return self.queue[0]

    @property
    def upcoming(self) -> list[Track]:
        return list(self.queue)[1:] if self.current else list(self.queue)

    @property
    def volume_percent(self) -> int:
        return round(self.volume * 100)

    # =========================================================================
    # Queue
    # =========================================================================

    async def enqueue(self, track: Track, connect: ConnectCallback) -> bool:
        """Append a track, starting playback if the room is idle.

        Args:
            track: Acquired track
            connect: Coroutine returning a connected sink, awaited only when
                the room has none. Must raise SinkError on failure.

        Returns:
            True if this track started playing, False if it was queued

        Raises:
            RoomClosedError: Room was stopped while the track was acquired
            QueueFullError: Queue already holds max_queue_size tracks
            SinkError: Could not connect. The track is not queued.

        On any raise the caller still owns the track and should release() it.
        """
        async with self.lock:
            if self.closed:
                raise RoomClosedError(f"room {self.room_id} was stopped")
            if len(self.queue) >= self.max_queue_size:
                raise QueueFullError(
                    f"queue is full ({self.max_queue_size} tracks)",
                    hint="wait for a few tracks to finish",
                )

            self.queue.append(track)
            logger.debug(f"room {self.room_id}: queued {track.title!r} ({len(self.queue)}/{self.max_queue_size})")
            if self.status is not PlaybackStatus.IDLE:
                return False

            if self.sink is None or not self.sink.is_connected():
                try:
                    self.sink = await connect()
                except SinkError:
                    self.queue.remove(track)
                    raise

            return await self._start_head()

    def toggle_loop(self) -> bool:
        self.loop = not self.loop
        logger.info(f"room {self.room_id}: loop {'on' if self.loop else 'off'}")
        return self.loop

    async def shuffle(self) -> int:
        """Shuffle upcoming tracks, keeping the current one at the head.

        Returns the number of tracks shuffled.
        """
        async with self.lock:
            keep = 1 if self.current else 0
            rest = list(self.queue)[keep:]
            random.shuffle(rest)
            self.queue = deque(list(self.queue)[:keep] + rest)
            return len(rest)

    async def set_volume(self, percent: int) -> None:
        if not 0 <= percent <= MAX_VOLUME_PERCENT:
            raise ValueError(f"volume must be 0-{MAX_VOLUME_PERCENT}, got {percent}")
        self.volume = percent / 100
        if self.sink is not None:
            self.sink.set_volume(self.volume)

    # =========================================================================
    # Transport
    # =========================================================================

    async def skip(self) -> bool:
        """End the current track early. Loop re-queue still applies.

        Returns False if nothing was playing.
        """
        async with self.lock:
            if self.current is None:
                return False
            skipped = self.queue[0]
            self._cancel_session()
            if self.sink is not None:
                self.sink.stop()
            logger.info(f"room {self.room_id}: skipped {skipped.title!r}")
            await self._advance()
            return True

    async def pause(self) -> bool:
        async with self.lock:
            if self.status is not PlaybackStatus.PLAYING or self.sink is None:
                return False
            self.sink.pause()
            self.status = PlaybackStatus.PAUSED
            return True

    async def resume(self) -> bool:
        async with self.lock:
            if self.status is not PlaybackStatus.PAUSED or self.sink is None:
                return False
            self.sink.resume()
            self.status = PlaybackStatus.PLAYING
            return True

    async def stop(self) -> None:
        """Close the room: drop the queue, release files, disconnect."""
        async with self.lock:
            self.closed = True
            self._cancel_session()
            if self.sink is not None:
                self.sink.stop()
            for track in self.queue:
                self.release(track)
            self.queue.clear()
            self.status = PlaybackStatus.IDLE
            await self._disconnect_sink()
            logger.info(f"room {self.room_id}: stopped")

    # =========================================================================
    # Filters
    # =========================================================================

    async def apply_filter(self, audio_filter: AudioFilter, pipeline) -> Track | None:
        """Add a filter and re-acquire the current track with the new set.

        Returns the restarted track, or None if nothing was playing (the
        filter is still kept for future tracks).

        Raises:
            AcquisitionError: Re-acquisition failed. Filters unchanged.
            RoomClosedError: Room stopped during re-acquisition.
        """
        async with self._filter_lock:
            filters = list(dict.fromkeys([*self.active_filters, audio_filter]))
            return await self._refilter(filters, pipeline)

    async def clear_filters(self, pipeline) -> Track | None:
        """Remove all filters and restart the current track unfiltered."""
        async with self._filter_lock:
            if not self.active_filters:
                return None
            return await self._refilter([], pipeline)

    async def _refilter(self, filters: list[AudioFilter], pipeline) -> Track | None:
        target = self.current
        if target is None:
            self.active_filters = filters
            return None

        # Acquisition runs outside the room lock so skip/pause stay responsive
        fresh = await pipeline.fetch(target.descriptor, filters, requested_by=target.requested_by)

        async with self.lock:
            if self.closed:
                self.release(fresh)
                raise RoomClosedError(f"room {self.room_id} was stopped")

            self.active_filters = filters

            if self.current is not target:
                # Track ended or was skipped meanwhile, keep filters for what comes next
                self.release(fresh)
                logger.debug(f"room {self.room_id}: {target.title!r} moved on before filters applied")
                return None

            self._cancel_session()
            if self.sink is not None:
                self.sink.stop()

            stale_path, stale_filtered = target.local_path, target.filtered
            target.local_path = fresh.local_path
            target.filtered = fresh.filtered
            target.duration = fresh.duration or target.duration
            self._release_path(stale_path, stale_filtered)

            logger.info(f"room {self.room_id}: restarting {target.title!r} with filters {filter_names(filters)}")
            await self._start_head()
            return target

    # =========================================================================
    # Internals (call with self.lock held)
    # =========================================================================

    async def _start_head(self) -> bool:
        """Start the queue head, dropping heads that fail to start.

        Goes IDLE and releases the sink when the queue runs out.
        Returns True if a track started.
        """
        self._loop = asyncio.get_running_loop()

        while self.queue and self.sink is not None:
            track = self.queue[0]
            session = PlaybackSession(track_id=track.track_id)
            self._session = session
            try:
                self.sink.play(track.local_path, self.volume, self._make_end_callback(session))
            except SinkError as e:
                session.cancel()
                logger.warning(f"room {self.room_id}: could not start {track.title!r}, skipping: {e}")
                self.queue.popleft()
                self.release(track)
                continue

            self.status = PlaybackStatus.PLAYING
            logger.info(f"room {self.room_id}: now playing {track.title!r}")
            return True

        self._session = None
        self.status = PlaybackStatus.IDLE
        for track in self.queue:
            self.release(track)
        self.queue.clear()
        await self._disconnect_sink()
        logger.info(f"room {self.room_id}: queue finished")
        return False

    async def _advance(self) -> None:
        """Drop the finished head (re-queueing it if loop is on) and start the next."""
        finished = self.queue.popleft()
        if self.loop:
            self.queue.append(finished)
        else:
            self.release(finished)
        await self._start_head()

    def _make_end_callback(self, session: PlaybackSession) -> Callable[[Exception | None], None]:
        loop = self._loop

        def on_end(error: Exception | None) -> None:
            # May run in the sink's audio thread: only schedule, never touch state
            if session.cancelled:
                return
            future = asyncio.run_coroutine_threadsafe(self._on_track_end(session, error), loop)
            future.add_done_callback(_log_callback_failure)

        return on_end

    async def _on_track_end(self, session: PlaybackSession, error: Exception | None) -> None:
        async with self.lock:
            # Ignore callbacks from superseded sessions
            if session.cancelled or self._session is not session:
                logger.debug(f"room {self.room_id}: ignoring end of superseded session {session.id}")
                return
            session.cancel()
            if error:
                logger.warning(f"room {self.room_id}: track ended with error: {error}")
            await self._advance()

    def _cancel_session(self) -> None:
        if self._session is not None:
            self._session.cancel()
        self._session = None

    async def _disconnect_sink(self) -> None:
        # Cleared before awaiting so voice events see an intentional disconnect
        sink, self.sink = self.sink, None
        if sink is not None:
            await sink.disconnect()

    # =========================================================================
    # File lifecycle
    # =========================================================================

    def release(self, track: Track) -> None:
        """Delete the track's file unless the artifact cache owns it."""
        self._release_path(track.local_path, track.filtered)

    def _release_path(self, path, filtered: bool) -> None:
        if not filtered and self.artifact_cache.owns(path):
            return
        try:
            path.unlink(missing_ok=True)
            logger.debug(f"room {self.room_id}: released {path.name}")
        except OSError as e:
            logger.warning(f"room {self.room_id}: failed to delete {path.name}: {e}")


def _log_callback_failure(future) -> None:
    if future.cancelled():
        return
    if (exc := future.exception()) is not None:
        logger.opt(exception=exc).error("track end handling failed")


class RoomRegistry:
    """Holds the RoomPlayer for each active room.

    Mutated only from the event loop thread, so no lock is needed.
    """

    def __init__(self, artifact_cache: ArtifactCache, *, max_queue_size: int = 50) -> None:
        self.artifact_cache = artifact_cache
        self.max_queue_size = max_queue_size
        self._rooms: dict[int, RoomPlayer] = {}

    def __contains__(self, room_id: int) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def rooms(self) -> Iterable[RoomPlayer]:
        return list(self._rooms.values())

    def get(self, room_id: int) -> RoomPlayer | None:
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: int, *, volume_percent: int = 100) -> RoomPlayer:
        player = self._rooms.get(room_id)
        if player is None:
            player = RoomPlayer(
                room_id,
                self.artifact_cache,
                max_queue_size=self.max_queue_size,
                volume_percent=volume_percent,
            )
            self._rooms[room_id] = player
            logger.debug(f"room {room_id}: created")
        return player

    async def stop(self, room_id: int) -> bool:
        """Stop and remove a room. Returns False if it did not exist."""
        player = self._rooms.pop(room_id, None)
        if player is None:
            return False
        await player.stop()
        return True

    @contextmanager
    def claim(self, room_id: int, *, volume_percent: int = 100) -> Iterator[RoomPlayer]:
        """Get or create a room and keep it registered while the caller works with it.

        On exit the room is discarded if it is idle and nobody else holds it,
        so a failed first /play does not leave an empty room behind while a
        concurrent /play for the same guild keeps the same player.

        Usage:
            with registry.claim(guild_id) as player:
                track = await pipeline.acquire(...)
                await player.enqueue(track, connect)
        """
        player = self.get_or_create(room_id, volume_percent=volume_percent)
        player.holders += 1
        try:
            yield player
        finally:
            player.holders -= 1
            if self._rooms.get(room_id) is player:
                self.discard_if_idle(room_id)

    def discard_if_idle(self, room_id: int) -> None:
        """Forget a room that never got going, unless a command still holds it."""
        player = self._rooms.get(room_id)
        if player is None or player.holders:
            return
        if player.status is PlaybackStatus.IDLE and not player.queue and player.sink is None:
            del self._rooms[room_id]
            logger.debug(f"room {room_id}: discarded")

    async def stop_all(self) -> None:
        for room_id in list(self._rooms):
            try:
                await self.stop(room_id)
            except Exception:
                logger.opt(exception=True).error(f"room {room_id}: error during shutdown")
