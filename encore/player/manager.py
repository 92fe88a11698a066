"""
Playback queue manager - per voice session queue and playback state machine
"""
import asyncio
import logging
import random
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable

from encore.errors import AcquisitionError, AuthorizationRequiredError
from encore.models import LoopMode, PlaybackState, QueueSnapshot, SessionContext, Track
from encore.player.audio import AudioSink, StreamSource
from encore.services.acquisition import AudioStream
from encore.services.recommendations import RecommendationEngine

logger = logging.getLogger(__name__)


@dataclass
class PlaybackSettings:
    track_failure_limit: int = 3
    session_failure_limit: int = 5
    min_play_seconds: float = 5.0
    retry_delay: float = 1.0
    max_retry_delay: float = 3.0
    snapshot_debounce: float = 3.0
    default_volume: int = 50
    history_size: int = 50
    recent_window: int = 20
    recommendation_attempts: int = 3
    auto_start: bool = True

    @classmethod
    def from_config(cls, cfg) -> "PlaybackSettings":
        return cls(
            track_failure_limit=cfg.TRACK_FAILURE_LIMIT,
            session_failure_limit=cfg.SESSION_FAILURE_LIMIT,
            min_play_seconds=cfg.MIN_PLAY_SECONDS,
            retry_delay=cfg.RETRY_DELAY_SECONDS,
            snapshot_debounce=cfg.SNAPSHOT_DEBOUNCE_SECONDS,
            default_volume=cfg.DEFAULT_VOLUME,
        )


class PlaybackQueueManager:
    """Owns one session's queue, cursor and player state.

    State changes run on the event loop. Track-end and error handling are
    serialized by ``_transitioning``; every play bumps ``_generation`` so
    callbacks and in-flight acquisitions from a superseded play are ignored.
    """

    def __init__(
        self,
        session: SessionContext,
        engine: StreamSource,
        sink: AudioSink,
        store=None,
        recommender: RecommendationEngine | None = None,
        settings: PlaybackSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.engine = engine
        self.sink = sink
        self.store = store
        self.recommender = recommender
        self.settings = settings or PlaybackSettings()
        self._clock = clock

        self.tracks: list[Track] = []
        self.current_index = -1
        self.loop_mode = LoopMode.OFF
        self.volume = self.settings.default_volume
        self.autoplay = True
        self.continuous = True
        self.state = PlaybackState.IDLE
        self.history: deque[Track] = deque(maxlen=self.settings.history_size)

        self._track_failures: dict[str, int] = {}
        self._consecutive_failures = 0
        self._transitioning = False
        self._pending_end: tuple[int, Exception | None] | None = None
        self._generation = 0
        self._started_at = 0.0
        self._stream: AudioStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._dirty = False
        self._save_task: asyncio.Task | None = None

        # Platform hooks
        self.on_track_start: Callable[[Track], Awaitable[None]] | None = None
        self.on_track_failed: Callable[[Track, Exception], Awaitable[None]] | None = None
        self.on_abort: Callable[[str], Awaitable[None]] | None = None

    # ==================== PROPERTIES ====================

    @property
    def current_track(self) -> Track | None:
        if 0 <= self.current_index < len(self.tracks):
            return self.tracks[self.current_index]
        return None

    @property
    def queue_length(self) -> int:
        return len(self.tracks)

    @property
    def upcoming(self) -> list[Track]:
        return self.tracks[self.current_index + 1:]

    @property
    def is_transitioning(self) -> bool:
        return self._transitioning

    def failure_count(self, track: Track) -> int:
        return self._track_failures.get(track.source_id, 0)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # ==================== QUEUE MUTATIONS ====================

    def add_to_queue(self, track: Track) -> int:
        """Append a track; returns the new queue length."""
        was_empty = not self.tracks
        self.tracks.append(track)
        self._mark_dirty()
        if was_empty and self.settings.auto_start and self.state is PlaybackState.IDLE:
            self.current_index = 0
            self._spawn(self.play())
        return len(self.tracks)

    def insert_next(self, track: Track) -> int:
        """Insert right after the current track; returns its index."""
        if not self.tracks:
            self.add_to_queue(track)
            return 0
        position = self.current_index + 1 if self.current_index >= 0 else len(self.tracks)
        self.tracks.insert(position, track)
        self._mark_dirty()
        return position

    def remove(self, index: int) -> Track:
        if not 0 <= index < len(self.tracks):
            raise IndexError(f"No track at position {index}")
        track = self.tracks.pop(index)
        if index < self.current_index:
            self.current_index -= 1
        elif index == self.current_index:
            was_active = self.state in (PlaybackState.PLAYING, PlaybackState.PAUSED, PlaybackState.BUFFERING)
            self._halt_output()
            self.state = PlaybackState.IDLE
            if index < len(self.tracks):
                # The following track slides into the removed slot
                self.current_index = index
                if was_active:
                    self._spawn(self.play())
            else:
                self.current_index = -1
        self._mark_dirty()
        logger.info(f"[{self.session.key}] Removed {track.display()} (index {index})")
        return track

    def move(self, source: int, destination: int) -> None:
        size = len(self.tracks)
        if not 0 <= source < size or not 0 <= destination < size:
            raise IndexError(f"Cannot move {source} -> {destination} in a queue of {size}")
        if source == destination:
            return
        track = self.tracks.pop(source)
        self.tracks.insert(destination, track)
        current = self.current_index
        if current == source:
            self.current_index = destination
        elif source < current <= destination:
            self.current_index -= 1
        elif destination <= current < source:
            self.current_index += 1
        self._mark_dirty()

    def shuffle(self) -> None:
        """Shuffle the tracks after the current one."""
        start = self.current_index + 1
        upcoming = self.tracks[start:]
        random.shuffle(upcoming)
        self.tracks[start:] = upcoming
        self._mark_dirty()

    async def clear(self) -> None:
        await self.stop()
        self.tracks.clear()
        self._track_failures.clear()
        self._mark_dirty()

    def set_loop_mode(self, mode: LoopMode | str) -> None:
        self.loop_mode = LoopMode(mode)
        self._mark_dirty()

    def set_volume(self, volume: int) -> int:
        self.volume = max(0, min(100, int(volume)))
        self.sink.set_volume(self.volume)
        self._mark_dirty()
        return self.volume

    def set_autoplay(self, enabled: bool) -> None:
        self.autoplay = enabled
        self._mark_dirty()

    def set_continuous(self, enabled: bool) -> None:
        self.continuous = enabled
        self._mark_dirty()

    def bind_voice_channel(self, channel_id: int) -> None:
        """Record the voice channel the session now plays in; the session key stays the guild."""
        if self.session.channel_id != channel_id:
            self.session = SessionContext(self.session.guild_id, channel_id)

    # ==================== PLAYBACK CONTROL ====================

    async def play(self, index: int | None = None) -> bool:
        """Start the track at ``index`` (default: current, or the first)."""
        if self._transitioning:
            logger.info(f"[{self.session.key}] play() ignored, transition in progress")
            return False
        if not self.tracks:
            return False
        if index is None:
            index = self.current_index if self.current_index >= 0 else 0
        if not 0 <= index < len(self.tracks):
            raise IndexError(f"No track at position {index}")

        self._transitioning = True
        try:
            self.current_index = index
            error = await self._start_current()
            if error is not None:
                await self._recover(error)
        finally:
            self._end_transition()
        return self.state is PlaybackState.PLAYING

    async def jump_to(self, index: int) -> bool:
        return await self.play(index)

    def pause(self) -> bool:
        if self.state is not PlaybackState.PLAYING:
            return False
        self.sink.pause()
        self.state = PlaybackState.PAUSED
        return True

    def resume(self) -> bool:
        if self.state is not PlaybackState.PAUSED:
            return False
        self.sink.resume()
        self.state = PlaybackState.PLAYING
        return True

    async def stop(self) -> None:
        """Stop playback, cancel pending downloads and reset the cursor."""
        self._halt_output()
        cancelled = await self.engine.cancel(self.session)
        if cancelled:
            logger.info(f"[{self.session.key}] Cancelled {cancelled} pending download(s)")
        self.state = PlaybackState.IDLE
        self.current_index = -1
        self._consecutive_failures = 0
        self._mark_dirty()

    async def skip(self) -> bool:
        if self._transitioning:
            logger.info(f"[{self.session.key}] skip() ignored, transition in progress")
            return False
        current = self.current_track
        if current is None:
            return False

        self._transitioning = True
        try:
            self._halt_output()
            target = await self._next_index(current, natural=False)
            if target is None:
                self._clear_position()
                return True
            self.current_index = target
            error = await self._start_current()
            if error is not None:
                await self._recover(error)
        finally:
            self._end_transition()
        return True

    # ==================== STATE MACHINE ====================

    async def _start_current(self) -> Exception | None:
        """Acquire and play the current track; returns the failure, if any."""
        track = self.current_track
        if track is None:
            self.state = PlaybackState.IDLE
            return None

        self._halt_output()
        generation = self._generation
        self._loop = asyncio.get_running_loop()
        self.state = PlaybackState.BUFFERING
        logger.info(f"[{self.session.key}] Buffering {track.display()}")

        try:
            stream = await self.engine.get_stream(track, owner=self.session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return None
            self.state = PlaybackState.ERROR
            logger.warning(f"[{self.session.key}] Could not get a stream for {track.display()}: {e}")
            return e

        if generation != self._generation:
            # stop()/skip() happened while we were buffering
            stream.close()
            return None

        self._stream = stream
        try:
            self.sink.play(stream, partial(self._on_sink_finished, generation))
        except Exception as e:
            stream.close()
            self._stream = None
            self.state = PlaybackState.ERROR
            logger.error(f"[{self.session.key}] Player rejected {track.display()}: {e}")
            return e

        self.state = PlaybackState.PLAYING
        self._started_at = self._clock()
        self._consecutive_failures = 0
        self._track_failures.pop(track.source_id, None)
        self.history.append(track)
        logger.info(f"[{self.session.key}] Playing {track.display()} via {stream.method}")
        await self._fire(self.on_track_start, track)
        return None

    def _halt_output(self) -> None:
        """Invalidate the running play and silence the sink."""
        self._generation += 1
        stream, self._stream = self._stream, None
        if stream is not None:
            self.sink.stop()
            stream.close()

    def _on_sink_finished(self, generation: int, error: Exception | None = None) -> None:
        """Player callback; may run on the voice thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule_track_end, generation, error)
        except RuntimeError:
            logger.debug(f"[{self.session.key}] Event loop closed; dropping track end")

    def _schedule_track_end(self, generation: int, error: Exception | None) -> None:
        self._spawn(self._handle_track_end(generation, error))

    async def _handle_track_end(self, generation: int, error: Exception | None) -> None:
        if generation != self._generation:
            return
        if self._transitioning:
            # Handled once the running transition finishes
            logger.debug(f"[{self.session.key}] Track end deferred, transition in progress")
            self._pending_end = (generation, error)
            return

        self._transitioning = True
        try:
            stream, self._stream = self._stream, None
            if stream is not None:
                stream.close()
            elapsed = self._clock() - self._started_at
            if error is None and elapsed >= self.settings.min_play_seconds:
                self.state = PlaybackState.IDLE
                await self._advance_natural()
            else:
                if error is None:
                    error = AcquisitionError(f"stream ended after only {elapsed:.1f}s")
                self.state = PlaybackState.ERROR
                logger.warning(f"[{self.session.key}] Playback failed: {error}")
                await self._recover(error)
        finally:
            self._end_transition()

    def _end_transition(self) -> None:
        self._transitioning = False
        self._mark_dirty()
        pending, self._pending_end = self._pending_end, None
        if pending is not None and pending[0] == self._generation:
            self._spawn(self._handle_track_end(*pending))

    async def _advance_natural(self) -> None:
        finished = self.current_track
        if finished is None:
            return
        if (not self.continuous and self.loop_mode is not LoopMode.TRACK
                and self.current_index + 1 < len(self.tracks)):
            # Park on the next track without starting it
            self._halt_output()
            self.current_index += 1
            self.state = PlaybackState.IDLE
            return
        target = await self._next_index(finished, natural=True)
        if target is None:
            self._clear_position()
            return
        self.current_index = target
        error = await self._start_current()
        if error is not None:
            await self._recover(error)

    async def _next_index(self, finished: Track, natural: bool) -> int | None:
        """Where to go after ``finished``: loop, next track, wrap, or a recommendation."""
        if natural and self.loop_mode is LoopMode.TRACK:
            return self.current_index
        if self.current_index + 1 < len(self.tracks):
            return self.current_index + 1
        if self.loop_mode is LoopMode.QUEUE and self.tracks:
            return 0
        if self.autoplay:
            return await self._append_recommendation(finished)
        return None

    async def _recover(self, error: Exception) -> None:
        """Retry or skip after a failure until something plays or we give up."""
        while error is not None:
            track = self.current_track
            if track is None:
                self._clear_position()
                return
            generation = self._generation

            count = self._track_failures.get(track.source_id, 0) + 1
            if isinstance(error, AuthorizationRequiredError):
                count = max(count, self.settings.track_failure_limit)
            self._track_failures[track.source_id] = count
            self._consecutive_failures += 1
            await self._fire(self.on_track_failed, track, error)

            if self._consecutive_failures > self.settings.session_failure_limit:
                await self._abort(f"{self._consecutive_failures} consecutive playback failures")
                return

            if count >= self.settings.track_failure_limit:
                logger.warning(f"[{self.session.key}] Giving up on {track.display()} after {count} failure(s)")
                self._track_failures.pop(track.source_id, None)
                target = None
                if self.current_index + 1 < len(self.tracks):
                    target = self.current_index + 1
                elif self.autoplay:
                    target = await self._append_recommendation(track)
                if generation != self._generation:
                    return
                if target is None:
                    self._clear_position()
                    return
                self.current_index = target
            else:
                delay = min(self.settings.retry_delay * count, self.settings.max_retry_delay)
                logger.info(f"[{self.session.key}] Retrying {track.display()} in {delay:.1f}s (attempt {count + 1})")
                await asyncio.sleep(delay)
                if generation != self._generation:
                    return

            error = await self._start_current()

    async def _abort(self, reason: str) -> None:
        logger.error(f"[{self.session.key}] Playback stopped: {reason}")
        self._halt_output()
        await self.engine.cancel(self.session)
        self.state = PlaybackState.IDLE
        self.current_index = -1
        self._consecutive_failures = 0
        self._track_failures.clear()
        await self._fire(self.on_abort, reason)

    def _clear_position(self) -> None:
        self._halt_output()
        self.state = PlaybackState.IDLE
        self.current_index = -1
        logger.info(f"[{self.session.key}] Queue finished")

    # ==================== AUTOPLAY ====================

    def _is_duplicate(self, candidate: Track) -> bool:
        recent = list(self.history)[-self.settings.recent_window:]
        current = self.current_track
        if current is not None:
            recent.append(current)
        key = candidate.dedup_key
        return any(t.dedup_key == key or t.url == candidate.url for t in recent)

    async def _append_recommendation(self, seed: Track) -> int | None:
        if self.recommender is None:
            return None
        # Rejected picks are passed back as history so the next ask avoids them
        rejected: list[Track] = []
        for _ in range(self.settings.recommendation_attempts):
            try:
                recommendation = await self.recommender.get_next(seed, list(self.history) + rejected)
            except Exception as e:
                logger.warning(f"[{self.session.key}] Recommendation failed for {seed.display()}: {e}")
                return None
            if recommendation is None:
                return None
            if not self._is_duplicate(recommendation):
                self.tracks.append(recommendation)
                logger.info(f"[{self.session.key}] Autoplay queued {recommendation.display()}")
                return len(self.tracks) - 1
            logger.info(f"[{self.session.key}] Skipping duplicate recommendation {recommendation.display()}")
            rejected.append(recommendation)
        return None

    # ==================== PERSISTENCE ====================

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            tracks=list(self.tracks),
            current_index=self.current_index,
            loop_mode=self.loop_mode,
            volume=self.volume,
            autoplay=self.autoplay,
            continuous=self.continuous,
        )

    def _mark_dirty(self) -> None:
        if self.store is None:
            return
        self._dirty = True
        if self._save_task is None or self._save_task.done():
            self._save_task = asyncio.get_running_loop().create_task(self._save_loop())

    async def _save_loop(self) -> None:
        # At most one write per debounce window
        while self._dirty:
            await asyncio.sleep(self.settings.snapshot_debounce)
            self._dirty = False
            await self._save_now()

    async def _save_now(self) -> None:
        try:
            await self.store.save(self.session.key, self.snapshot())
        except Exception as e:
            logger.error(f"[{self.session.key}] Failed to save queue snapshot: {e}")

    async def flush(self) -> None:
        """Write the snapshot now instead of waiting for the debounce."""
        if self.store is None:
            return
        self._dirty = False
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._save_task
        await self._save_now()

    async def restore(self) -> bool:
        """Load the saved queue; the cursor always starts at 'not started'."""
        if self.store is None:
            return False
        try:
            snapshot = await self.store.load(self.session.key)
        except Exception as e:
            logger.error(f"[{self.session.key}] Could not load queue snapshot: {e}")
            return False
        if snapshot is None:
            return False

        tracks = [t for t in snapshot.tracks if self.engine.provider_available(t.provider)]
        dropped = len(snapshot.tracks) - len(tracks)
        if dropped:
            logger.info(f"[{self.session.key}] Dropped {dropped} track(s) from unavailable providers")

        self.tracks = tracks
        self.current_index = -1
        self.loop_mode = snapshot.loop_mode
        self.volume = snapshot.volume
        self.autoplay = snapshot.autoplay
        self.continuous = snapshot.continuous
        self.state = PlaybackState.IDLE
        logger.info(f"[{self.session.key}] Restored queue with {len(tracks)} track(s)")
        return True

    async def shutdown(self) -> None:
        self._halt_output()
        self.state = PlaybackState.IDLE
        for task in list(self._tasks):
            task.cancel()
        await self.flush()

    # ==================== HELPERS ====================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fire(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            await hook(*args)
        except Exception as e:
            logger.error(f"[{self.session.key}] Hook {getattr(hook, '__name__', hook)} failed: {e}")
