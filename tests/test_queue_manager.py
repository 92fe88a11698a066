from __future__ import annotations

import asyncio

from conftest import build_track
from encore.errors import AcquisitionError, AuthorizationRequiredError
from encore.models import LoopMode, PlaybackState, Provider, QueueSnapshot, SessionContext
from encore.player.manager import PlaybackQueueManager, PlaybackSettings
from encore.services.acquisition import AudioStream

SESSION = SessionContext(guild_id=42, channel_id=7)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakeSink:
    def __init__(self) -> None:
        self.played: list[str] = []
        self.callbacks = []
        self.stops = 0
        self.volume = None

    def play(self, stream, on_finish) -> None:
        self.played.append(stream.track.title)
        self.callbacks.append(on_finish)

    def finish(self, error: Exception | None = None) -> None:
        self.callbacks[-1](error)

    def pause(self) -> None:
        pass

    def resume(self) -> None:
        pass

    def stop(self) -> None:
        self.stops += 1

    def set_volume(self, volume: int) -> None:
        self.volume = volume


class _FakeEngine:
    def __init__(self, failures: dict | None = None, broken: set[str] | None = None) -> None:
        self.failures = {title: list(errors) for title, errors in (failures or {}).items()}
        self.broken = broken or set()
        self.requests: list[str] = []
        self.streams: list[AudioStream] = []
        self.cancels = 0
        self.unavailable: set[Provider] = set()
        self.gate: asyncio.Event | None = None

    async def get_stream(self, track, owner=None):
        self.requests.append(track.title)
        if self.gate is not None:
            await self.gate.wait()
        if track.title in self.broken:
            raise AcquisitionError(f"{track.title} is broken")
        pending = self.failures.get(track.title)
        if pending:
            raise pending.pop(0)
        stream = AudioStream(track, "fake", "url", track.url)
        self.streams.append(stream)
        return stream

    async def cancel(self, owner) -> int:
        self.cancels += 1
        return 0

    def provider_available(self, provider) -> bool:
        return provider not in self.unavailable


class _Recommender:
    def __init__(self, track) -> None:
        self.track = track

    async def get_next(self, seed, history):
        return self.track


class _MemoryStore:
    def __init__(self) -> None:
        self.saved: dict[str, QueueSnapshot] = {}
        self.saves = 0

    async def save(self, key, snapshot) -> None:
        self.saves += 1
        self.saved[key] = QueueSnapshot.from_dict(snapshot.to_dict())

    async def load(self, key):
        return self.saved.get(key)


def _manager(titles=(), engine=None, clock=None, **settings) -> tuple[PlaybackQueueManager, _FakeSink, _FakeEngine]:
    defaults = dict(auto_start=False, retry_delay=0, max_retry_delay=0, snapshot_debounce=0)
    defaults.update(settings)
    store = defaults.pop("store", None)
    recommender = defaults.pop("recommender", None)
    sink = _FakeSink()
    engine = engine or _FakeEngine()
    manager = PlaybackQueueManager(
        SESSION, engine, sink,
        store=store,
        recommender=recommender,
        settings=PlaybackSettings(**defaults),
        clock=clock or _Clock(),
    )
    manager.autoplay = False
    manager.tracks = [build_track(title) for title in titles]
    return manager, sink, engine


async def _settle(manager: PlaybackQueueManager) -> None:
    for _ in range(3):
        await asyncio.sleep(0)
        while manager._tasks:
            await asyncio.gather(*list(manager._tasks))


def test_play_starts_the_first_track() -> None:
    manager, sink, _ = _manager(["A", "B"])
    started = []

    async def on_start(track):
        started.append(track.title)

    manager.on_track_start = on_start
    assert asyncio.run(manager.play()) is True
    assert manager.state is PlaybackState.PLAYING
    assert manager.current_index == 0
    assert sink.played == ["A"]
    assert started == ["A"]


def test_natural_end_advances_to_next_track() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A", "B"], clock=clock)

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "B"]
    assert manager.current_index == 1
    assert [t.title for t in manager.history] == ["A", "B"]


def test_short_play_counts_as_failure_and_retries() -> None:
    manager, sink, _ = _manager(["A", "B"], min_play_seconds=5)

    async def run():
        await manager.play()
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "A"]
    assert manager.state is PlaybackState.PLAYING
    assert manager.consecutive_failures == 0


def test_player_error_triggers_recovery() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A", "B"], clock=clock)

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish(RuntimeError("ffmpeg died"))
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "A"]


def test_broken_track_is_skipped_after_the_limit() -> None:
    engine = _FakeEngine(broken={"A"})
    manager, sink, _ = _manager(["A", "B"], engine=engine, track_failure_limit=3)
    failed = []

    async def on_failed(track, error):
        failed.append(track.title)

    manager.on_track_failed = on_failed
    asyncio.run(manager.play())

    assert engine.requests == ["A", "A", "A", "B"]
    assert failed == ["A", "A", "A"]
    assert sink.played == ["B"]
    assert manager.current_index == 1


def test_authorization_error_skips_immediately() -> None:
    engine = _FakeEngine(failures={"A": [AuthorizationRequiredError("age gate")]})
    manager, sink, _ = _manager(["A", "B"], engine=engine)

    asyncio.run(manager.play())

    assert engine.requests == ["A", "B"]
    assert sink.played == ["B"]


def test_session_aborts_after_too_many_consecutive_failures() -> None:
    titles = [f"T{i}" for i in range(10)]
    engine = _FakeEngine(broken=set(titles))
    manager, sink, _ = _manager(titles, engine=engine, track_failure_limit=3, session_failure_limit=5)
    reasons = []

    async def on_abort(reason):
        reasons.append(reason)

    manager.on_abort = on_abort
    asyncio.run(manager.play())

    assert len(engine.requests) == 6
    assert len(reasons) == 1
    assert manager.state is PlaybackState.IDLE
    assert manager.current_index == -1
    assert sink.played == []


def test_loop_track_replays_and_loop_queue_wraps() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A", "B"], clock=clock)

    async def run():
        manager.set_loop_mode(LoopMode.TRACK)
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)
        manager.set_loop_mode("queue")
        clock.now += 30
        sink.finish()
        await _settle(manager)
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "A", "B", "A"]


def test_end_of_queue_without_autoplay_clears_position() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A"], clock=clock)

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert manager.state is PlaybackState.IDLE
    assert manager.current_index == -1
    assert manager.queue_length == 1


def test_autoplay_appends_a_recommendation() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A"], clock=clock, recommender=_Recommender(build_track("R", author="Other")))
    manager.autoplay = True

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "R"]
    assert [t.title for t in manager.tracks] == ["A", "R"]


def test_duplicate_recommendation_is_rejected() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A"], clock=clock, recommender=_Recommender(build_track("A (Official Video)")))
    manager.autoplay = True

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A"]
    assert manager.queue_length == 1
    assert manager.current_index == -1


def test_continuous_off_parks_on_next_track() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A", "B"], clock=clock)
    manager.continuous = False

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A"]
    assert manager.current_index == 1
    assert manager.state is PlaybackState.IDLE


def test_skip_and_stop() -> None:
    manager, sink, engine = _manager(["A", "B", "C"])

    async def run():
        await manager.play()
        assert await manager.skip() is True
        assert manager.current_track.title == "B"
        await manager.stop()

    asyncio.run(run())
    assert sink.played == ["A", "B"]
    assert manager.state is PlaybackState.IDLE
    assert manager.current_index == -1
    assert engine.cancels == 1
    assert all(stream.closed for stream in engine.streams)


def test_stale_finish_callback_is_ignored() -> None:
    clock = _Clock()
    manager, sink, _ = _manager(["A", "B", "C"], clock=clock)

    async def run():
        await manager.play()
        await manager.skip()
        clock.now += 30
        sink.callbacks[0](None)
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "B"]
    assert manager.current_track.title == "B"
    assert manager.state is PlaybackState.PLAYING


def test_commands_during_buffering_are_safe() -> None:
    engine = _FakeEngine()
    manager, sink, _ = _manager(["A", "B"], engine=engine)

    async def run():
        engine.gate = asyncio.Event()
        task = asyncio.create_task(manager.play())
        await asyncio.sleep(0)
        assert manager.state is PlaybackState.BUFFERING
        assert await manager.skip() is False
        assert await manager.play(1) is False
        await manager.stop()
        engine.gate.set()
        return await task

    assert asyncio.run(run()) is False
    assert sink.played == []
    assert manager.state is PlaybackState.IDLE
    assert engine.streams[0].closed


def test_removing_the_current_track_plays_the_next() -> None:
    manager, sink, _ = _manager(["A", "B"])

    async def run():
        await manager.play()
        removed = manager.remove(0)
        await _settle(manager)
        return removed

    removed = asyncio.run(run())
    assert removed.title == "A"
    assert sink.played == ["A", "B"]
    assert manager.current_index == 0


def test_queue_edits_keep_the_cursor_on_the_same_track() -> None:
    manager, _, _ = _manager(["A", "B", "C", "D"])
    manager.current_index = 2

    manager.remove(0)
    assert manager.current_track.title == "C"
    manager.move(1, 0)
    assert manager.current_track.title == "C"
    manager.move(0, 2)
    assert manager.current_track.title == "C"
    assert manager.current_index == 2


def test_shuffle_only_touches_upcoming_tracks() -> None:
    manager, _, _ = _manager(["A", "B", "C", "D", "E"])
    manager.current_index = 1

    manager.shuffle()

    assert [t.title for t in manager.tracks[:2]] == ["A", "B"]
    assert sorted(t.title for t in manager.upcoming) == ["C", "D", "E"]


def test_add_to_queue_auto_starts_when_idle() -> None:
    manager, sink, _ = _manager(auto_start=True)

    async def run():
        length = manager.add_to_queue(build_track("A"))
        await _settle(manager)
        return length

    assert asyncio.run(run()) == 1
    assert sink.played == ["A"]


def test_volume_is_clamped_and_applied() -> None:
    manager, sink, _ = _manager()
    assert manager.set_volume(150) == 100
    assert sink.volume == 100
    assert manager.set_volume(-3) == 0


def test_snapshot_is_saved_and_restored_without_unavailable_providers() -> None:
    store = _MemoryStore()

    async def run():
        manager, _, _ = _manager(store=store)
        manager.add_to_queue(build_track("A"))
        manager.add_to_queue(build_track("S", provider=Provider.SOUNDCLOUD))
        manager.set_loop_mode(LoopMode.QUEUE)
        manager.set_volume(70)
        await manager.flush()

        engine = _FakeEngine()
        engine.unavailable.add(Provider.SOUNDCLOUD)
        restored, _, _ = _manager(store=store, engine=engine)
        ok = await restored.restore()
        return ok, restored

    ok, restored = asyncio.run(run())
    assert ok
    assert [t.title for t in restored.tracks] == ["A"]
    assert restored.current_index == -1
    assert restored.loop_mode is LoopMode.QUEUE
    assert restored.volume == 70


def test_snapshot_writes_are_debounced() -> None:
    store = _MemoryStore()

    async def run():
        manager, _, _ = _manager(store=store, snapshot_debounce=0.05)
        for title in ("A", "B", "C"):
            manager.add_to_queue(build_track(title))
        await asyncio.sleep(0.2)
        return manager

    asyncio.run(run())
    assert store.saves == 1
    assert len(store.saved[SESSION.key].tracks) == 3


def test_add_to_queue_never_moves_the_cursor_of_a_non_empty_queue() -> None:
    manager, _, _ = _manager(["A", "B"], auto_start=True)
    manager.current_index = 1

    assert manager.add_to_queue(build_track("C")) == 3
    assert manager.current_index == 1
    assert manager.queue_length == 3


def test_error_reported_during_track_start_hook_is_retried() -> None:
    manager, sink, engine = _manager(["A", "B"])
    failed = []

    async def on_start(track):
        # The player dies while the start announcement is still being sent
        if len(sink.played) == 1:
            sink.finish(AcquisitionError("ffmpeg exited: 403"))
            await asyncio.sleep(0.01)

    async def on_failed(track, error):
        failed.append(track.title)

    manager.on_track_start = on_start
    manager.on_track_failed = on_failed

    async def run():
        await manager.play()
        await _settle(manager)

    asyncio.run(run())
    assert failed == ["A"]
    assert sink.played == ["A", "A"]
    assert engine.requests == ["A", "A"]
    assert manager.state is PlaybackState.PLAYING
    assert not manager.is_transitioning


def test_stale_error_during_track_start_hook_is_dropped() -> None:
    manager, sink, _ = _manager(["A", "B"])
    first_finish = []

    async def on_start(track):
        if track.title == "A":
            first_finish.append(sink.callbacks[-1])

    manager.on_track_start = on_start

    async def run():
        await manager.play()
        await manager.skip()
        # Late error from A's superseded play
        first_finish[0](AcquisitionError("ffmpeg exited"))
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "B"]
    assert manager.current_index == 1
    assert manager.state is PlaybackState.PLAYING


class _SequenceRecommender:
    def __init__(self, *tracks) -> None:
        self.tracks = list(tracks)
        self.histories: list[list[str]] = []

    async def get_next(self, seed, history):
        self.histories.append([t.title for t in history])
        return self.tracks.pop(0) if self.tracks else None


def test_duplicate_recommendation_asks_again() -> None:
    clock = _Clock()
    recommender = _SequenceRecommender(build_track("A (Official Video)"), build_track("Fresh", author="Other"))
    manager, sink, _ = _manager(["A"], clock=clock, recommender=recommender)
    manager.autoplay = True

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert sink.played == ["A", "Fresh"]
    assert [t.title for t in manager.tracks] == ["A", "Fresh"]
    # The rejected pick is handed back so the recommender can avoid it
    assert recommender.histories[1][-1] == "A (Official Video)"


def test_duplicate_recommendations_give_up_after_bounded_attempts() -> None:
    clock = _Clock()
    recommender = _SequenceRecommender(*[build_track("A (Official Video)") for _ in range(5)])
    manager, sink, _ = _manager(["A"], clock=clock, recommender=recommender, recommendation_attempts=3)
    manager.autoplay = True

    async def run():
        await manager.play()
        clock.now += 30
        sink.finish()
        await _settle(manager)

    asyncio.run(run())
    assert len(recommender.histories) == 3
    assert sink.played == ["A"]
    assert manager.current_index == -1


def test_bind_voice_channel_keeps_the_session_key() -> None:
    manager, _, _ = _manager(["A"])
    key = manager.session.key

    manager.bind_voice_channel(99)

    assert manager.session.channel_id == 99
    assert manager.session.guild_id == SESSION.guild_id
    assert manager.session.key == key
