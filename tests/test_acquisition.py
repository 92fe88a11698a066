from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from conftest import build_track
from encore.errors import (
    AcquisitionError,
    AllMethodsFailedError,
    AuthorizationRequiredError,
    JobCancelledError,
    PlatformBlockingError,
)
from encore.models import Provider
from encore.services.acquisition import (
    AcquisitionMethod,
    AlternateProviderMethod,
    AudioStream,
    CacheMethod,
    PlaybackResolveMethod,
    SearchFallbackMethod,
    StreamAcquisitionEngine,
)
from encore.services.cache import CacheStore
from encore.services.health import MethodHealthTracker


class _FakeMethod(AcquisitionMethod):
    def __init__(self, name: str, provider: Provider | None = Provider.YOUTUBE, error: Exception | None = None,
                 delay: float = 0.0, timeout: float = 1.0):
        self.name = name
        self.provider = provider
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.calls = 0

    async def attempt(self, track, owner):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return AudioStream(track, self.name, "url", f"https://cdn.test/{self.name}")


class _FakeResolver:
    def __init__(self, playback=None, alternate=None):
        self.playback = playback
        self.alternate = alternate

    async def resolve_for_playback(self, track):
        return self.playback

    async def find_alternate(self, track):
        if self.alternate is None:
            raise AcquisitionError("no alternate")
        return self.alternate


def _engine(methods, health=None, **kwargs) -> StreamAcquisitionEngine:
    return StreamAcquisitionEngine(health or MethodHealthTracker(), chains={Provider.YOUTUBE: methods}, **kwargs)


def test_falls_through_to_next_method_and_records_health() -> None:
    failing = _FakeMethod("youtube-direct", error=AcquisitionError("no formats"))
    working = _FakeMethod("youtube-download")
    health = MethodHealthTracker()
    track = build_track()

    stream = asyncio.run(_engine([failing, working], health).run_chain(track))

    assert stream.method == "youtube-download"
    assert health.get("youtube-direct").consecutive_failures == 1
    assert health.get("youtube-download").total_successes == 1
    assert track.acquisition_hint == "youtube-download"


def test_cache_hit_short_circuits_the_chain(tmp_path) -> None:
    cache = CacheStore(tmp_path / "cache")
    track = build_track()
    produced = tmp_path / "done.mp3"
    produced.write_bytes(b"audio")
    cache.store(track.source_id, produced)
    network = _FakeMethod("youtube-direct")
    health = MethodHealthTracker()

    stream = asyncio.run(_engine([CacheMethod(cache), network], health).run_chain(track))

    assert stream.method == "cache"
    assert stream.kind == "file"
    assert stream.handle.read() == b"audio"
    stream.close()
    assert network.calls == 0
    assert health.get("cache") is None


def test_cache_miss_is_not_a_health_failure(tmp_path) -> None:
    health = MethodHealthTracker()
    engine = _engine([CacheMethod(CacheStore(tmp_path)), _FakeMethod("youtube-direct")], health)

    stream = asyncio.run(engine.run_chain(build_track()))

    assert stream.method == "youtube-direct"
    assert health.get("cache") is None


def test_cooling_down_methods_are_skipped() -> None:
    health = MethodHealthTracker()
    health.record_failure("youtube-direct", "earlier")
    skipped = _FakeMethod("youtube-direct")
    fallback = _FakeMethod("youtube-download")

    stream = asyncio.run(_engine([skipped, fallback], health).run_chain(build_track()))

    assert stream.method == "youtube-download"
    assert skipped.calls == 0


def test_fails_open_when_every_method_is_cooling_down() -> None:
    health = MethodHealthTracker()
    health.record_failure("youtube-direct", "earlier")
    health.record_failure("youtube-download", "earlier")
    direct = _FakeMethod("youtube-direct")

    stream = asyncio.run(_engine([direct, _FakeMethod("youtube-download")], health).run_chain(build_track()))

    assert stream.method == "youtube-direct"
    assert direct.calls == 1


def test_authorization_error_stops_the_chain() -> None:
    later = _FakeMethod("youtube-download")
    engine = _engine([_FakeMethod("youtube-direct", error=AuthorizationRequiredError("age gate")), later])

    with pytest.raises(AuthorizationRequiredError):
        asyncio.run(engine.run_chain(build_track()))
    assert later.calls == 0


def test_blocking_skips_the_rest_of_that_provider() -> None:
    blocked_next = _FakeMethod("youtube-download")
    other = _FakeMethod("search-fallback", provider=None)
    engine = _engine([_FakeMethod("youtube-direct", error=PlatformBlockingError("not a bot")), blocked_next, other])

    stream = asyncio.run(engine.run_chain(build_track()))

    assert stream.method == "search-fallback"
    assert blocked_next.calls == 0


def test_timeout_counts_as_failure() -> None:
    health = MethodHealthTracker()
    slow = _FakeMethod("youtube-direct", delay=1.0, timeout=0.05)

    with pytest.raises(AllMethodsFailedError) as excinfo:
        asyncio.run(_engine([slow], health).run_chain(build_track()))

    assert health.get("youtube-direct").consecutive_failures == 1
    assert "timed out" in str(excinfo.value)


def test_exhaustion_reports_every_attempt() -> None:
    engine = _engine(
        [_FakeMethod("youtube-direct", error=AcquisitionError("403")),
         _FakeMethod("youtube-download", error=AcquisitionError("exit 1"))],
        fallbacks=[_FakeMethod("search-fallback", provider=None, error=AcquisitionError("no hits"))],
    )

    with pytest.raises(AllMethodsFailedError) as excinfo:
        asyncio.run(engine.run_chain(build_track()))

    assert excinfo.value.methods == ["youtube-direct", "youtube-download", "search-fallback"]


def test_hint_moves_method_right_after_cache(tmp_path) -> None:
    cache = CacheMethod(CacheStore(tmp_path))
    direct = _FakeMethod("youtube-direct")
    download = _FakeMethod("youtube-download")
    engine = _engine([cache, direct, download])
    track = build_track(acquisition_hint="youtube-download")

    assert [m.name for m in engine.build_chain(track)] == ["cache", "youtube-download", "youtube-direct"]


def test_stream_ceiling_blocks_until_a_stream_is_closed() -> None:
    engine = _engine([_FakeMethod("youtube-direct")], max_concurrent_streams=1)

    async def run():
        first = await engine.get_stream(build_track("A"))
        waiter = asyncio.create_task(engine.get_stream(build_track("B")))
        await asyncio.sleep(0.05)
        blocked = not waiter.done()
        first.close()
        second = await asyncio.wait_for(waiter, timeout=1)
        active = engine.active_streams
        second.close()
        return blocked, active, engine.active_streams

    blocked, active, after = asyncio.run(run())
    assert blocked
    assert active == 1
    assert after == 0


def test_failed_acquisition_releases_its_slot() -> None:
    engine = _engine([_FakeMethod("youtube-direct", error=AcquisitionError("boom"))], max_concurrent_streams=1)

    async def run():
        for _ in range(2):
            with pytest.raises(AllMethodsFailedError):
                await engine.get_stream(build_track())
        return engine.active_streams

    assert asyncio.run(run()) == 0


def test_playback_resolve_acquires_the_matched_track() -> None:
    spotify_track = build_track("Halo", provider=Provider.SPOTIFY)
    youtube_track = build_track("Halo", provider_id="yt")
    engine = _engine([_FakeMethod("youtube-direct")], resolver=_FakeResolver(playback=youtube_track))
    engine.set_chain(Provider.SPOTIFY, [PlaybackResolveMethod(engine, timeout=1)])

    stream = asyncio.run(engine.run_chain(spotify_track))

    assert stream.method == "youtube-direct"
    assert stream.track is spotify_track
    assert youtube_track.acquisition_hint == "youtube-direct"


def test_alternate_provider_runs_the_other_chain_once() -> None:
    original = build_track("Halo")
    alternate = replace(build_track("Halo", provider=Provider.SOUNDCLOUD), tried_alternate=True)
    engine = _engine(
        [_FakeMethod("youtube-direct", error=AcquisitionError("gone"))],
        resolver=_FakeResolver(alternate=alternate),
    )
    alt_method = AlternateProviderMethod(engine, timeout=1)
    engine.chains[Provider.YOUTUBE].append(alt_method)
    engine.set_chain(Provider.SOUNDCLOUD, [_FakeMethod("soundcloud-direct", provider=Provider.SOUNDCLOUD),
                                           alt_method])

    stream = asyncio.run(engine.run_chain(original))

    assert stream.method == "soundcloud-direct"
    assert alt_method.supports(original)
    assert not alt_method.supports(alternate)


def test_cancelled_job_ends_the_chain_without_a_health_failure() -> None:
    health = MethodHealthTracker()
    later = _FakeMethod("search-fallback", provider=None)
    engine = _engine([_FakeMethod("youtube-download", error=JobCancelledError("stopped")), later], health)

    with pytest.raises(JobCancelledError):
        asyncio.run(engine.run_chain(build_track()))

    assert later.calls == 0
    assert health.get("youtube-download") is None
    assert health.is_available("youtube-download")


class _CancellingPipeline:
    def __init__(self) -> None:
        self.queries: list[str] = []

    async def fetch(self, source_url, **kwargs):
        self.queries.append(source_url)
        raise JobCancelledError("stopped")


def test_search_fallback_stops_at_a_cancelled_prefix() -> None:
    pipeline = _CancellingPipeline()
    method = SearchFallbackMethod(pipeline, prefixes=("ytsearch1", "scsearch1"))

    with pytest.raises(JobCancelledError):
        asyncio.run(method.attempt(build_track("Song", "Band"), None))

    assert len(pipeline.queries) == 1
    assert pipeline.queries[0].startswith("ytsearch1:")
