"""
Stream acquisition - ordered, health-aware chain of acquisition methods
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Mapping, Sequence

from encore.errors import (
    AcquisitionError,
    AllMethodsFailedError,
    AuthorizationRequiredError,
    CacheCorruptionError,
    CacheMissError,
    JobCancelledError,
    PlatformBlockingError,
)
from encore.models import Provider, SessionContext, Track
from encore.services.base import ProviderClient
from encore.services.cache import CacheStore
from encore.services.health import MethodHealthTracker
from encore.services.pipeline import DownloadPipeline

logger = logging.getLogger(__name__)


@dataclass
class AudioStream:
    """Audio ready to hand to a player: an open file, a local path or a URL."""
    track: Track
    method: str
    kind: str  # "file" or "url"
    source: str
    handle: BinaryIO | None = None
    http_headers: dict[str, str] = field(default_factory=dict)
    _release: Callable[[], None] | None = field(default=None, repr=False)
    closed: bool = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.handle is not None:
            self.handle.close()
        if self._release is not None:
            self._release()
            self._release = None


class AcquisitionMethod(ABC):
    """One strategy for getting audio for a track."""

    name: str = "method"
    provider: Provider | None = None
    timeout: float = 30.0
    # Exempt from health filtering (the cache check)
    always_available = False

    def supports(self, track: Track) -> bool:
        return True

    @abstractmethod
    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class CacheMethod(AcquisitionMethod):
    name = "cache"
    always_available = True
    timeout = 5.0

    def __init__(self, cache: CacheStore):
        self.cache = cache

    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        opened = self.cache.open(track.source_id)
        if opened is None:
            raise CacheMissError("not cached")
        entry, handle = opened
        return AudioStream(track, self.name, "file", str(entry.path), handle=handle)


class DirectStreamMethod(AcquisitionMethod):
    """Ask the provider for a streamable URL without downloading."""

    def __init__(self, client: ProviderClient, timeout: float = 12.0):
        self.client = client
        self.provider = client.provider
        self.name = f"{client.provider.value}-direct"
        self.timeout = timeout

    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        info = await self.client.stream_url(track)
        return AudioStream(track, self.name, "url", info.url, http_headers=info.http_headers)


class PipelineMethod(AcquisitionMethod):
    """Download, transcode and cache, then play the cached file."""

    def __init__(self, pipeline: DownloadPipeline, provider: Provider, timeout: float = 300.0):
        self.pipeline = pipeline
        self.provider = provider
        self.name = f"{provider.value}-download"
        self.timeout = timeout

    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        path = await self.pipeline.fetch(
            track.url, title=track.title, owner=owner,
            duration_ms=track.duration_ms, cache_id=track.source_id,
        )
        return _open_file(track, self.name, path)


class SearchFallbackMethod(AcquisitionMethod):
    """Let yt-dlp search other platforms for "author title" and download the top hit."""

    name = "search-fallback"

    def __init__(self, pipeline: DownloadPipeline, prefixes: Sequence[str] = ("ytsearch1", "scsearch1"),
                 timeout: float = 300.0):
        self.pipeline = pipeline
        self.prefixes = tuple(prefixes)
        self.timeout = timeout

    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        errors = []
        for prefix in self.prefixes:
            query = f"{prefix}:{track.search_query}"
            try:
                path = await self.pipeline.fetch(
                    query, title=track.title, owner=owner,
                    duration_ms=track.duration_ms, cache_id=track.source_id,
                )
            except JobCancelledError:
                raise
            except AcquisitionError as e:
                errors.append(f"{prefix}: {e}")
                continue
            return _open_file(track, self.name, path)
        raise AcquisitionError("; ".join(errors) or "no search prefixes configured")


class _ChainMethod(AcquisitionMethod):
    """Base for methods that swap the track and recurse into the engine."""

    def __init__(self, engine: "StreamAcquisitionEngine", timeout: float):
        self.engine = engine
        self.timeout = timeout

    async def _recurse(self, track: Track, owner: SessionContext | None) -> AudioStream:
        try:
            return await self.engine.run_chain(track, owner)
        except AuthorizationRequiredError as e:
            # Fatal for that candidate, not for the original track
            raise AcquisitionError(f"{track.display()}: {e}") from e


class AlternateProviderMethod(_ChainMethod):
    name = "alternate-provider"

    def supports(self, track: Track) -> bool:
        return not track.tried_alternate

    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        alternate = await self.engine.resolver.find_alternate(track)
        logger.info(f"Trying alternate {alternate.display()} ({alternate.provider.value}) for {track.title}")
        return await self._recurse(alternate, owner)


class PlaybackResolveMethod(_ChainMethod):
    """For metadata-only providers: find the playable equivalent and acquire that."""

    name = "playback-resolve"

    async def attempt(self, track: Track, owner: SessionContext | None) -> AudioStream:
        resolved = await self.engine.resolver.resolve_for_playback(track)
        stream = await self._recurse(resolved, owner)
        stream.track = track
        return stream


def _open_file(track: Track, method: str, path: Path) -> AudioStream:
    try:
        handle = open(path, "rb")
    except OSError as e:
        raise CacheCorruptionError(f"Produced file unreadable: {e}") from e
    return AudioStream(track, method, "file", str(path), handle=handle)


class StreamAcquisitionEngine:
    """Iterates acquisition methods in priority order until one yields audio.

    Chains are configured per provider; ``fallbacks`` run after every
    provider chain. Methods filtered by the health tracker are skipped unless
    that would leave nothing to try, in which case their cooldowns are reset.
    """

    def __init__(
        self,
        health: MethodHealthTracker,
        chains: Mapping[Provider, Sequence[AcquisitionMethod]] | None = None,
        fallbacks: Sequence[AcquisitionMethod] = (),
        resolver=None,
        pipeline: DownloadPipeline | None = None,
        max_concurrent_streams: int = 5,
    ):
        self.health = health
        self.chains: dict[Provider, list[AcquisitionMethod]] = {p: list(m) for p, m in (chains or {}).items()}
        self.fallbacks = list(fallbacks)
        self.resolver = resolver
        self.pipeline = pipeline
        self.max_concurrent_streams = max_concurrent_streams
        self._slots = asyncio.Semaphore(max_concurrent_streams)
        self._active_streams = 0

    @property
    def active_streams(self) -> int:
        return self._active_streams

    def set_chain(self, provider: Provider, methods: Sequence[AcquisitionMethod]) -> None:
        self.chains[provider] = list(methods)

    def build_chain(self, track: Track) -> list[AcquisitionMethod]:
        methods = [m for m in self.chains.get(track.provider, []) + self.fallbacks if m.supports(track)]
        hint = track.acquisition_hint
        if hint:
            hinted = [m for m in methods if m.name == hint and not m.always_available]
            if hinted:
                # Right after the cache check
                methods.remove(hinted[0])
                insert_at = 1 if methods and methods[0].always_available else 0
                methods.insert(insert_at, hinted[0])
        return methods

    def provider_available(self, provider: Provider) -> bool:
        """False only when every network method for ``provider`` is cooling down."""
        methods = [m for m in self.chains.get(provider, []) if not m.always_available]
        if not methods:
            return True
        return any(self.health.is_available(m.name) for m in methods)

    async def get_stream(self, track: Track, owner: SessionContext | None = None) -> AudioStream:
        """Acquire audio for ``track`` within the global stream ceiling."""
        if self._slots.locked():
            logger.info(f"Stream ceiling ({self.max_concurrent_streams}) reached; waiting for a slot")
        await self._slots.acquire()
        self._active_streams += 1
        try:
            stream = await self.run_chain(track, owner)
        except BaseException:
            self._release_slot()
            raise
        stream._release = self._release_slot
        return stream

    async def cancel(self, owner: SessionContext) -> int:
        """Cancel pipeline work started for ``owner``."""
        if self.pipeline is None:
            return 0
        return await self.pipeline.cancel(owner)

    def _release_slot(self) -> None:
        self._active_streams -= 1
        self._slots.release()

    async def run_chain(self, track: Track, owner: SessionContext | None = None) -> AudioStream:
        chain = self.build_chain(track)
        gated = [m for m in chain if not m.always_available]
        if gated and not any(self.health.is_available(m.name) for m in gated):
            logger.warning(f"Every method for {track.title} is cooling down; failing open")
            self.health.reset(m.name for m in gated)

        attempts: list[tuple[str, str]] = []
        blocked: set[Provider] = set()
        for method in chain:
            if not method.always_available and not self.health.is_available(method.name):
                attempts.append((method.name, "skipped: cooling down"))
                continue
            if method.provider is not None and method.provider in blocked:
                attempts.append((method.name, "skipped: provider blocked"))
                continue

            try:
                stream = await asyncio.wait_for(method.attempt(track, owner), timeout=method.timeout)
            except CacheMissError as e:
                attempts.append((method.name, str(e)))
                continue
            except asyncio.TimeoutError:
                reason = f"timed out after {method.timeout:.0f}s"
                self.health.record_failure(method.name, reason)
                attempts.append((method.name, reason))
                continue
            except JobCancelledError:
                # The owner stopped; not a method failure
                logger.info(f"Acquisition of {track.title} cancelled during {method.name}")
                raise
            except AuthorizationRequiredError as e:
                self.health.record_failure(method.name, str(e))
                logger.error(f"{method.name} needs authorization for {track.title}: {e}")
                raise
            except PlatformBlockingError as e:
                self.health.record_failure(method.name, str(e))
                attempts.append((method.name, str(e)))
                blocked.add(method.provider or track.provider)
                continue
            except CacheCorruptionError as e:
                logger.warning(f"Cache entry for {track.title} was corrupt: {e}")
                attempts.append((method.name, str(e)))
                continue
            except Exception as e:
                self.health.record_failure(method.name, str(e))
                attempts.append((method.name, str(e) or type(e).__name__))
                continue

            if not method.always_available:
                self.health.record_success(method.name)
                track.acquisition_hint = method.name
            logger.info(f"Acquired {track.title} via {method.name}")
            return stream

        error = AllMethodsFailedError(track, attempts)
        logger.error(str(error))
        raise error
