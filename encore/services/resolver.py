"""
Track resolution - search, URL metadata and playback resolution
"""
import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Mapping

from encore.errors import InvalidQueryError, NoPlayableMatchError, UnsupportedUrlError
from encore.models import Provider, Track, normalize_text
from encore.services import scoring
from encore.services.base import ProviderClient

logger = logging.getLogger(__name__)


class _TTLCache:
    """Small in-memory map with per-entry expiry and a size bound."""

    def __init__(self, ttl: float, max_items: int = 256, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_items = max_items
        self._clock = clock
        self._data: dict = {}

    def get(self, key):
        item = self._data.get(key)
        if item is None:
            return None
        expires, value = item
        if self._clock() >= expires:
            del self._data[key]
            return None
        return value

    def put(self, key, value) -> None:
        if len(self._data) >= self.max_items:
            # dicts keep insertion order; drop the oldest
            self._data.pop(next(iter(self._data)))
        self._data[key] = (self._clock() + self.ttl, value)

    def clear(self) -> None:
        self._data.clear()


class TrackResolver:
    """Turns queries and URLs into canonical Track records."""

    def __init__(
        self,
        providers: Mapping[Provider, ProviderClient],
        search_timeout: float = 8.0,
        primary: Provider = Provider.YOUTUBE,
        search_cache_ttl: float = 300.0,
        playback_cache_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.providers = dict(providers)
        self.search_timeout = search_timeout
        self.primary = primary
        self._search_cache = _TTLCache(search_cache_ttl, clock=clock)
        self._playback_cache = _TTLCache(playback_cache_ttl, clock=clock)

    def _playable_order(self, exclude: Provider | None = None) -> list[ProviderClient]:
        """Playable providers, primary first."""
        order = sorted(
            (p for p in self.providers if p.playable and p is not Provider.DIRECT and p is not exclude),
            key=lambda p: (p is not self.primary, p.value),
        )
        return [self.providers[p] for p in order]

    # ==================== SEARCH ====================

    async def _search_one(self, client: ProviderClient, query: str, limit: int) -> list[Track]:
        try:
            return await asyncio.wait_for(client.search(query, limit), timeout=self.search_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{client.provider.value} search timed out for: {query}")
        except Exception as e:
            logger.warning(f"{client.provider.value} search failed for '{query}': {e}")
        return []

    async def search(self, query: str, limit: int = 10) -> list[Track]:
        """Search every provider concurrently and return ranked, deduplicated results."""
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError("Search query must be non-empty text")
        if limit <= 0:
            return []

        cache_key = (normalize_text(query, strip_brackets=False), limit)
        cached = self._search_cache.get(cache_key)
        if cached is not None:
            return list(cached)

        clients = [c for c in self.providers.values() if c.provider is not Provider.DIRECT]
        batches = await asyncio.gather(*(self._search_one(c, query, limit) for c in clients))
        merged = [track for batch in batches for track in batch]
        results = scoring.dedupe(scoring.rank(query, merged))[:limit]

        logger.info(f"Search '{query}': {len(merged)} raw, {len(results)} ranked")
        if results:
            self._search_cache.put(cache_key, list(results))
        return results

    # ==================== URLS ====================

    def client_for_url(self, url: str) -> ProviderClient | None:
        for client in self.providers.values():
            if client.matches_url(url):
                return client
        return None

    async def resolve_url(self, url: str) -> Track:
        """Fetch metadata for a provider URL, walking the provider's fallback ladder."""
        url = (url or "").strip()
        client = self.client_for_url(url)
        if client is None:
            raise UnsupportedUrlError(f"Unsupported URL: {url}")

        for rung in client.metadata_rungs():
            try:
                track = await asyncio.wait_for(rung.fetch(url), timeout=rung.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Metadata rung {rung.name} timed out for {url}")
                continue
            except Exception as e:
                logger.warning(f"Metadata rung {rung.name} failed for {url}: {e}")
                continue
            if track is not None:
                logger.info(f"Resolved {url} via {rung.name}: {track.display()}")
                return track
            logger.info(f"Metadata rung {rung.name} returned nothing for {url}")

        logger.warning(f"All metadata rungs failed for {url}; using stub")
        return client.stub(url)

    # ==================== PLAYBACK ====================

    async def _candidates(self, client: ProviderClient, track: Track) -> list[Track]:
        queries = []
        if track.isrc:
            queries.append(track.isrc)
        queries.append(track.search_query)
        for query in queries:
            results = await self._search_one(client, query, 8)
            if results:
                return results
        return []

    async def resolve_for_playback(self, track: Track) -> Track:
        """Map a metadata-only track onto an equivalent playable-provider track."""
        if track.provider.playable:
            return track

        cached = self._playback_cache.get(track.source_id)
        if cached is not None:
            return cached

        for client in self._playable_order():
            candidates = await self._candidates(client, track)
            if not candidates:
                continue
            match = scoring.best_match(track, candidates)
            resolved = replace(match, requester_id=track.requester_id, acquisition_hint=None,
                               tried_alternate=False)
            logger.info(f"Resolved {track.display()} -> {resolved.display()} ({resolved.provider.value})")
            self._playback_cache.put(track.source_id, resolved)
            return resolved
        raise NoPlayableMatchError(f"No playable match for {track.display()}")

    async def find_alternate(self, track: Track) -> Track:
        """Best match for ``track`` on a different playable provider."""
        for client in self._playable_order(exclude=track.provider):
            candidates = [c for c in await self._candidates(client, track) if c.url != track.url]
            if not candidates:
                continue
            match = scoring.best_match(track, candidates)
            return replace(match, requester_id=track.requester_id, tried_alternate=True)
        raise NoPlayableMatchError(f"No alternate provider has {track.display()}")

    def clear_caches(self) -> None:
        self._search_cache.clear()
        self._playback_cache.clear()
