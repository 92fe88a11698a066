"""
Spotify provider (metadata only)
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import spotipy
from spotipy.oauth2 import SpotifyClientCredentials

from encore.errors import AuthorizationRequiredError, PlatformBlockingError, TransientNetworkError
from encore.models import Provider, Track
from encore.services.base import MetadataRung, ProviderClient, fetch_json, run_blocking

logger = logging.getLogger(__name__)

TRACK_PATTERN = re.compile(r"(?:open\.spotify\.com/(?:intl-\w+/)?track/|spotify:track:)([A-Za-z0-9]{22})")


def track_url(track_id: str) -> str:
    return f"https://open.spotify.com/track/{track_id}"


class SpotifyService(ProviderClient):
    """Spotify Web API client. Spotify audio is never fetched, only its metadata."""

    provider = Provider.SPOTIFY

    def __init__(self, client_id: str | None = None, client_secret: str | None = None,
                 metadata_timeout: float = 6.0):
        self.metadata_timeout = metadata_timeout
        self.client: spotipy.Spotify | None = None
        self.enabled = False
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="SpotifyWorker")

        if client_id and client_secret:
            try:
                self.client = spotipy.Spotify(
                    auth_manager=SpotifyClientCredentials(client_id=client_id, client_secret=client_secret),
                    requests_timeout=int(metadata_timeout),
                    retries=0,
                )
                self.enabled = True
                logger.info("SpotifyService initialized with client credentials")
            except spotipy.SpotifyException as e:
                logger.error(f"Failed to initialize SpotifyService: {e}")
        else:
            logger.warning("SpotifyService disabled: SPOTIFY_CLIENT_ID/SECRET not set (links still resolve via oEmbed)")

    def matches_url(self, url: str) -> bool:
        return TRACK_PATTERN.search(url) is not None

    def extract_id(self, url: str) -> str | None:
        match = TRACK_PATTERN.search(url)
        return match.group(1) if match else None

    def stub(self, url: str) -> Track:
        track_id = self.extract_id(url)
        return Track(
            title=f"Spotify track {track_id}",
            author="Unknown",
            url=track_url(track_id) if track_id else url,
            provider=self.provider,
            provider_id=track_id,
        )

    def _to_track(self, item: dict[str, Any]) -> Track:
        artists = ", ".join(a["name"] for a in item.get("artists", []) if a.get("name")) or "Unknown"
        images = (item.get("album") or {}).get("images") or []
        popularity = item.get("popularity")
        return Track(
            title=item.get("name") or "Unknown",
            author=artists,
            url=track_url(item["id"]),
            provider=self.provider,
            provider_id=item["id"],
            duration_ms=item.get("duration_ms"),
            thumbnail=images[0]["url"] if images else None,
            isrc=(item.get("external_ids") or {}).get("isrc"),
            # popularity is 0-100; scale so it is comparable to view counts
            view_count=int(10 ** (popularity / 12.5)) if popularity else None,
        )

    async def _call(self, func, *args, **kwargs):
        try:
            return await run_blocking(self.executor, func, *args, timeout=self.metadata_timeout, **kwargs)
        except spotipy.SpotifyException as e:
            if e.http_status in (401, 403):
                raise AuthorizationRequiredError(f"Spotify rejected credentials: {e.msg}") from e
            if e.http_status == 429:
                raise PlatformBlockingError("Spotify rate limit hit") from e
            raise TransientNetworkError(f"Spotify API error: {e.msg}") from e

    async def search(self, query: str, limit: int = 5) -> list[Track]:
        if not self.enabled or not self.client:
            return []
        results = await self._call(self.client.search, q=query, type="track", limit=min(limit, 50))
        items = (results or {}).get("tracks", {}).get("items", [])
        return [self._to_track(item) for item in items if item and item.get("id")]

    async def get_track(self, track_id: str) -> Track | None:
        if not self.enabled or not self.client:
            return None
        item = await self._call(self.client.track, track_id)
        return self._to_track(item) if item else None

    def metadata_rungs(self) -> list[MetadataRung]:
        return [
            MetadataRung("spotify-api", self._api, self.metadata_timeout),
            MetadataRung("spotify-oembed", self._oembed, self.metadata_timeout),
        ]

    async def _api(self, url: str) -> Track | None:
        track_id = self.extract_id(url)
        return await self.get_track(track_id) if track_id else None

    async def _oembed(self, url: str) -> Track | None:
        track_id = self.extract_id(url)
        if not track_id:
            return None
        data = await fetch_json(
            "https://open.spotify.com/oembed", params={"url": track_url(track_id)}, timeout=self.metadata_timeout
        )
        title = data.get("title")
        if not title:
            return None
        # oEmbed has no artist field; "Title - Artist" style titles are split
        author = "Unknown"
        if " - " in title:
            title, author = title.split(" - ", 1)
        return Track(
            title=title,
            author=author,
            url=track_url(track_id),
            provider=self.provider,
            provider_id=track_id,
            thumbnail=data.get("thumbnail_url"),
        )

    async def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
