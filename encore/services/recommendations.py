"""
Autoplay recommendations
"""
import logging
import random
from typing import Protocol, Sequence

from encore.models import Provider, Track
from encore.services.youtube import YouTubeService

logger = logging.getLogger(__name__)


class RecommendationEngine(Protocol):
    async def get_next(self, seed: Track, history: Sequence[Track]) -> Track | None:
        ...


class RadioRecommender:
    """Picks the next track from YouTube Music's radio for the seed.

    Falls back to a random chart track when the radio has nothing new.
    """

    def __init__(self, youtube: YouTubeService, recent_window: int = 20):
        self.youtube = youtube
        self.recent_window = recent_window

    def _is_recent(self, track: Track, seed: Track, history: Sequence[Track]) -> bool:
        recent = {t.dedup_key for t in list(history)[-self.recent_window:]}
        recent.add(seed.dedup_key)
        return track.dedup_key in recent or any(track.url == t.url for t in history)

    async def _seed_video_id(self, seed: Track) -> str | None:
        if seed.provider is Provider.YOUTUBE and seed.provider_id:
            return seed.provider_id
        try:
            results = await self.youtube.search(seed.search_query, limit=1)
        except Exception as e:
            logger.warning(f"Could not map seed {seed.display()} onto YouTube: {e}")
            return None
        return results[0].provider_id if results else None

    async def get_next(self, seed: Track, history: Sequence[Track]) -> Track | None:
        video_id = await self._seed_video_id(seed)
        if video_id:
            try:
                related = await self.youtube.get_watch_playlist(video_id, limit=25)
            except Exception as e:
                logger.warning(f"Radio lookup failed for {seed.display()}: {e}")
                related = []
            fresh = [t for t in related if not self._is_recent(t, seed, history)]
            if fresh:
                # Stay close to the seed but avoid always taking the same top pick
                pick = random.choice(fresh[:5])
                logger.info(f"Recommended {pick.display()} after {seed.display()}")
                return pick

        logger.info(f"Radio had nothing new for {seed.display()}. Falling back to charts.")
        return await self._chart_fallback(seed, history)

    async def _chart_fallback(self, seed: Track, history: Sequence[Track]) -> Track | None:
        region = random.choice(["US", "UK"])
        query = f"Top 100 Songs {region}"
        try:
            playlists = await self.youtube.search_playlists(query, limit=3)
            if playlists:
                playlist = random.choice(playlists)
                tracks = await self.youtube.get_playlist_tracks(playlist["browse_id"], limit=50)
                fresh = [t for t in tracks if not self._is_recent(t, seed, history)]
                if fresh:
                    return random.choice(fresh)
            results = await self.youtube.search("top hits popular", limit=20)
        except Exception as e:
            logger.warning(f"Chart fallback failed: {e}")
            return None
        fresh = [t for t in results if not self._is_recent(t, seed, history)]
        if fresh:
            return random.choice(fresh)
        logger.warning("Could not find any chart tracks via playlist OR direct search")
        return None
