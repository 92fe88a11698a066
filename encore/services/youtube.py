"""
YouTube / YouTube Music provider
"""
import asyncio
import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor
from functools import wraps
from typing import Any

from ytmusicapi import YTMusic

from encore.errors import FormatUnavailableError
from encore.models import Provider, Track
from encore.services import tools
from encore.services.base import (
    MetadataRung,
    ProviderClient,
    StreamInfo,
    fetch_json,
    pick_stream,
    run_blocking,
    track_from_ytdlp,
    ytdlp_extract,
)

logger = logging.getLogger(__name__)

VIDEO_PATTERN = re.compile(r"(?:v=|/|embed/|shorts/|youtu\.be/)([0-9A-Za-z_-]{11})(?![0-9A-Za-z_-])")
YOUTUBE_DOMAINS = ("youtube.com", "youtu.be", "music.youtube.com")


def retry_with_backoff(retries=3, backoff_in_seconds=1):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e}")
                        raise
                    sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                    logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                    await asyncio.sleep(sleep)
                    x += 1
        return wrapper
    return decorator


def parse_duration(duration_str: str | None) -> int | None:
    """Parse duration string like '3:45' to seconds."""
    if not duration_str:
        return None
    try:
        parts = [int(p) for p in duration_str.split(":")]
    except ValueError:
        return None
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    return None


def parse_views(views: str | int | None) -> int | None:
    """Parse ytmusicapi view strings like '1.2B' or '35K views'."""
    if views is None:
        return None
    if isinstance(views, int):
        return views
    match = re.match(r"\s*([\d.,]+)\s*([KMB]?)", str(views), re.IGNORECASE)
    if not match:
        return None
    try:
        number = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    scale = {"": 1, "K": 1_000, "M": 1_000_000, "B": 1_000_000_000}[match.group(2).upper()]
    return int(number * scale)


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class YouTubeService(ProviderClient):
    """YouTube Music search plus yt-dlp extraction."""

    provider = Provider.YOUTUBE

    def __init__(
        self,
        cookies_path: str | None = None,
        po_token: str | None = None,
        ytdlp_path: str = "yt-dlp",
        metadata_timeout: float = 6.0,
        stream_timeout: float = 12.0,
        socket_timeout: int = 8,
    ):
        self.yt = YTMusic()
        self.cookies_path = cookies_path
        self.po_token = po_token
        self.ytdlp_path = ytdlp_path
        self.metadata_timeout = metadata_timeout
        self.stream_timeout = stream_timeout
        self.socket_timeout = socket_timeout

        # Dedicated executor so slow extractions never starve the default pool
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")

        self._ydl_opts: dict[str, Any] = {
            "format": tools.AUDIO_FORMAT,
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "extract_flat": False,
            "socket_timeout": socket_timeout,
            "logtostderr": False,
            "noplaylist": True,
        }
        if tools.valid_cookie_file(cookies_path):
            self._ydl_opts["cookiefile"] = cookies_path
        if po_token:
            self._ydl_opts["extractor_args"] = {"youtube": {"po_token": [po_token]}}

    def parse_url(self, url: str) -> tuple[str, str] | None:
        """Parse YouTube URL to (type, id)."""
        # Check domain first to avoid false positives (e.g. Spotify)
        if not any(domain in url for domain in YOUTUBE_DOMAINS):
            return None
        # A watch URL inside a playlist still means "this song"; bare playlists are not tracks
        match = VIDEO_PATTERN.search(url)
        if match:
            return "video", match.group(1)
        return None

    def matches_url(self, url: str) -> bool:
        return self.parse_url(url) is not None

    def extract_id(self, url: str) -> str | None:
        parsed = self.parse_url(url)
        if parsed and parsed[0] == "video":
            return parsed[1]
        return None

    def stub(self, url: str) -> Track:
        video_id = self.extract_id(url)
        return Track(
            title=f"YouTube video {video_id}" if video_id else "YouTube video",
            author="Unknown",
            url=watch_url(video_id) if video_id else url,
            provider=self.provider,
            provider_id=video_id,
        )

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    def _to_track(self, r: dict[str, Any]) -> Track | None:
        video_id = r.get("videoId")
        if not video_id:
            return None
        duration = r.get("duration_seconds") or r.get("length_seconds")
        if not duration:
            duration = parse_duration(r.get("duration") or r.get("length"))
        artist = "Unknown"
        if r.get("artists"):
            artist = r["artists"][0].get("name") or "Unknown"
        thumbnails = r.get("thumbnails") or r.get("thumbnail") or [{}]
        return Track(
            title=r.get("title") or "Unknown",
            author=artist,
            url=watch_url(video_id),
            provider=self.provider,
            provider_id=video_id,
            duration_ms=int(duration) * 1000 if duration else None,
            thumbnail=thumbnails[-1].get("url") if isinstance(thumbnails, list) and thumbnails else None,
            view_count=parse_views(r.get("views")),
        )

    @retry_with_backoff(retries=1, backoff_in_seconds=0.5)
    async def search(self, query: str, limit: int = 5, filter_type: str = "songs") -> list[Track]:
        """Search YouTube Music for tracks."""
        results = await run_blocking(
            self.executor, self.yt.search, query, filter=filter_type, limit=limit, timeout=15.0
        )
        tracks = [t for t in (self._to_track(r) for r in results) if t is not None]
        return tracks[:limit]

    @retry_with_backoff()
    async def get_watch_playlist(self, video_id: str, limit: int = 20) -> list[Track]:
        """Get related tracks from a video's watch playlist (radio)."""
        results = await run_blocking(
            self.executor, self.yt.get_watch_playlist, videoId=video_id, limit=limit, timeout=15.0
        )
        tracks = [self._to_track(t) for t in results.get("tracks", [])]
        return [t for t in tracks if t is not None and t.provider_id != video_id]

    @retry_with_backoff()
    async def get_playlist_tracks(self, playlist_id: str, limit: int = 100) -> list[Track]:
        """Get tracks from a YouTube Music playlist."""
        results = await run_blocking(
            self.executor, self.yt.get_playlist, playlist_id, limit=limit, timeout=20.0
        )
        return [t for t in (self._to_track(r) for r in results.get("tracks", [])) if t is not None]

    @retry_with_backoff()
    async def search_playlists(self, query: str, limit: int = 5) -> list[dict]:
        """Search for playlists."""
        results = await run_blocking(
            self.executor, self.yt.search, query, filter="playlists", limit=limit, timeout=15.0
        )
        return [
            {
                "browse_id": r.get("browseId"),
                "title": r.get("title"),
                "author": r.get("author"),
            }
            for r in results if r.get("browseId")
        ]

    async def get_track_info(self, video_id: str) -> Track | None:
        """Get full track info for a specific video."""
        r = await run_blocking(self.executor, self.yt.get_song, videoId=video_id, timeout=10.0)
        video_details = r.get("videoDetails", {})
        if not video_details:
            return None
        thumbs = video_details.get("thumbnail", {}).get("thumbnails") or [{}]
        length = video_details.get("lengthSeconds")
        return Track(
            title=video_details.get("title") or "Unknown",
            author=video_details.get("author") or "Unknown",
            url=watch_url(video_id),
            provider=self.provider,
            provider_id=video_id,
            duration_ms=int(length) * 1000 if length else None,
            thumbnail=thumbs[-1].get("url"),
            view_count=parse_views(video_details.get("viewCount")),
        )

    # ==================== METADATA LADDER ====================

    def metadata_rungs(self) -> list[MetadataRung]:
        return [
            MetadataRung("youtube-oembed", self._oembed, self.metadata_timeout),
            MetadataRung("ytmusicapi", self._ytmusic_info, self.metadata_timeout),
            MetadataRung("yt-dlp-json", self._dump_json, self.metadata_timeout * 3),
        ]

    async def _oembed(self, url: str) -> Track | None:
        video_id = self.extract_id(url)
        if not video_id:
            return None
        data = await fetch_json(
            "https://www.youtube.com/oembed",
            params={"url": watch_url(video_id), "format": "json"},
            timeout=self.metadata_timeout,
        )
        if not data.get("title"):
            return None
        return Track(
            title=data["title"],
            author=data.get("author_name") or "Unknown",
            url=watch_url(video_id),
            provider=self.provider,
            provider_id=video_id,
            thumbnail=data.get("thumbnail_url"),
        )

    async def _ytmusic_info(self, url: str) -> Track | None:
        video_id = self.extract_id(url)
        if not video_id:
            return None
        return await self.get_track_info(video_id)

    async def _dump_json(self, url: str) -> Track | None:
        video_id = self.extract_id(url)
        target = watch_url(video_id) if video_id else url
        info = await tools.dump_metadata(self.ytdlp_path, target, self.metadata_timeout * 3, self.socket_timeout)
        return track_from_ytdlp(info, self.provider, target)

    # ==================== STREAMING ====================

    async def stream_url(self, track: Track) -> StreamInfo:
        """Get a direct audio stream URL for a track using yt-dlp."""
        if not track.provider_id and not track.url:
            raise FormatUnavailableError("Track has no YouTube identifier")
        url = watch_url(track.provider_id) if track.provider_id else track.url
        info = await ytdlp_extract(self.executor, self._ydl_opts, url, self.stream_timeout)
        return pick_stream(info)
