"""
SoundCloud provider (via yt-dlp)
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from encore.models import Provider, Track
from encore.services import tools
from encore.services.base import (
    MetadataRung,
    ProviderClient,
    StreamInfo,
    fetch_json,
    pick_stream,
    track_from_ytdlp,
    ytdlp_extract,
)

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"(?:https?://)?(?:www\.|m\.)?(?:soundcloud\.com|on\.soundcloud\.com)/([\w.-]+(?:/[\w.-]+)?)")


class SoundCloudService(ProviderClient):
    provider = Provider.SOUNDCLOUD

    def __init__(self, ytdlp_path: str = "yt-dlp", metadata_timeout: float = 6.0,
                 stream_timeout: float = 12.0, socket_timeout: int = 8):
        self.ytdlp_path = ytdlp_path
        self.metadata_timeout = metadata_timeout
        self.stream_timeout = stream_timeout
        self.socket_timeout = socket_timeout
        self.executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="SoundCloudWorker")
        self._ydl_opts: dict[str, Any] = {
            "format": "bestaudio/best",
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": socket_timeout,
            "noplaylist": True,
        }

    def matches_url(self, url: str) -> bool:
        return URL_PATTERN.search(url) is not None

    def extract_id(self, url: str) -> str | None:
        match = URL_PATTERN.search(url)
        return match.group(1) if match else None

    def stub(self, url: str) -> Track:
        slug = self.extract_id(url) or url
        author, _, title = slug.partition("/")
        return Track(
            title=(title or author).replace("-", " ").strip() or "SoundCloud track",
            author=author if title else "Unknown",
            url=url if url.startswith("http") else f"https://{url}",
            provider=self.provider,
            provider_id=slug,
        )

    async def search(self, query: str, limit: int = 5) -> list[Track]:
        opts = dict(self._ydl_opts, extract_flat="in_playlist")
        info = await ytdlp_extract(self.executor, opts, f"scsearch{limit}:{query}", self.stream_timeout)
        tracks = []
        for entry in info.get("entries") or []:
            if not entry or not entry.get("url"):
                continue
            tracks.append(track_from_ytdlp(entry, self.provider, entry.get("webpage_url") or entry["url"]))
        return tracks

    def metadata_rungs(self) -> list[MetadataRung]:
        return [
            MetadataRung("soundcloud-oembed", self._oembed, self.metadata_timeout),
            MetadataRung("yt-dlp-library", self._library, self.metadata_timeout * 2),
            MetadataRung("yt-dlp-json", self._dump_json, self.metadata_timeout * 3),
        ]

    async def _oembed(self, url: str) -> Track | None:
        data = await fetch_json(
            "https://soundcloud.com/oembed", params={"url": url, "format": "json"}, timeout=self.metadata_timeout
        )
        title = data.get("title")
        if not title:
            return None
        author = data.get("author_name") or "Unknown"
        # oEmbed titles read "Song by Artist"
        suffix = f" by {author}"
        if title.endswith(suffix):
            title = title[: -len(suffix)]
        return Track(
            title=title,
            author=author,
            url=url,
            provider=self.provider,
            provider_id=self.extract_id(url),
            thumbnail=data.get("thumbnail_url"),
        )

    async def _library(self, url: str) -> Track | None:
        info = await ytdlp_extract(self.executor, self._ydl_opts, url, self.metadata_timeout * 2)
        return track_from_ytdlp(info, self.provider, url)

    async def _dump_json(self, url: str) -> Track | None:
        info = await tools.dump_metadata(self.ytdlp_path, url, self.metadata_timeout * 3, self.socket_timeout)
        return track_from_ytdlp(info, self.provider, url)

    async def stream_url(self, track: Track) -> StreamInfo:
        info = await ytdlp_extract(self.executor, self._ydl_opts, track.url, self.stream_timeout)
        return pick_stream(info)

    async def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
