"""
Direct audio links (plain http(s) files)
"""
import logging
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

from encore.errors import FormatUnavailableError
from encore.models import Provider, Track
from encore.services.base import MetadataRung, ProviderClient, StreamInfo, head, http_error

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {".mp3", ".m4a", ".aac", ".ogg", ".opus", ".flac", ".wav", ".webm"}


class DirectAudioService(ProviderClient):
    provider = Provider.DIRECT

    def __init__(self, timeout: float = 6.0):
        self.timeout = timeout

    def matches_url(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return False
        return PurePosixPath(parsed.path).suffix.lower() in AUDIO_EXTENSIONS

    def extract_id(self, url: str) -> str | None:
        return url if self.matches_url(url) else None

    def stub(self, url: str) -> Track:
        parsed = urlparse(url)
        name = unquote(PurePosixPath(parsed.path).stem) or parsed.netloc
        return Track(
            title=name.replace("_", " "),
            author=parsed.netloc,
            url=url,
            provider=self.provider,
            provider_id=url,
        )

    async def search(self, query: str, limit: int = 5) -> list[Track]:
        return []

    def metadata_rungs(self) -> list[MetadataRung]:
        return [MetadataRung("http-head", self._probe, self.timeout)]

    async def _probe(self, url: str) -> Track | None:
        await self.stream_url(self.stub(url))
        return self.stub(url)

    async def stream_url(self, track: Track) -> StreamInfo:
        status, headers = await head(track.url, timeout=self.timeout)
        if status >= 400:
            raise http_error(status, track.url)
        content_type = headers.get("Content-Type", "")
        if content_type and not content_type.startswith(("audio/", "application/octet-stream", "video/")):
            raise FormatUnavailableError(f"{track.url} is not audio ({content_type})")
        return StreamInfo(track.url)
