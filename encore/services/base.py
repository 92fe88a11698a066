"""
Provider client interface and shared helpers
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable

import aiohttp
import yt_dlp

from encore.errors import (
    AcquisitionError,
    AuthorizationRequiredError,
    FormatUnavailableError,
    PlatformBlockingError,
    TransientNetworkError,
    classify_tool_error,
)
from encore.models import Provider, Track

logger = logging.getLogger(__name__)


@dataclass
class MetadataRung:
    """One step of a provider's URL metadata ladder."""
    name: str
    fetch: Callable[[str], Awaitable[Track | None]]
    timeout: float


@dataclass
class StreamInfo:
    """A directly streamable URL plus the headers the CDN expects."""
    url: str
    http_headers: dict[str, str] = field(default_factory=dict)


class ProviderClient(ABC):
    """Search, URL metadata and direct-stream access for one provider."""

    provider: Provider

    @abstractmethod
    def matches_url(self, url: str) -> bool:
        ...

    @abstractmethod
    def extract_id(self, url: str) -> str | None:
        ...

    @abstractmethod
    async def search(self, query: str, limit: int = 5) -> list[Track]:
        ...

    @abstractmethod
    def metadata_rungs(self) -> list[MetadataRung]:
        ...

    @abstractmethod
    def stub(self, url: str) -> Track:
        """Minimal track from the identifier embedded in the URL."""

    async def stream_url(self, track: Track) -> StreamInfo:
        raise FormatUnavailableError(f"{self.provider.value} cannot stream directly")

    async def shutdown(self) -> None:
        pass


def http_error(status: int, url: str) -> AcquisitionError:
    if status in (401, 402):
        return AuthorizationRequiredError(f"HTTP {status} from {url}")
    if status in (403, 429):
        return PlatformBlockingError(f"HTTP {status} from {url}")
    if status >= 500:
        return TransientNetworkError(f"HTTP {status} from {url}")
    return FormatUnavailableError(f"HTTP {status} from {url}")


async def fetch_json(url: str, params: dict[str, str] | None = None, timeout: float = 6.0) -> dict[str, Any]:
    """GET a JSON document, mapping HTTP failures to typed errors."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    raise http_error(resp.status, url)
                return await resp.json(content_type=None)
    except asyncio.TimeoutError:
        raise TransientNetworkError(f"Request to {url} timed out") from None
    except aiohttp.ClientError as e:
        raise TransientNetworkError(f"Request to {url} failed: {e}") from e


async def head(url: str, timeout: float = 6.0) -> tuple[int, dict[str, str]]:
    """HEAD a URL, returning (status, headers)."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.head(url, allow_redirects=True) as resp:
                return resp.status, dict(resp.headers)
    except asyncio.TimeoutError:
        raise TransientNetworkError(f"HEAD {url} timed out") from None
    except aiohttp.ClientError as e:
        raise TransientNetworkError(f"HEAD {url} failed: {e}") from e


async def ytdlp_extract(executor: ThreadPoolExecutor, opts: dict[str, Any], url: str,
                        timeout: float) -> dict[str, Any]:
    """Run yt_dlp.extract_info(download=False) in ``executor``."""

    def extract() -> dict[str, Any] | None:
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(url, download=False)

    loop = asyncio.get_running_loop()
    try:
        info = await asyncio.wait_for(loop.run_in_executor(executor, extract), timeout=timeout)
    except asyncio.TimeoutError:
        raise TransientNetworkError(f"yt-dlp extraction timed out for {url}") from None
    except yt_dlp.utils.DownloadError as e:
        raise classify_tool_error(str(e), "extraction failed") from e
    if not info:
        raise FormatUnavailableError(f"No info extracted for {url}")
    return info


def pick_stream(info: dict[str, Any]) -> StreamInfo:
    """Choose the audio URL yt-dlp selected (or the best audio-only format)."""
    if info.get("url"):
        return StreamInfo(info["url"], dict(info.get("http_headers") or {}))
    formats = [
        f for f in info.get("formats") or []
        if f.get("url") and f.get("acodec") not in (None, "none")
    ]
    audio_only = [f for f in formats if f.get("vcodec") in (None, "none")]
    candidates = audio_only or formats
    if not candidates:
        raise FormatUnavailableError("No playable audio format offered")
    best = max(candidates, key=lambda f: f.get("abr") or f.get("tbr") or 0)
    return StreamInfo(best["url"], dict(best.get("http_headers") or info.get("http_headers") or {}))


def track_from_ytdlp(info: dict[str, Any], provider: Provider, url: str | None = None) -> Track:
    duration = info.get("duration")
    thumbnails = info.get("thumbnails") or [{}]
    return Track(
        title=info.get("track") or info.get("title") or "Unknown",
        author=info.get("artist") or info.get("uploader") or info.get("channel") or "Unknown",
        url=url or info.get("webpage_url") or info.get("original_url") or "",
        provider=provider,
        provider_id=str(info.get("id")) if info.get("id") is not None else None,
        duration_ms=int(float(duration) * 1000) if duration else None,
        thumbnail=info.get("thumbnail") or thumbnails[-1].get("url"),
        view_count=info.get("view_count"),
    )


async def run_blocking(executor: ThreadPoolExecutor, func: Callable[..., Any], *args, timeout: float,
                       **kwargs) -> Any:
    """Run a blocking library call in ``executor`` under a timeout."""
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(executor, partial(func, *args, **kwargs)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        name = getattr(func, "__name__", repr(func))
        raise TransientNetworkError(f"{name} timed out after {timeout:.0f}s") from None
