"""
Configuration - environment driven settings
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


class Config:
    """Bot configuration loaded from the environment (and .env)."""

    def __init__(self):
        # Discord
        self.DISCORD_TOKEN: str | None = os.getenv("DISCORD_TOKEN")
        self.IDLE_TIMEOUT = _int("IDLE_TIMEOUT", 300)
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

        # Storage
        self.DATABASE_PATH = Path(os.getenv("DATABASE_PATH", "data/encore.db"))
        self.CACHE_DIR = Path(os.getenv("CACHE_DIR", "data/cache/audio"))
        self.TEMP_DIR = Path(os.getenv("TEMP_DIR", "data/cache/tmp"))
        self.CACHE_TTL_SECONDS = _int("CACHE_TTL_SECONDS", 24 * 3600)
        self.CACHE_MAX_BYTES = _int("CACHE_MAX_BYTES", 1024 * 1024 * 1024)

        # External tools
        self.YTDLP_PATH = os.getenv("YTDLP_PATH", "yt-dlp")
        self.FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
        self.YTDL_COOKIES_PATH: str | None = os.getenv("YTDL_COOKIES_PATH") or None
        self.YTDL_PO_TOKEN: str | None = os.getenv("YTDL_PO_TOKEN") or None
        self.YTDLP_SOCKET_TIMEOUT = _int("YTDLP_SOCKET_TIMEOUT", 8)
        self.YTDLP_RETRIES = _int("YTDLP_RETRIES", 1)

        # Providers
        self.SPOTIFY_CLIENT_ID: str | None = os.getenv("SPOTIFY_CLIENT_ID") or None
        self.SPOTIFY_CLIENT_SECRET: str | None = os.getenv("SPOTIFY_CLIENT_SECRET") or None

        # Timeouts (seconds)
        self.SEARCH_TIMEOUT = _float("SEARCH_TIMEOUT", 8.0)
        self.METADATA_TIMEOUT = _float("METADATA_TIMEOUT", 6.0)
        self.DIRECT_STREAM_TIMEOUT = _float("DIRECT_STREAM_TIMEOUT", 12.0)
        self.DOWNLOAD_TIMEOUT = _float("DOWNLOAD_TIMEOUT", 180.0)
        self.TRANSCODE_TIMEOUT = _float("TRANSCODE_TIMEOUT", 120.0)

        # Acquisition
        self.MAX_CONCURRENT_STREAMS = _int("MAX_CONCURRENT_STREAMS", 5)
        self.METHOD_BASE_COOLDOWN = _float("METHOD_BASE_COOLDOWN", 15.0)
        self.METHOD_MAX_COOLDOWN = _float("METHOD_MAX_COOLDOWN", 300.0)
        self.METHOD_FAILURE_CEILING = _int("METHOD_FAILURE_CEILING", 3)

        # Playback
        self.TRACK_FAILURE_LIMIT = _int("TRACK_FAILURE_LIMIT", 3)
        self.SESSION_FAILURE_LIMIT = _int("SESSION_FAILURE_LIMIT", 5)
        self.MIN_PLAY_SECONDS = _float("MIN_PLAY_SECONDS", 5.0)
        self.RETRY_DELAY_SECONDS = _float("RETRY_DELAY_SECONDS", 1.0)
        self.SNAPSHOT_DEBOUNCE_SECONDS = _float("SNAPSHOT_DEBOUNCE_SECONDS", 3.0)
        self.DEFAULT_VOLUME = _int("DEFAULT_VOLUME", 50)

        self.MAINTENANCE_INTERVAL_SECONDS = _float("MAINTENANCE_INTERVAL_SECONDS", 600.0)


config = Config()
