"""
Error taxonomy for resolution, acquisition and playback
"""
import re
from typing import Any


class EncoreError(Exception):
    """Base exception for all Encore errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class InvalidQueryError(EncoreError, ValueError):
    """Search query was empty or not text."""


class UnsupportedUrlError(EncoreError, ValueError):
    """URL does not belong to any supported provider."""


class AcquisitionError(EncoreError):
    """A single acquisition method failed for a recoverable reason."""


class TransientNetworkError(AcquisitionError):
    """Timeout, connection reset or similar; another method may succeed."""


class FormatUnavailableError(AcquisitionError):
    """The provider offered no audio format we can use."""


class AuthorizationRequiredError(AcquisitionError):
    """Content needs sign-in (age gate, private, members only)."""


class PlatformBlockingError(AcquisitionError):
    """Provider rejected us as a bot or rate limited us."""


class CacheCorruptionError(AcquisitionError):
    """A cache file exists but cannot be read."""


class CacheMissError(AcquisitionError):
    """No valid cache entry; not a health failure."""


class ProcessSpawnError(AcquisitionError):
    """External tool could not be started."""


class JobCancelledError(AcquisitionError):
    """Pipeline job was cancelled before it finished."""


class NoPlayableMatchError(AcquisitionError):
    """No playable provider returned a candidate for a metadata-only track."""


class AllMethodsFailedError(EncoreError):
    """Every acquisition method for a track failed."""

    def __init__(self, track: Any, attempts: list[tuple[str, str]]):
        self.track = track
        self.attempts = list(attempts)
        title = getattr(track, "title", str(track))
        if self.attempts:
            summary = "; ".join(f"{name}: {reason}" for name, reason in self.attempts)
        else:
            summary = "no methods available"
        super().__init__(
            f"All methods failed for '{title}' ({summary})",
            details={"attempts": self.attempts},
        )

    @property
    def methods(self) -> list[str]:
        return [name for name, _ in self.attempts]


_AUTH_PATTERNS = re.compile(
    r"sign in to confirm your age|age-restricted|login required|private video"
    r"|members-only|join this channel|requires authentication|http error 401",
    re.IGNORECASE,
)
_FORMAT_PATTERNS = re.compile(
    r"requested format is not available|no video formats found|no suitable formats"
    r"|unsupported url|drm protected",
    re.IGNORECASE,
)
_BLOCKING_PATTERNS = re.compile(
    r"not a bot|http error 403|forbidden|http error 429|too many requests|captcha",
    re.IGNORECASE,
)
_TRANSIENT_PATTERNS = re.compile(
    r"timed out|timeout|connection reset|econnreset|enotfound|econnrefused"
    r"|temporary failure|network is unreachable|http error 50[23]|remote end closed",
    re.IGNORECASE,
)


def classify_tool_error(stderr: str, default: str = "external tool failed") -> AcquisitionError:
    """Map diagnostic output from yt-dlp / ffmpeg to a typed error."""
    text = (stderr or "").strip()
    # Last ERROR line is usually the meaningful one
    lines = [line for line in text.splitlines() if line.strip()]
    error_lines = [line for line in lines if "ERROR" in line]
    message = (error_lines or lines or [default])[-1].strip()[:300]

    if _AUTH_PATTERNS.search(text):
        return AuthorizationRequiredError(message)
    if _BLOCKING_PATTERNS.search(text):
        return PlatformBlockingError(message)
    if _FORMAT_PATTERNS.search(text):
        return FormatUnavailableError(message)
    if _TRANSIENT_PATTERNS.search(text):
        return TransientNetworkError(message)
    return AcquisitionError(message)
