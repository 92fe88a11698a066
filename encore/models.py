"""
Core data types shared across services and the player
"""
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_BRACKETED = re.compile(r"[\(\[\{][^\)\]\}]*[\)\]\}]")
_JUNK_WORDS = re.compile(
    r"\b(official|video|audio|lyrics?|visualizer|remastered|hd|hq|4k|mv)\b",
    re.IGNORECASE,
)
_NON_WORD = re.compile(r"[^\w\s]+")
_SPACES = re.compile(r"\s+")


def normalize_text(text: str | None, strip_brackets: bool = True) -> str:
    """Lowercase, strip accents, bracketed junk and punctuation."""
    if not text:
        return ""
    value = unicodedata.normalize("NFKD", text)
    value = "".join(ch for ch in value if not unicodedata.combining(ch)).lower()
    if strip_brackets:
        # Bracket contents that carry meaning (remix, live, ...) survive
        value = _BRACKETED.sub(lambda m: f" {m.group(0)[1:-1]} ", value)
        value = _JUNK_WORDS.sub(" ", value)
    value = value.replace("_", " ")
    value = _NON_WORD.sub(" ", value)
    return _SPACES.sub(" ", value).strip()


class Provider(str, Enum):
    """Upstream content source."""
    YOUTUBE = "youtube"
    SPOTIFY = "spotify"
    SOUNDCLOUD = "soundcloud"
    DIRECT = "direct"

    @property
    def playable(self) -> bool:
        """Whether audio can be fetched from this provider at all."""
        return self is not Provider.SPOTIFY


class LoopMode(str, Enum):
    OFF = "off"
    TRACK = "track"
    QUEUE = "queue"


class PlaybackState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True)
class SessionContext:
    """Identifies one voice session (guild + voice channel)."""
    guild_id: int
    channel_id: int | None = None

    @property
    def key(self) -> str:
        return str(self.guild_id)


@dataclass
class Track:
    """Canonical, provider-tagged track.

    Identity fields are treated as read-only once resolved; ``acquisition_hint``
    and ``tried_alternate`` are annotations and do not take part in equality.
    """
    title: str
    author: str
    url: str
    provider: Provider
    provider_id: str | None = None
    duration_ms: int | None = None
    thumbnail: str | None = None
    isrc: str | None = None
    view_count: int | None = None
    requester_id: int | None = None
    acquisition_hint: str | None = field(default=None, compare=False)
    tried_alternate: bool = field(default=False, compare=False)

    @property
    def source_id(self) -> str:
        """Identifier used for content addressing."""
        if self.url:
            return self.url
        return f"{self.provider.value}:{self.provider_id}"

    @property
    def dedup_key(self) -> tuple[str, str]:
        return normalize_text(self.title), normalize_text(self.author)

    @property
    def duration_seconds(self) -> int | None:
        if self.duration_ms is None:
            return None
        return self.duration_ms // 1000

    @property
    def search_query(self) -> str:
        if self.author and self.author.lower() not in ("unknown", "unknown artist"):
            return f"{self.author} {self.title}"
        return self.title

    def display(self) -> str:
        return f"{self.title} - {self.author}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "url": self.url,
            "provider": self.provider.value,
            "provider_id": self.provider_id,
            "duration_ms": self.duration_ms,
            "thumbnail": self.thumbnail,
            "isrc": self.isrc,
            "view_count": self.view_count,
            "requester_id": self.requester_id,
            "acquisition_hint": self.acquisition_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Track":
        """Build a track from its JSON form; raises ValueError/KeyError on bad input."""
        if not isinstance(data, dict):
            raise ValueError("track entry must be an object")
        duration = data.get("duration_ms")
        views = data.get("view_count")
        return cls(
            title=str(data["title"]),
            author=str(data.get("author") or "Unknown"),
            url=str(data["url"]),
            provider=Provider(data["provider"]),
            provider_id=data.get("provider_id"),
            duration_ms=int(duration) if duration is not None else None,
            thumbnail=data.get("thumbnail"),
            isrc=data.get("isrc"),
            view_count=int(views) if views is not None else None,
            requester_id=data.get("requester_id"),
            acquisition_hint=data.get("acquisition_hint"),
        )


@dataclass
class QueueSnapshot:
    """Persisted queue state for one voice session."""
    tracks: list[Track] = field(default_factory=list)
    current_index: int = -1
    loop_mode: LoopMode = LoopMode.OFF
    volume: int = 50
    autoplay: bool = True
    continuous: bool = True

    VERSION = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.VERSION,
            "tracks": [t.to_dict() for t in self.tracks],
            "current_index": self.current_index,
            "loop_mode": self.loop_mode.value,
            "volume": self.volume,
            "autoplay": self.autoplay,
            "continuous": self.continuous,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueSnapshot":
        if not isinstance(data, dict) or not isinstance(data.get("tracks"), list):
            raise ValueError("snapshot must be an object with a 'tracks' list")
        tracks = [Track.from_dict(item) for item in data["tracks"]]
        index = int(data.get("current_index", -1))
        if index < -1 or index >= len(tracks):
            index = -1
        return cls(
            tracks=tracks,
            current_index=index,
            loop_mode=LoopMode(data.get("loop_mode", LoopMode.OFF.value)),
            volume=max(0, min(100, int(data.get("volume", 50)))),
            autoplay=bool(data.get("autoplay", True)),
            continuous=bool(data.get("continuous", True)),
        )
