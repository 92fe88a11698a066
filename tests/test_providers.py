from __future__ import annotations

import asyncio

import pytest

from conftest import build_track
from encore.errors import UnsupportedUrlError
from encore.models import Provider
from encore.services import youtube as youtube_module
from encore.services.direct import DirectAudioService
from encore.services.recommendations import RadioRecommender
from encore.services.resolver import TrackResolver
from encore.services.soundcloud import SoundCloudService
from encore.services.spotify import SpotifyService
from encore.services.youtube import YouTubeService, parse_duration, parse_views


@pytest.fixture
def youtube(monkeypatch) -> YouTubeService:
    monkeypatch.setattr(youtube_module, "YTMusic", lambda: object())
    service = YouTubeService()
    yield service
    asyncio.run(service.shutdown())


def test_parse_duration() -> None:
    assert parse_duration("3:45") == 225
    assert parse_duration("1:02:03") == 3723
    assert parse_duration("live") is None
    assert parse_duration(None) is None


def test_parse_views() -> None:
    assert parse_views("1.2B") == 1_200_000_000
    assert parse_views("35K views") == 35_000
    assert parse_views("1,234") == 1234
    assert parse_views(42) == 42
    assert parse_views("n/a") is None


def test_youtube_url_parsing(youtube) -> None:
    assert youtube.parse_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ&list=PL123") == ("video", "dQw4w9WgXcQ")
    assert youtube.parse_url("https://youtu.be/dQw4w9WgXcQ") == ("video", "dQw4w9WgXcQ")
    assert youtube.parse_url("https://music.youtube.com/playlist?list=PLabc_-1") is None
    assert youtube.parse_url("https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC") is None
    assert youtube.extract_id("https://www.youtube.com/shorts/dQw4w9WgXcQ") == "dQw4w9WgXcQ"


def test_youtube_stub_and_track_mapping(youtube) -> None:
    stub = youtube.stub("https://youtu.be/dQw4w9WgXcQ")
    assert stub.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert stub.provider_id == "dQw4w9WgXcQ"

    track = youtube._to_track({
        "videoId": "dQw4w9WgXcQ",
        "title": "Never Gonna Give You Up",
        "artists": [{"name": "Rick Astley"}],
        "duration": "3:33",
        "views": "1.5B",
        "thumbnails": [{"url": "small"}, {"url": "large"}],
    })
    assert track.author == "Rick Astley"
    assert track.duration_ms == 213_000
    assert track.view_count == 1_500_000_000
    assert track.thumbnail == "large"
    assert youtube._to_track({"title": "no id"}) is None


def test_spotify_links_resolve_without_credentials() -> None:
    spotify = SpotifyService()
    url = "https://open.spotify.com/intl-de/track/4uLU6hMCjMI75M1A2tKUQC?si=abc"

    assert not spotify.enabled
    assert spotify.matches_url(url)
    assert spotify.extract_id("spotify:track:4uLU6hMCjMI75M1A2tKUQC") == "4uLU6hMCjMI75M1A2tKUQC"
    assert spotify.stub(url).url == "https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC"
    assert asyncio.run(spotify.search("anything")) == []
    asyncio.run(spotify.shutdown())


def test_direct_links_need_an_audio_extension() -> None:
    direct = DirectAudioService()
    assert direct.matches_url("https://files.test/music/My_Song.mp3?token=1")
    assert not direct.matches_url("https://files.test/page.html")
    assert not direct.matches_url("ftp://files.test/a.mp3")

    stub = direct.stub("https://files.test/music/My_Song.mp3")
    assert stub.title == "My Song"
    assert stub.author == "files.test"


def test_soundcloud_stub_uses_the_slug() -> None:
    soundcloud = SoundCloudService()
    url = "https://soundcloud.com/some-artist/great-song"
    assert soundcloud.matches_url(url)
    stub = soundcloud.stub(url)
    assert stub.title == "great song"
    assert stub.author == "some-artist"
    assert stub.provider is Provider.SOUNDCLOUD
    asyncio.run(soundcloud.shutdown())


class _FakeYouTube:
    def __init__(self, radio, charts=()) -> None:
        self.radio = radio
        self.charts = list(charts)

    async def search(self, query, limit=5, filter_type="songs"):
        return self.charts[:limit]

    async def get_watch_playlist(self, video_id, limit=20):
        return self.radio

    async def search_playlists(self, query, limit=5):
        return []

    async def get_playlist_tracks(self, playlist_id, limit=100):
        return []


def test_recommender_skips_recent_tracks() -> None:
    seed = build_track("Seed", provider_id="seedid00000")
    played = build_track("Played")
    fresh = build_track("Fresh", author="New")
    recommender = RadioRecommender(_FakeYouTube([seed, played, fresh]))

    assert asyncio.run(recommender.get_next(seed, [played])) == fresh


def test_recommender_falls_back_to_charts() -> None:
    seed = build_track("Seed", provider_id="seedid00000")
    chart = build_track("Chart Hit", author="Star")
    recommender = RadioRecommender(_FakeYouTube([seed], charts=[seed, chart]))

    assert asyncio.run(recommender.get_next(seed, [])) == chart


def test_bare_youtube_playlist_is_rejected_not_played_as_one_track(youtube) -> None:
    url = "https://www.youtube.com/playlist?list=PLabc_-1"
    assert not youtube.matches_url(url)

    resolver = TrackResolver({Provider.YOUTUBE: youtube, Provider.DIRECT: DirectAudioService()})
    with pytest.raises(UnsupportedUrlError):
        asyncio.run(resolver.resolve_url(url))
