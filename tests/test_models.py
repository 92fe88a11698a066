from __future__ import annotations

import pytest

from encore.models import LoopMode, Provider, QueueSnapshot, Track, normalize_text


def test_normalize_text_strips_accents_junk_and_punctuation() -> None:
    assert normalize_text("Beyoncé - Halo (Official Video)") == "beyonce halo"
    assert normalize_text("Song [Live at Wembley]") == "song live at wembley"
    assert normalize_text(None) == ""


def test_only_spotify_is_metadata_only() -> None:
    assert not Provider.SPOTIFY.playable
    assert all(p.playable for p in Provider if p is not Provider.SPOTIFY)


def test_source_id_falls_back_to_provider_and_id(make_track) -> None:
    track = make_track(provider=Provider.SPOTIFY, provider_id="abc", url="")
    assert track.source_id == "spotify:abc"


def test_annotations_do_not_affect_equality(make_track) -> None:
    a = make_track()
    b = make_track()
    b.acquisition_hint = "youtube-direct"
    b.tried_alternate = True
    assert a == b


def test_search_query_skips_unknown_author(make_track) -> None:
    assert make_track(title="Halo", author="Beyonce").search_query == "Beyonce Halo"
    assert make_track(title="Halo", author="Unknown").search_query == "Halo"


def test_snapshot_roundtrip_keeps_settings(make_track) -> None:
    snapshot = QueueSnapshot(
        tracks=[make_track("A"), make_track("B", requester_id=7)],
        current_index=1,
        loop_mode=LoopMode.QUEUE,
        volume=80,
        autoplay=False,
        continuous=False,
    )

    restored = QueueSnapshot.from_dict(snapshot.to_dict())

    assert restored.tracks == snapshot.tracks
    assert restored.current_index == 1
    assert restored.loop_mode is LoopMode.QUEUE
    assert restored.volume == 80
    assert restored.autoplay is False
    assert restored.continuous is False


def test_snapshot_clamps_bad_values(make_track) -> None:
    data = QueueSnapshot(tracks=[make_track()]).to_dict()
    data["current_index"] = 5
    data["volume"] = 250

    restored = QueueSnapshot.from_dict(data)

    assert restored.current_index == -1
    assert restored.volume == 100


def test_snapshot_rejects_malformed_payload() -> None:
    with pytest.raises(ValueError):
        QueueSnapshot.from_dict({"tracks": "nope"})
    with pytest.raises(ValueError):
        QueueSnapshot.from_dict({"tracks": [{"title": "x", "url": "u", "provider": "napster"}]})
