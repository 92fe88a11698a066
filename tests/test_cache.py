from __future__ import annotations

import os
import time

import pytest

from encore.errors import CacheCorruptionError
from encore.services.cache import CacheStore


def _produce(tmp_path, name: str, size: int = 64):
    path = tmp_path / name
    path.write_bytes(b"x" * size)
    return path


def test_key_is_stable_md5_of_source_id() -> None:
    assert CacheStore.key_for("https://youtu.be/abc") == CacheStore.key_for("https://youtu.be/abc")
    assert CacheStore.key_for("a") != CacheStore.key_for("b")
    assert len(CacheStore.key_for("a")) == 32


def test_store_then_lookup_returns_entry(tmp_path) -> None:
    cache = CacheStore(tmp_path / "cache")
    produced = _produce(tmp_path, "out.mp3")

    entry = cache.store("youtube:abc", produced)

    assert not produced.exists()
    assert entry.path == cache.path_for(CacheStore.key_for("youtube:abc"))
    found = cache.lookup("youtube:abc")
    assert found is not None
    assert found.size_bytes == 64


def test_lookup_miss_returns_none(tmp_path) -> None:
    cache = CacheStore(tmp_path)
    assert cache.lookup("nothing-here") is None


def test_expired_entry_is_purged_on_lookup(tmp_path) -> None:
    now = [time.time()]
    cache = CacheStore(tmp_path / "cache", ttl_seconds=60, clock=lambda: now[0])
    entry = cache.store("youtube:old", _produce(tmp_path, "old.mp3"))

    now[0] += 61

    assert cache.lookup("youtube:old") is None
    assert not entry.path.exists()


def test_empty_file_is_never_served(tmp_path) -> None:
    cache = CacheStore(tmp_path)
    path = cache.path_for(CacheStore.key_for("youtube:empty"))
    path.write_bytes(b"")

    assert cache.lookup("youtube:empty") is None
    assert not path.exists()


def test_storing_an_empty_file_raises(tmp_path) -> None:
    cache = CacheStore(tmp_path / "cache")
    with pytest.raises(CacheCorruptionError):
        cache.store("youtube:zero", _produce(tmp_path, "zero.mp3", size=0))
    assert cache.entries() == []


def test_open_returns_readable_handle(tmp_path) -> None:
    cache = CacheStore(tmp_path / "cache")
    cache.store("direct:song", _produce(tmp_path, "song.mp3", size=10))

    opened = cache.open("direct:song")
    assert opened is not None
    entry, handle = opened
    with handle:
        assert handle.read() == b"x" * 10
    assert entry.key == CacheStore.key_for("direct:song")


def test_invalidate_removes_entry(tmp_path) -> None:
    cache = CacheStore(tmp_path / "cache")
    cache.store("youtube:gone", _produce(tmp_path, "gone.mp3"))

    assert cache.invalidate("youtube:gone") is True
    assert cache.invalidate("youtube:gone") is False
    assert cache.lookup("youtube:gone") is None


def test_sweep_trims_oldest_files_to_eighty_percent_of_cap(tmp_path) -> None:
    cache = CacheStore(tmp_path / "cache", max_bytes=300)
    base = time.time() - 100
    for i in range(4):
        entry = cache.store(f"youtube:{i}", _produce(tmp_path, f"{i}.mp3", size=100))
        os.utime(entry.path, (base + i, base + i))

    removed = cache.sweep()

    assert removed == 2
    remaining = {e.key for e in cache.entries()}
    assert remaining == {CacheStore.key_for("youtube:2"), CacheStore.key_for("youtube:3")}
    assert cache.stats()["size_bytes"] == 200


def test_sweep_removes_expired_entries(tmp_path) -> None:
    now = [time.time()]
    cache = CacheStore(tmp_path / "cache", ttl_seconds=10, clock=lambda: now[0])
    cache.store("youtube:a", _produce(tmp_path, "a.mp3"))
    now[0] += 11
    cache.store("youtube:b", _produce(tmp_path, "b.mp3"))
    fresh = cache.path_for(CacheStore.key_for("youtube:b"))
    os.utime(fresh, (now[0], now[0]))

    assert cache.sweep() == 1
    assert [e.path for e in cache.entries()] == [fresh]
