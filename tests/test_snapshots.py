from __future__ import annotations

import asyncio

from conftest import build_track
from encore.database.connection import DatabaseManager
from encore.database.snapshots import QueueSnapshotStore
from encore.models import LoopMode, QueueSnapshot


def test_save_load_and_overwrite(tmp_path) -> None:
    async def run():
        db = await DatabaseManager.create(tmp_path / "data" / "encore.db")
        store = QueueSnapshotStore(db)
        try:
            await store.save("42", QueueSnapshot(tracks=[build_track("A")], loop_mode=LoopMode.TRACK))
            await store.save("42", QueueSnapshot(tracks=[build_track("A"), build_track("B")], volume=30))
            loaded = await store.load("42")
            missing = await store.load("99")
            await store.delete("42")
            deleted = await store.load("42")
        finally:
            await db.close()
        return loaded, missing, deleted

    loaded, missing, deleted = asyncio.run(run())

    assert [t.title for t in loaded.tracks] == ["A", "B"]
    assert loaded.volume == 30
    assert loaded.loop_mode is LoopMode.OFF
    assert missing is None
    assert deleted is None


def test_corrupt_snapshot_is_treated_as_absent(tmp_path) -> None:
    async def run():
        db = await DatabaseManager.create(tmp_path / "encore.db")
        try:
            await db.execute(
                "INSERT INTO queue_snapshots (session_key, payload) VALUES (?, ?)", ("7", "{not json")
            )
            await db.execute(
                "INSERT INTO queue_snapshots (session_key, payload) VALUES (?, ?)", ("8", '{"tracks": 3}')
            )
            store = QueueSnapshotStore(db)
            return await store.load("7"), await store.load("8")
        finally:
            await db.close()

    assert asyncio.run(run()) == (None, None)
