"""
Queue snapshot persistence - one JSON document per voice session
"""
import json
import logging

from encore.database.connection import DatabaseManager
from encore.models import QueueSnapshot

logger = logging.getLogger(__name__)


class QueueSnapshotStore:
    """Reads and writes QueueSnapshot documents keyed by session."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def save(self, session_key: str, snapshot: QueueSnapshot) -> None:
        payload = json.dumps(snapshot.to_dict())
        await self.db.execute(
            """
            INSERT INTO queue_snapshots (session_key, payload, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(session_key) DO UPDATE SET
                payload = excluded.payload,
                updated_at = CURRENT_TIMESTAMP
            """,
            (session_key, payload),
        )

    async def load(self, session_key: str) -> QueueSnapshot | None:
        """Saved snapshot, or None when absent or unreadable."""
        row = await self.db.fetch_one(
            "SELECT payload FROM queue_snapshots WHERE session_key = ?", (session_key,)
        )
        if not row:
            return None
        try:
            return QueueSnapshot.from_dict(json.loads(row["payload"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding corrupt queue snapshot for {session_key}: {e}")
            return None

    async def delete(self, session_key: str) -> None:
        await self.db.execute("DELETE FROM queue_snapshots WHERE session_key = ?", (session_key,))
