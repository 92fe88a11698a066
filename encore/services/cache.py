"""
Content-addressed audio cache
"""
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable

from encore.errors import CacheCorruptionError

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A transcoded file on disk for one source identifier."""
    key: str
    path: Path
    created_at: float
    size_bytes: int

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_valid(self, ttl_seconds: float, now: float) -> bool:
        return self.size_bytes > 0 and self.age(now) < ttl_seconds


class CacheStore:
    """Maps source identifiers to files at ``<root>/<md5>.<ext>``.

    Expired or empty files are deleted on lookup; ``sweep`` additionally keeps
    the directory below its size cap by evicting the oldest files first.
    """

    def __init__(
        self,
        root: Path,
        ttl_seconds: float = 24 * 3600,
        max_bytes: int = 1024 * 1024 * 1024,
        extension: str = "mp3",
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.ttl_seconds = ttl_seconds
        self.max_bytes = max_bytes
        self.extension = extension
        self._clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def key_for(source_id: str) -> str:
        """Stable content address for a source identifier."""
        return hashlib.md5(source_id.encode("utf-8")).hexdigest()

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.{self.extension}"

    def _entry(self, key: str, path: Path) -> CacheEntry | None:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        return CacheEntry(key=key, path=path, created_at=stat.st_mtime, size_bytes=stat.st_size)

    def lookup(self, source_id: str) -> CacheEntry | None:
        """Return a valid entry or None, purging an invalid one."""
        key = self.key_for(source_id)
        entry = self._entry(key, self.path_for(key))
        if entry is None:
            return None
        if not entry.is_valid(self.ttl_seconds, self._clock()):
            reason = "empty" if entry.size_bytes == 0 else "expired"
            logger.info(f"Purging {reason} cache entry {key}")
            self._unlink(entry.path)
            return None
        return entry

    def open(self, source_id: str) -> tuple[CacheEntry, BinaryIO] | None:
        """Open a read stream over a valid entry."""
        entry = self.lookup(source_id)
        if entry is None:
            return None
        try:
            handle = open(entry.path, "rb")
        except OSError as e:
            self._unlink(entry.path)
            raise CacheCorruptionError(f"Unreadable cache entry {entry.key}: {e}") from e
        return entry, handle

    def store(self, source_id: str, produced: Path) -> CacheEntry:
        """Atomically move a finished file into its content-addressed slot."""
        key = self.key_for(source_id)
        target = self.path_for(key)
        os.replace(produced, target)
        # mtime doubles as the creation stamp
        os.utime(target, None)
        entry = self._entry(key, target)
        if entry is None or entry.size_bytes == 0:
            self._unlink(target)
            raise CacheCorruptionError(f"Cache entry {key} vanished or is empty after store")
        logger.info(f"Cached {source_id} as {target.name} ({entry.size_bytes} bytes)")
        return entry

    def invalidate(self, source_id: str) -> bool:
        key = self.key_for(source_id)
        return self._unlink(self.path_for(key))

    def entries(self) -> list[CacheEntry]:
        result = []
        for path in self.root.glob(f"*.{self.extension}"):
            entry = self._entry(path.stem, path)
            if entry is not None:
                result.append(entry)
        return result

    def sweep(self) -> int:
        """Remove invalid entries, then trim oldest files to 80% of the cap."""
        now = self._clock()
        removed = 0
        live = []
        for entry in self.entries():
            if entry.is_valid(self.ttl_seconds, now):
                live.append(entry)
            elif self._unlink(entry.path):
                removed += 1

        total = sum(e.size_bytes for e in live)
        if total > self.max_bytes:
            target = int(self.max_bytes * 0.8)
            for entry in sorted(live, key=lambda e: e.created_at):
                if total <= target:
                    break
                if self._unlink(entry.path):
                    total -= entry.size_bytes
                    removed += 1
            logger.info(f"Cache trimmed to {total} bytes (cap {self.max_bytes})")

        if removed:
            logger.info(f"Cache sweep removed {removed} file(s)")
        return removed

    def stats(self) -> dict:
        entries = self.entries()
        return {
            "files": len(entries),
            "size_bytes": sum(e.size_bytes for e in entries),
            "max_bytes": self.max_bytes,
        }

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete cache file {path}: {e}")
            return False
