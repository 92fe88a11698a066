"""
Per-method health tracking (cooldowns / circuit breaker)
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

logger = logging.getLogger(__name__)


@dataclass
class MethodHealthRecord:
    name: str
    last_used_at: float | None = None
    last_failure_at: float | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    cooldown_until: float = 0.0
    total_successes: int = 0
    total_failures: int = 0


class MethodHealthTracker:
    """Tracks failures per acquisition method and keeps failing ones out of rotation.

    Each consecutive failure doubles the cooldown, starting at ``base_cooldown``
    and capped at ``max_cooldown``. Once ``failure_ceiling`` is reached the
    method sits out the full ``max_cooldown``; after that it gets one more try.
    """

    def __init__(
        self,
        base_cooldown: float = 15.0,
        max_cooldown: float = 300.0,
        failure_ceiling: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_cooldown = base_cooldown
        self.max_cooldown = max_cooldown
        self.failure_ceiling = failure_ceiling
        self._clock = clock
        self._records: dict[str, MethodHealthRecord] = {}

    def get(self, name: str) -> MethodHealthRecord | None:
        return self._records.get(name)

    def _record(self, name: str) -> MethodHealthRecord:
        record = self._records.get(name)
        if record is None:
            record = self._records[name] = MethodHealthRecord(name=name)
        return record

    def record_success(self, name: str) -> None:
        record = self._record(name)
        if record.consecutive_failures:
            logger.info(f"Method {name} recovered after {record.consecutive_failures} failure(s)")
        record.last_used_at = self._clock()
        record.consecutive_failures = 0
        record.cooldown_until = 0.0
        record.total_successes += 1

    def record_failure(self, name: str, reason: str = "") -> None:
        now = self._clock()
        record = self._record(name)
        record.last_used_at = now
        record.last_failure_at = now
        record.last_error = reason
        record.consecutive_failures += 1
        record.total_failures += 1

        if record.consecutive_failures >= self.failure_ceiling:
            cooldown = self.max_cooldown
        else:
            cooldown = min(self.max_cooldown, self.base_cooldown * 2 ** (record.consecutive_failures - 1))
        record.cooldown_until = now + cooldown
        logger.warning(
            f"Method {name} failed ({record.consecutive_failures} in a row), "
            f"cooling down {cooldown:.0f}s: {reason}"
        )

    def is_available(self, name: str) -> bool:
        record = self._records.get(name)
        if record is None:
            return True
        return self._clock() >= record.cooldown_until

    def filter(self, names: Iterable[str]) -> list[str]:
        return [n for n in names if self.is_available(n)]

    def reset(self, names: Iterable[str] | None = None) -> None:
        """Clear cooldowns (all methods, or the given ones)."""
        targets = list(self._records) if names is None else list(names)
        for name in targets:
            record = self._records.get(name)
            if record is not None:
                record.cooldown_until = 0.0
                record.consecutive_failures = 0
        logger.warning(f"Reset cooldowns for: {', '.join(targets) or 'none'}")

    def snapshot(self) -> dict[str, MethodHealthRecord]:
        return dict(self._records)

    def sweep(self, max_idle: float = 3600.0) -> int:
        """Forget healthy records that have not been used for ``max_idle`` seconds."""
        now = self._clock()
        stale = [
            name for name, r in self._records.items()
            if r.consecutive_failures == 0
            and r.last_used_at is not None
            and now - r.last_used_at > max_idle
        ]
        for name in stale:
            del self._records[name]
        return len(stale)
