from __future__ import annotations

from encore.services.health import MethodHealthTracker


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_unknown_method_is_available() -> None:
    health = MethodHealthTracker()
    assert health.is_available("youtube-direct")
    assert health.get("youtube-direct") is None


def test_cooldown_doubles_then_caps_at_ceiling() -> None:
    clock = _Clock()
    health = MethodHealthTracker(base_cooldown=10, max_cooldown=300, failure_ceiling=3, clock=clock)

    health.record_failure("m", "boom")
    assert health.get("m").cooldown_until == clock.now + 10
    health.record_failure("m", "boom")
    assert health.get("m").cooldown_until == clock.now + 20
    health.record_failure("m", "boom")
    assert health.get("m").cooldown_until == clock.now + 300
    assert health.get("m").consecutive_failures == 3
    assert health.get("m").last_error == "boom"


def test_method_comes_back_after_cooldown() -> None:
    clock = _Clock()
    health = MethodHealthTracker(base_cooldown=15, clock=clock)
    health.record_failure("m")
    assert not health.is_available("m")

    clock.now += 15
    assert health.is_available("m")


def test_success_resets_failure_streak() -> None:
    clock = _Clock()
    health = MethodHealthTracker(clock=clock)
    health.record_failure("m")
    health.record_failure("m")
    health.record_success("m")

    record = health.get("m")
    assert record.consecutive_failures == 0
    assert record.total_failures == 2
    assert record.total_successes == 1
    assert health.is_available("m")


def test_filter_and_reset() -> None:
    health = MethodHealthTracker(clock=_Clock())
    health.record_failure("a")
    health.record_failure("b")

    assert health.filter(["a", "b", "c"]) == ["c"]
    health.reset(["a"])
    assert health.filter(["a", "b", "c"]) == ["a", "c"]
    health.reset()
    assert health.filter(["a", "b", "c"]) == ["a", "b", "c"]


def test_sweep_forgets_only_idle_healthy_records() -> None:
    clock = _Clock()
    health = MethodHealthTracker(clock=clock)
    health.record_success("idle")
    health.record_failure("failing")
    clock.now += 7200

    assert health.sweep(max_idle=3600) == 1
    assert health.get("idle") is None
    assert health.get("failing") is not None
