"""Tests for the in-process TTL stores."""

from src.schemas.notifications import WorkKey
from src.services.caches import (
    CancellationMarks,
    DedupCache,
    ExecutionRecord,
    ExecutionTracker,
    JobHandle,
    TTLStore,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_dedup_mark_is_exclusive_until_ttl():
    clock = FakeClock()
    cache = DedupCache(ttl=600, clock=clock)
    key = WorkKey("m1", "t1")

    assert cache.mark(key) is True
    assert cache.check(key) is True
    assert cache.mark(key) is False

    clock.advance(599)
    assert cache.mark(key) is False

    clock.advance(1)
    assert cache.check(key) is False
    assert cache.mark(key) is True


def test_dedup_unmark_allows_retry():
    cache = DedupCache(ttl=600, clock=FakeClock())
    key = WorkKey("m1", "t1")

    cache.mark(key)
    cache.unmark(key)

    assert cache.check(key) is False
    assert cache.mark(key) is True


def test_expired_entries_are_evicted_on_insert():
    clock = FakeClock()
    store: TTLStore[str] = TTLStore(ttl=10, clock=clock)
    store.put("a", "1")
    store.put("b", "2")

    clock.advance(11)
    store.put("c", "3")

    assert len(store) == 1
    assert store._entries.keys() == {"c"}


def test_execution_tracker_lookup_and_expiry():
    clock = FakeClock()
    tracker = ExecutionTracker(ttl=7200, clock=clock)
    record = ExecutionRecord("m1-t1-1", JobHandle("rg", "job", "job-abc12"))

    tracker.record(record)
    assert tracker.lookup("m1-t1-1") == record

    clock.advance(7200)
    assert tracker.lookup("m1-t1-1") is None


def test_execution_tracker_forget():
    tracker = ExecutionTracker(ttl=7200, clock=FakeClock())
    tracker.record(ExecutionRecord("e1", JobHandle("rg", "job", "exec")))

    tracker.forget("e1")

    assert tracker.lookup("e1") is None


def test_cancellation_marks_expire():
    clock = FakeClock()
    marks = CancellationMarks(ttl=1800, clock=clock)

    marks.mark("e1")
    assert marks.is_marked("e1") is True
    assert marks.is_marked("e2") is False

    clock.advance(1800)
    assert marks.is_marked("e1") is False
