"""In-process TTL stores: dedup marks, execution records, cancellation marks.

Each store is instance-local. Two replicas of the service do not see each
other's marks, so a notification redelivered to a different replica within
the dedup window can be dispatched twice. The queue's redelivery window is
short compared to how long a replica lives, which keeps that rare; moving
these stores to a shared backend is the extension point if it is not.

Expired entries are evicted whenever a store is written to, and an entry
older than its TTL is treated as absent even before eviction. Mutations do
not await, so on a single event loop a check-and-mark is atomic.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Generic, Hashable, Optional, TypeVar

from src.config import settings

V = TypeVar("V")

Clock = Callable[[], float]


class TTLStore(Generic[V]):
    """Key-value store whose entries lapse ``ttl`` seconds after insertion."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, V]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def _evict_expired(self, now: float) -> None:
        stale = [k for k, (stamped, _) in self._entries.items() if now - stamped >= self._ttl]
        for key in stale:
            del self._entries[key]

    def put(self, key: Hashable, value: V) -> None:
        now = self._clock()
        self._evict_expired(now)
        self._entries[key] = (now, value)

    def put_if_absent(self, key: Hashable, value: V) -> bool:
        now = self._clock()
        self._evict_expired(now)
        if key in self._entries:
            return False
        self._entries[key] = (now, value)
        return True

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stamped, value = entry
        if self._clock() - stamped >= self._ttl:
            return None
        return value

    def pop(self, key: Hashable) -> Optional[V]:
        value = self.get(key)
        self._entries.pop(key, None)
        return value

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for stamped, _ in self._entries.values() if now - stamped < self._ttl)

    def clear(self) -> None:
        self._entries.clear()


class DedupCache:
    """Work keys that are in flight or were dispatched recently."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        self._store: TTLStore[float] = TTLStore(ttl, clock)
        self._clock = clock

    def check(self, work_key: Hashable) -> bool:
        return self._store.get(work_key) is not None

    def mark(self, work_key: Hashable) -> bool:
        """Mark ``work_key``; False if a live mark already exists."""
        return self._store.put_if_absent(work_key, self._clock())

    def unmark(self, work_key: Hashable) -> None:
        self._store.pop(work_key)

    def clear(self) -> None:
        self._store.clear()


@dataclass(frozen=True)
class JobHandle:
    resource_group: str
    job_name: str
    execution_name: str


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    job: JobHandle
    dispatched_at: float = field(default_factory=time.time)


class ExecutionTracker:
    """Maps execution IDs handed to users onto platform job executions."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        self._store: TTLStore[ExecutionRecord] = TTLStore(ttl, clock)

    def record(self, record: ExecutionRecord) -> None:
        self._store.put(record.execution_id, record)

    def lookup(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._store.get(execution_id)

    def forget(self, execution_id: str) -> None:
        self._store.pop(execution_id)

    def clear(self) -> None:
        self._store.clear()


class CancellationMarks:
    """Execution IDs that were asked to stop, for jobs polling their own status."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        self._store: TTLStore[float] = TTLStore(ttl, clock)

    def mark(self, execution_id: str) -> None:
        self._store.put(execution_id, time.time())

    def is_marked(self, execution_id: str) -> bool:
        return self._store.get(execution_id) is not None

    def clear(self) -> None:
        self._store.clear()


dedup_cache = DedupCache(settings.dedup_ttl_seconds)
execution_tracker = ExecutionTracker(settings.execution_ttl_seconds)
cancellation_marks = CancellationMarks(settings.cancellation_mark_ttl_seconds)
