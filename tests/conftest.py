import pytest

from deferq.core.store import DeferredStore, SqliteDeferredStore
from deferq.errors import StoreConnectionError


class FakeClock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


class MemoryStore(DeferredStore):
    """In-memory deferred store that records every call made against it."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.buckets = {}
        self.enqueued = []
        self.calls = []
        self.reconnects = 0
        self.fail_next = 0

    def add(self, timestamp, record):
        self.buckets.setdefault(timestamp, []).append(record)

    def _maybe_fail(self):
        if self.fail_next:
            self.fail_next -= 1
            raise StoreConnectionError("connection reset")

    def next_due_timestamp(self):
        self._maybe_fail()
        due = [ts for ts, items in self.buckets.items() if items and ts <= self.clock()]
        result = min(due) if due else None
        self.calls.append(("next_due", result))
        return result

    def next_item_for_timestamp(self, timestamp):
        self.calls.append(("next_item", timestamp))
        candidates = sorted(ts for ts, items in self.buckets.items() if items and ts <= timestamp)
        if not candidates:
            return None
        return self.buckets[candidates[0]].pop(0)

    def enqueue(self, queue, job_class, args):
        self.calls.append(("enqueue", queue, job_class))
        self.enqueued.append((queue, job_class, dict(args)))

    def reconnect(self):
        self.reconnects += 1

    def delayed_queue_size(self):
        return sum(len(items) for items in self.buckets.values())


@pytest.fixture
def clock():
    return FakeClock(now=1000)


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock)


@pytest.fixture
def sqlite_store(tmp_path, clock):
    store = SqliteDeferredStore(db_path=tmp_path / "deferq.db", clock=clock)
    yield store
    store.close()
