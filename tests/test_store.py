import sqlite3
from datetime import datetime, timezone

import pytest

from deferq.core.drainer import DelayedQueueDrainer
from deferq.core.store import SqliteDeferredStore, encode_payload, store_error, to_timestamp
from deferq.errors import StoreConnectionError, StoreError


def test_empty_store_has_nothing_due(sqlite_store):
    assert sqlite_store.next_due_timestamp() is None
    assert sqlite_store.next_item_for_timestamp(1000) is None
    assert sqlite_store.delayed_queue_size() == 0


def test_next_due_timestamp_ignores_future(sqlite_store):
    sqlite_store.enqueue_at(1500, "q", "Later")
    sqlite_store.enqueue_at(900, "q", "Due")
    sqlite_store.enqueue_at(800, "q", "Earlier")

    assert sqlite_store.next_due_timestamp() == 800


def test_next_item_pops_earliest_first(sqlite_store):
    sqlite_store.enqueue_at(900, "q", "Second")
    sqlite_store.enqueue_at(800, "q", "First", {"x": 1})
    sqlite_store.enqueue_at(1500, "q", "Future")

    assert sqlite_store.next_item_for_timestamp(900) == {"queue": "q", "class": "First", "args": {"x": 1}}
    assert sqlite_store.next_item_for_timestamp(900)["class"] == "Second"
    assert sqlite_store.next_item_for_timestamp(900) is None
    assert sqlite_store.delayed_queue_size() == 1


def test_next_item_respects_bucket_bound(sqlite_store):
    sqlite_store.enqueue_at(950, "q", "Later")

    assert sqlite_store.next_item_for_timestamp(900) is None
    assert sqlite_store.delayed_timestamp_size(950) == 1


def test_enqueue_and_pop_ready_queue(sqlite_store):
    sqlite_store.enqueue("mail", "Send", {"to": "x"})
    sqlite_store.enqueue("mail", "Send", {"to": "y"})
    sqlite_store.enqueue("reports", "Build", {})

    assert sqlite_store.queues() == ["mail", "reports"]
    assert sqlite_store.queue_size("mail") == 2
    assert sqlite_store.pop("mail")["args"] == {"to": "x"}
    assert sqlite_store.queue_size("mail") == 1
    assert sqlite_store.pop("missing") is None


def test_enqueue_in_uses_clock(sqlite_store, clock):
    sqlite_store.enqueue_in(60, "q", "Delayed")

    assert sqlite_store.delayed_timestamps() == [(1060, 1)]


def test_enqueue_at_accepts_datetime(sqlite_store):
    at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    sqlite_store.enqueue_at(at, "q", "NewYear")

    assert sqlite_store.delayed_timestamp_size(at) == 1
    assert to_timestamp(at) == 1704067200


def test_enqueue_at_requires_queue_and_class(sqlite_store):
    with pytest.raises(ValueError):
        sqlite_store.enqueue_at(900, "", "Job")


def test_remove_delayed_matches_args_exactly(sqlite_store):
    sqlite_store.enqueue_at(900, "q", "Job", {"id": 1})
    sqlite_store.enqueue_at(950, "q", "Job", {"id": 1})
    sqlite_store.enqueue_at(950, "q", "Job", {"id": 2})

    assert sqlite_store.remove_delayed("q", "Job", {"id": 1}) == 2
    assert sqlite_store.delayed_timestamps() == [(950, 1)]
    assert sqlite_store.remove_delayed("q", "Job", {"id": 3}) == 0


def test_payload_encoding_is_key_order_independent():
    assert encode_payload("q", "J", {"a": 1, "b": 2}) == encode_payload("q", "J", {"b": 2, "a": 1})


def test_closed_store_raises_connection_error(sqlite_store):
    sqlite_store.enqueue_at(900, "q", "Job")
    sqlite_store.close()

    with pytest.raises(StoreConnectionError):
        sqlite_store.next_due_timestamp()

    sqlite_store.reconnect()
    assert sqlite_store.next_due_timestamp() == 900


def test_data_persists_across_instances(tmp_path, clock):
    first = SqliteDeferredStore(tmp_path / "jobs.db", clock=clock)
    first.enqueue_at(900, "q", "Job")
    first.close()

    second = SqliteDeferredStore(tmp_path / "jobs.db", clock=clock)
    try:
        assert second.next_due_timestamp() == 900
    finally:
        second.close()


def test_drain_scenario_against_sqlite(tmp_path):
    clock_value = [150]
    store = SqliteDeferredStore(tmp_path / "jobs.db", clock=lambda: clock_value[0])
    try:
        store.enqueue_at(100, "queueX", "jobA")
        store.enqueue_at(100, "queueY", "jobB")
        store.enqueue_at(200, "queueZ", "jobC")

        report = DelayedQueueDrainer(store).drain_all()

        assert report.promoted == 2
        assert store.pop("queueX")["class"] == "jobA"
        assert store.pop("queueY")["class"] == "jobB"
        assert store.queue_size("queueZ") == 0
        assert store.next_due_timestamp() is None

        clock_value[0] = 200
        assert store.next_due_timestamp() == 200
    finally:
        store.close()


def test_undecodable_payload_is_skipped_not_lost(sqlite_store):
    sqlite_store.connection.execute(
        "INSERT INTO delayed_queue (timestamp, queue, payload, created_at) VALUES (?, ?, ?, ?)",
        (900, "q", "{not json", "now"),
    )
    sqlite_store.enqueue_at(900, "q", "Good")

    report = DelayedQueueDrainer(sqlite_store, on_skip=lambda ts, ex: None).drain_all()

    assert report.promoted == 1
    assert report.skipped == 1
    assert sqlite_store.queue_size("q") == 1


@pytest.mark.parametrize(
    "error, transient",
    [
        (sqlite3.OperationalError("database is locked"), True),
        (sqlite3.OperationalError("unable to open database file"), True),
        (sqlite3.ProgrammingError("Cannot operate on a closed database."), True),
        (sqlite3.OperationalError("no such table: delayed_queue"), False),
        (sqlite3.OperationalError("disk I/O error"), False),
        (sqlite3.IntegrityError("NOT NULL constraint failed"), False),
    ],
)
def test_store_error_classification(error, transient):
    mapped = store_error(error)

    assert isinstance(mapped, StoreError)
    assert isinstance(mapped, StoreConnectionError) is transient


def test_schema_errors_are_not_treated_as_connection_loss(sqlite_store):
    sqlite_store.connection.execute("DROP TABLE delayed_queue")

    with pytest.raises(StoreError) as exc:
        sqlite_store.next_due_timestamp()

    assert not isinstance(exc.value, StoreConnectionError)


class SelectFails:
    """Connection wrapper whose SELECT statements raise a non-sqlite error."""

    def __init__(self, conn):
        self.conn = conn

    @property
    def in_transaction(self):
        return self.conn.in_transaction

    def execute(self, sql, *params):
        if sql.strip().upper().startswith("SELECT"):
            raise RuntimeError("boom")
        return self.conn.execute(sql, *params)


def test_pop_rolls_back_on_unexpected_error(sqlite_store):
    sqlite_store.enqueue("mail", "Send", {})
    real = sqlite_store.connection
    sqlite_store.connection = SelectFails(real)

    with pytest.raises(RuntimeError):
        sqlite_store.pop("mail")

    sqlite_store.connection = real
    assert not real.in_transaction
    assert sqlite_store.pop("mail")["class"] == "Send"


def test_pop_rolls_back_on_sqlite_error(sqlite_store):
    sqlite_store.connection.execute("DROP TABLE ready_queue")

    with pytest.raises(StoreError):
        sqlite_store.pop("mail")

    assert not sqlite_store.connection.in_transaction
    assert sqlite_store.next_item_for_timestamp(1000) is None
