#!/usr/bin/env python3
"""
Deferred job store.

DeferredStore is the contract the drainer and daemon consume:
- next_due_timestamp: earliest due bucket
- next_item_for_timestamp: atomic pop of one due record
- enqueue: append to a ready queue
- reconnect: re-establish the connection

SqliteDeferredStore implements it on SQLite and adds the producer side
(enqueue_at / enqueue_in / remove_delayed) and inspection helpers.
"""

import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from decologr import Logger as log, log_exception

from deferq.config import DEFAULT_DB_PATH
from deferq.core.job import ScheduledJob
from deferq.errors import StoreConnectionError, StoreError

Timestamp = Union[int, float, datetime]

# Messages sqlite3 uses for a lost, closed or contended connection
_TRANSIENT_MESSAGES = ("database is locked", "database table is locked", "busy", "closed", "unable to open", "not open")


def store_error(ex: sqlite3.Error) -> StoreError:
    """
    Map a sqlite3 error onto the store taxonomy.

    Closed, busy and locked connections are transient; anything else (missing
    tables, I/O errors, bad SQL) is a plain StoreError.
    """
    message = str(ex).lower()
    transient_types = (sqlite3.OperationalError, sqlite3.ProgrammingError, sqlite3.InterfaceError)
    if isinstance(ex, transient_types) and any(text in message for text in _TRANSIENT_MESSAGES):
        return StoreConnectionError(str(ex))
    return StoreError(str(ex))


def to_timestamp(value: Timestamp) -> int:
    """Convert a datetime or epoch number to whole epoch seconds."""
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


def encode_payload(queue: str, job_class: str, args: Optional[Mapping[str, Any]]) -> str:
    """Serialize a job record; keys are sorted so equal jobs encode identically."""
    return json.dumps(ScheduledJob(queue, job_class, dict(args or {})).to_record(), sort_keys=True)


class DeferredStore(ABC):
    """Storage collaborator consumed by the drainer and daemon."""

    @abstractmethod
    def next_due_timestamp(self) -> Optional[int]:
        """Earliest timestamp with a record at or before now, or None."""

    @abstractmethod
    def next_item_for_timestamp(self, timestamp: int) -> Optional[Dict[str, Any]]:
        """Atomically remove and return one record due at or before timestamp."""

    @abstractmethod
    def enqueue(self, queue: str, job_class: str, args: Mapping[str, Any]) -> None:
        """Append a ready-to-run job to a queue."""

    @abstractmethod
    def reconnect(self) -> None:
        """Re-establish the store connection."""


class SqliteDeferredStore(DeferredStore):
    """
    SQLite-backed deferred index and ready queues.

    Delayed records live in ``delayed_queue`` keyed by epoch-second timestamp;
    promoted jobs are appended to ``ready_queue`` for consumers to pop.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the store.

        :param db_path: Path to SQLite database file. If None, uses ~/.deferq/deferq.db
        :param clock: Returns the current epoch time; used to decide what is due
        """
        db_path = Path(db_path) if db_path is not None else DEFAULT_DB_PATH

        # Ensure parent directory exists
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self.clock = clock
        self.lock = threading.Lock()
        self.connection: Optional[sqlite3.Connection] = None

        self._connect()
        self._init_database()

    def _connect(self):
        """Open the connection in autocommit mode; transactions are explicit."""
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        except sqlite3.Error as ex:
            raise StoreConnectionError(f"Cannot open {self.db_path}: {ex}") from ex
        conn.row_factory = sqlite3.Row
        self.connection = conn

    def _init_database(self):
        """Create tables and indexes"""
        conn = self._conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS delayed_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    queue TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ready_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_delayed_queue_timestamp ON delayed_queue(timestamp, id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ready_queue_queue ON ready_queue(queue, id)"
            )
        except sqlite3.Error as ex:
            log_exception(ex, "Error initializing deferred store database")
            raise store_error(ex) from ex

    def _conn(self) -> sqlite3.Connection:
        if self.connection is None:
            raise StoreConnectionError("Store connection is closed")
        return self.connection

    def _now(self) -> int:
        return int(self.clock())

    def reconnect(self):
        """Close the current connection (if any) and open a new one."""
        with self.lock:
            if self.connection is not None:
                try:
                    self.connection.close()
                except sqlite3.Error as ex:
                    log.warning(f"Error closing stale connection: {ex}")
                self.connection = None
            self._connect()

    def close(self):
        with self.lock:
            if self.connection is not None:
                self.connection.close()
                self.connection = None

    # Drain side

    def next_due_timestamp(self) -> Optional[int]:
        now = self._now()
        with self.lock:
            try:
                row = self._conn().execute(
                    "SELECT MIN(timestamp) AS ts FROM delayed_queue WHERE timestamp <= ?",
                    (now,),
                ).fetchone()
            except sqlite3.Error as ex:
                raise store_error(ex) from ex
        return row["ts"] if row is not None else None

    def next_item_for_timestamp(self, timestamp: int) -> Optional[Dict[str, Any]]:
        with self.lock:
            conn = self._conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as ex:
                raise store_error(ex) from ex
            try:
                row = conn.execute(
                    """
                    SELECT id, payload FROM delayed_queue
                    WHERE timestamp <= ?
                    ORDER BY timestamp ASC, id ASC
                    LIMIT 1
                    """,
                    (int(timestamp),),
                ).fetchone()
                if row is not None:
                    conn.execute("DELETE FROM delayed_queue WHERE id = ?", (row["id"],))
                conn.execute("COMMIT")
            except sqlite3.Error as ex:
                self._rollback(conn)
                raise store_error(ex) from ex
            except Exception:
                self._rollback(conn)
                raise

        if row is None:
            return None
        return self._decode(row["payload"])

    def enqueue(self, queue: str, job_class: str, args: Mapping[str, Any]):
        payload = encode_payload(queue, job_class, args)
        with self.lock:
            try:
                self._conn().execute(
                    "INSERT INTO ready_queue (queue, payload, enqueued_at) VALUES (?, ?, ?)",
                    (queue, payload, datetime.now().isoformat()),
                )
            except sqlite3.Error as ex:
                raise store_error(ex) from ex

    # Producer side

    def enqueue_at(
        self,
        at: Timestamp,
        queue: str,
        job_class: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Schedule a job to be promoted to ``queue`` once ``at`` has passed.

        :param at: Epoch seconds or datetime
        :param queue: Destination queue
        :param job_class: Job class identifier
        :param args: Optional argument payload
        :return: Row id of the delayed record
        """
        if not queue or not job_class:
            raise ValueError("Both queue and job_class are required")
        timestamp = to_timestamp(at)
        payload = encode_payload(queue, job_class, args)
        with self.lock:
            try:
                cursor = self._conn().execute(
                    """
                    INSERT INTO delayed_queue (timestamp, queue, payload, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (timestamp, queue, payload, datetime.now().isoformat()),
                )
            except sqlite3.Error as ex:
                raise store_error(ex) from ex
        log.info(f"Scheduled {job_class} on {queue} at {timestamp}")
        return cursor.lastrowid

    def enqueue_in(
        self,
        seconds: Union[int, float],
        queue: str,
        job_class: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Schedule a job ``seconds`` from now."""
        return self.enqueue_at(self._now() + int(seconds), queue, job_class, args)

    def remove_delayed(
        self,
        queue: str,
        job_class: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Remove every delayed record matching queue, class and args exactly.

        :return: Number of records removed
        """
        payload = encode_payload(queue, job_class, args)
        with self.lock:
            try:
                cursor = self._conn().execute(
                    "DELETE FROM delayed_queue WHERE queue = ? AND payload = ?",
                    (queue, payload),
                )
            except sqlite3.Error as ex:
                raise store_error(ex) from ex
        removed = cursor.rowcount
        if removed:
            log.info(f"Removed {removed} delayed {job_class} job(s) from {queue}")
        return removed

    # Inspection

    def delayed_queue_size(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM delayed_queue")

    def delayed_timestamp_size(self, timestamp: Timestamp) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM delayed_queue WHERE timestamp = ?", (to_timestamp(timestamp),)
        )

    def delayed_timestamps(self) -> List[Tuple[int, int]]:
        """(timestamp, count) for every non-empty bucket, earliest first."""
        rows = self._fetchall(
            "SELECT timestamp, COUNT(*) AS count FROM delayed_queue GROUP BY timestamp ORDER BY timestamp"
        )
        return [(row["timestamp"], row["count"]) for row in rows]

    def queue_size(self, queue: str) -> int:
        return self._scalar("SELECT COUNT(*) FROM ready_queue WHERE queue = ?", (queue,))

    def queues(self) -> List[str]:
        rows = self._fetchall("SELECT DISTINCT queue FROM ready_queue ORDER BY queue")
        return [row["queue"] for row in rows]

    def pop(self, queue: str) -> Optional[Dict[str, Any]]:
        """
        Remove and return the oldest ready job on ``queue``.

        Consumers use this; the daemon never does.
        """
        with self.lock:
            conn = self._conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT id, payload FROM ready_queue WHERE queue = ? ORDER BY id LIMIT 1",
                    (queue,),
                ).fetchone()
                if row is not None:
                    conn.execute("DELETE FROM ready_queue WHERE id = ?", (row["id"],))
                conn.execute("COMMIT")
            except sqlite3.Error as ex:
                self._rollback(conn)
                raise store_error(ex) from ex
            except Exception:
                self._rollback(conn)
                raise
        if row is None:
            return None
        return self._decode(row["payload"])

    # Helpers

    def _scalar(self, query: str, params: tuple = ()) -> int:
        with self.lock:
            try:
                row = self._conn().execute(query, params).fetchone()
            except sqlite3.Error as ex:
                raise store_error(ex) from ex
        return row[0] if row is not None else 0

    def _fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.lock:
            try:
                return self._conn().execute(query, params).fetchall()
            except sqlite3.Error as ex:
                raise store_error(ex) from ex

    @staticmethod
    def _rollback(conn: sqlite3.Connection):
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as ex:
                log.warning(f"Rollback failed: {ex}")

    @staticmethod
    def _decode(payload: str) -> Dict[str, Any]:
        """
        Decode a stored payload.

        Undecodable payloads come back without queue/class so the drainer
        reports them as malformed instead of dropping them silently.
        """
        try:
            record = json.loads(payload)
        except (TypeError, ValueError) as ex:
            return {"payload": payload, "error": f"undecodable payload: {ex}"}
        if not isinstance(record, dict):
            return {"payload": record}
        return record
