"""
Delayed-queue drainer.

Moves every due record from the deferred index into its destination queue.
Each timestamp bucket is exhausted before the store is asked for the next
one; due timestamps are never pre-fetched, so buckets that become due while
an earlier one drains are still picked up in the same pass.
"""

from typing import Callable, NamedTuple, Optional

from decologr import Logger as log

from deferq.core.job import ScheduledJob
from deferq.core.store import DeferredStore
from deferq.errors import MalformedJobError, StoreIntegrityError


class DrainReport(NamedTuple):
    """Outcome of one drain pass."""

    promoted: int = 0
    skipped: int = 0


class DelayedQueueDrainer:
    """
    Promotes due delayed jobs into ready queues.

    Holds nothing between calls except the store handle.
    """

    def __init__(
        self,
        store: DeferredStore,
        on_promote: Optional[Callable[[ScheduledJob], None]] = None,
        on_timestamp: Optional[Callable[[int], None]] = None,
        on_skip: Optional[Callable[[int, MalformedJobError], None]] = None,
    ):
        """
        :param store: Deferred store to drain
        :param on_promote: Called after each job is enqueued
        :param on_timestamp: Called when a timestamp bucket starts draining
        :param on_skip: Called for each malformed record (default: log an error)
        """
        self.store = store
        self.on_promote = on_promote
        self.on_timestamp = on_timestamp
        self.on_skip = on_skip

    def drain_all(self) -> DrainReport:
        """
        Drain every due timestamp bucket.

        Store failures propagate to the caller unchanged.

        :return: DrainReport with promoted and skipped counts
        :raises StoreIntegrityError: if a due timestamp keeps yielding no records
        """
        promoted = 0
        skipped = 0
        # Timestamps that yielded nothing since the last bucket with records
        empty_timestamps = set()

        timestamp = self.store.next_due_timestamp()
        while timestamp is not None:
            if self.on_timestamp:
                self.on_timestamp(timestamp)

            bucket_promoted, bucket_skipped = self._drain_timestamp(timestamp)
            promoted += bucket_promoted
            skipped += bucket_skipped

            if bucket_promoted or bucket_skipped:
                empty_timestamps.clear()
            elif timestamp in empty_timestamps:
                raise StoreIntegrityError(
                    f"Timestamp {timestamp} is reported due but yields no delayed jobs"
                )
            else:
                empty_timestamps.add(timestamp)

            timestamp = self.store.next_due_timestamp()

        return DrainReport(promoted=promoted, skipped=skipped)

    def _drain_timestamp(self, timestamp: int):
        """Pop and enqueue records at or before timestamp until the bucket is empty."""
        promoted = 0
        skipped = 0

        record = self.store.next_item_for_timestamp(timestamp)
        while record is not None:
            try:
                job = ScheduledJob.from_record(record)
            except MalformedJobError as ex:
                # Already removed from the index; report it and keep draining
                if self.on_skip:
                    self.on_skip(timestamp, ex)
                else:
                    log.error(f"Skipping malformed delayed job at {timestamp}: {ex}")
                skipped += 1
            else:
                self.store.enqueue(job.queue, job.job_class, job.args)
                promoted += 1
                if self.on_promote:
                    self.on_promote(job)

            record = self.store.next_item_for_timestamp(timestamp)

        return promoted, skipped
