"""Scheduled job record."""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from deferq.errors import MalformedJobError


@dataclass(frozen=True)
class ScheduledJob:
    """
    A job waiting in the deferred index.

    :param queue: Destination ready queue
    :param job_class: Job class/type identifier the consumer dispatches on
    :param args: Argument payload handed to the consumer
    """

    queue: str
    job_class: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ScheduledJob":
        """
        Build a job from a raw store record ({"queue", "class", "args"}).

        :param record: Mapping popped from the deferred index
        :return: ScheduledJob
        :raises MalformedJobError: if the queue or class is missing
        """
        if not isinstance(record, Mapping):
            raise MalformedJobError(f"Delayed record is not a mapping: {record!r}")

        queue = record.get("queue")
        job_class = record.get("class")
        if not queue or not isinstance(queue, str):
            raise MalformedJobError(f"Delayed record has no destination queue: {record!r}")
        if not job_class or not isinstance(job_class, str):
            raise MalformedJobError(f"Delayed record has no job class: {record!r}")

        args = record.get("args")
        if args is None:
            args = {}
        elif not isinstance(args, Mapping):
            raise MalformedJobError(f"Delayed record args must be a mapping: {record!r}")

        return cls(queue=queue, job_class=job_class, args=dict(args))

    def to_record(self) -> Dict[str, Any]:
        return {"queue": self.queue, "class": self.job_class, "args": dict(self.args)}
