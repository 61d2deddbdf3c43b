"""Core scheduler components."""

from deferq.core.drainer import DelayedQueueDrainer, DrainReport
from deferq.core.job import ScheduledJob
from deferq.core.lifecycle import LifecycleState, Phase
from deferq.core.service import SchedulerDaemon
from deferq.core.store import DeferredStore, SqliteDeferredStore

__all__ = [
    "DelayedQueueDrainer",
    "DrainReport",
    "ScheduledJob",
    "LifecycleState",
    "Phase",
    "SchedulerDaemon",
    "DeferredStore",
    "SqliteDeferredStore",
]
