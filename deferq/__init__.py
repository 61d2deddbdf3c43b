"""
deferq - delayed job scheduler.

Promotes delayed jobs from a time-indexed deferred set into ready queues
once their scheduled time has passed, using SQLite for persistence.
"""

from deferq.config import DaemonConfig, LogLevel
from deferq.core.drainer import DelayedQueueDrainer, DrainReport
from deferq.core.job import ScheduledJob
from deferq.core.lifecycle import LifecycleState, Phase
from deferq.core.service import SchedulerDaemon
from deferq.core.store import DeferredStore, SqliteDeferredStore
from deferq.errors import (
    ConfigError,
    DeferqError,
    MalformedJobError,
    StoreConnectionError,
    StoreError,
    StoreIntegrityError,
)

__all__ = [
    "DaemonConfig",
    "LogLevel",
    "DelayedQueueDrainer",
    "DrainReport",
    "ScheduledJob",
    "LifecycleState",
    "Phase",
    "SchedulerDaemon",
    "DeferredStore",
    "SqliteDeferredStore",
    "ConfigError",
    "DeferqError",
    "MalformedJobError",
    "StoreConnectionError",
    "StoreError",
    "StoreIntegrityError",
]
