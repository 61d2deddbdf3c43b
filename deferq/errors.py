"""Exceptions raised by deferq."""


class DeferqError(Exception):
    """Base class for all deferq errors"""


class StoreError(DeferqError):
    """The deferred store failed an operation"""


class StoreConnectionError(StoreError):
    """
    The store connection is unavailable.

    Transient: the daemon reports it and reconnects on the next tick.
    """


class StoreIntegrityError(StoreError):
    """
    The store broke its contract.

    Raised when a timestamp is reported as due but never yields a record.
    The daemon stops rather than keep draining against a store in this state.
    """


class MalformedJobError(DeferqError):
    """A delayed record has no destination queue or job class"""


class ConfigError(DeferqError, ValueError):
    """Invalid configuration value"""
