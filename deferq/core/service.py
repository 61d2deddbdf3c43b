#!/usr/bin/env python3
"""
Scheduler daemon.

Polls the deferred store every ``interval`` seconds and promotes due jobs
into their ready queues. Only one instance should run against a store to
avoid promoting the same bucket from two processes.

Signals:
- TERM, INT: shut down now
- QUIT, USR1: shut down after the current tick
- USR2: pause promoting jobs
- CONT: resume promoting jobs
- PIPE: the store connection went away; reconnect at the next tick
"""

import os
import signal
import socket
import time
from typing import Callable, Optional

from decologr import Logger as log

from deferq.config import DEFAULT_INTERVAL, LogLevel, parse_interval
from deferq.core.drainer import DelayedQueueDrainer, DrainReport
from deferq.core.job import ScheduledJob
from deferq.core.lifecycle import LifecycleState, Phase
from deferq.core.store import DeferredStore
from deferq.errors import StoreConnectionError, StoreIntegrityError

SIGNAL_HANDLERS = (
    ("SIGTERM", "shutdown_now"),
    ("SIGINT", "shutdown_now"),
    ("SIGQUIT", "shutdown"),
    ("SIGUSR1", "shutdown"),
    ("SIGUSR2", "pause_processing"),
    ("SIGCONT", "unpause_processing"),
    ("SIGPIPE", "connection_lost"),
)


class SchedulerDaemon:
    """
    Owns the poll loop and maps process signals onto lifecycle transitions.

    Usage:
        store = SqliteDeferredStore(db_path)
        SchedulerDaemon(store, interval=5).work()
    """

    def __init__(
        self,
        store: DeferredStore,
        interval: int = DEFAULT_INTERVAL,
        log_level: LogLevel = LogLevel.NORMAL,
        sleep: Callable[[float], None] = time.sleep,
        register_signals: bool = True,
    ):
        """
        Initialize the daemon.

        :param store: Deferred store to drain
        :param interval: Seconds to sleep between ticks
        :param log_level: SILENT, NORMAL or VERBOSE
        :param sleep: Sleep function (injectable for tests)
        :param register_signals: Install process signal handlers in work()
        """
        self.store = store
        self.interval = parse_interval(interval)
        self.log_level = LogLevel.parse(log_level)
        self.sleep = sleep
        self.register_signals = register_signals
        self.state = LifecycleState()
        self.drainer = DelayedQueueDrainer(
            store,
            on_promote=self._on_promote,
            on_timestamp=self._on_timestamp,
            on_skip=self._on_skip,
        )
        self.ident = f"{socket.gethostname()}:{os.getpid()}: Scheduled Tasks"
        self._previous_handlers = {}
        self._reported_paused = False
        self._reported_shutdown = False

    def work(self):
        """
        Run the poll loop until a shutdown is requested.

        Shutdown is checked at the top of every tick and after the drain,
        never in the middle of a drain pass.
        """
        self.startup()
        try:
            while True:
                self._report_transitions()
                if not self.state.running:
                    break

                if self.state.consume_reconnect():
                    self._reconnect()

                if not self.state.paused:
                    self.tick()

                self._report_transitions()
                if not self.state.running:
                    break

                self.sleep(self.interval)
        finally:
            self.state.mark_stopped()
            self._restore_signal_handlers()
            self.log("Scheduler stopped", LogLevel.VERBOSE)

    start = work

    def startup(self):
        """Perform necessary actions before the first tick."""
        self.log(f"Starting {self.ident} (interval {self.interval}s)")
        if self.register_signals:
            self._register_signal_handlers()
        self.state.start()

    def tick(self) -> Optional[DrainReport]:
        """
        Run one drain pass.

        A lost store connection is reported and a reconnect scheduled; the
        loop keeps going. An integrity violation stops the daemon and is
        re-raised. Anything else propagates unchanged.

        :return: DrainReport, or None if the store was unavailable
        """
        self.log("Looking for jobs")
        try:
            report = self.drainer.drain_all()
        except StoreConnectionError as ex:
            self.log(f"Store unavailable: {ex}", error=True)
            self.state.request_reconnect()
            return None
        except StoreIntegrityError as ex:
            self.log(f"Store integrity violation, stopping: {ex}", error=True)
            self.state.mark_stopped()
            raise

        if report.skipped:
            self.log(f"Skipped {report.skipped} malformed delayed job(s)", error=True)
        self.log("Waiting for jobs")
        return report

    def stop(self):
        """Request a graceful stop from code rather than a signal."""
        self.shutdown()

    def status(self) -> dict:
        """
        Get daemon status.

        :return: Dictionary with lifecycle and store information
        """
        delayed = None
        size = getattr(self.store, "delayed_queue_size", None)
        if size is not None:
            try:
                delayed = size()
            except StoreConnectionError as ex:
                log.warning(f"Could not read delayed queue size: {ex}")

        return {
            "ident": self.ident,
            "phase": self.state.phase.value,
            "paused": self.state.paused,
            "interval": self.interval,
            "delayed_jobs": delayed,
        }

    @property
    def phase(self) -> Phase:
        return self.state.phase

    # Signal callbacks; they only flip lifecycle flags. The loop reports
    # what changed at its next checkpoint.

    def shutdown(self, signum=None, frame=None):
        """Stop after the current tick."""
        self.state.request_shutdown()

    def shutdown_now(self, signum=None, frame=None):
        """
        Stop immediately.

        There is no running job to kill here, so this ends the loop the same
        way a graceful shutdown does.
        """
        self.state.request_shutdown(immediate=True)

    def pause_processing(self, signum=None, frame=None):
        self.state.pause()

    def unpause_processing(self, signum=None, frame=None):
        self.state.resume()

    def connection_lost(self, signum=None, frame=None):
        """The store connection went away; reconnect before the next drain."""
        self.state.request_reconnect()

    def log(self, message: str, level: LogLevel = LogLevel.NORMAL, error: bool = False):
        """
        Report a message if the configured log level allows it.

        Nothing is reported at SILENT.
        """
        if self.log_level < level:
            return
        if error:
            log.error(message)
        elif level >= LogLevel.VERBOSE:
            log.debug(message)
        else:
            log.info(message)

    def _reconnect(self):
        self.log("Store connection lost; reconnecting")
        try:
            self.store.reconnect()
        except StoreConnectionError as ex:
            self.log(f"Reconnect failed, retrying next tick: {ex}", error=True)
            self.state.request_reconnect()

    def _report_transitions(self):
        """Log lifecycle changes made by signal handlers since the last checkpoint."""
        if self.state.paused != self._reported_paused:
            self._reported_paused = self.state.paused
            if self.state.paused:
                self.log("Pausing job processing")
            else:
                self.log("Resuming job processing")
        if not self.state.running and not self._reported_shutdown:
            self._reported_shutdown = True
            self.log("Exiting now..." if self.state.immediate else "Exiting...")

    def _on_timestamp(self, timestamp: int):
        self.log(f"Draining delayed jobs due at {timestamp}", LogLevel.VERBOSE)

    def _on_skip(self, timestamp: int, error: Exception):
        self.log(f"Skipping malformed delayed job at {timestamp}: {error}", error=True)

    def _on_promote(self, job: ScheduledJob):
        self.log("Adding delayed job to queue")
        self.log(f"{job.job_class} -> {job.queue}", LogLevel.VERBOSE)

    def _register_signal_handlers(self):
        """Register the signals the daemon responds to (main thread only)."""
        for name, handler_name in SIGNAL_HANDLERS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                previous = signal.signal(signum, getattr(self, handler_name))
            except ValueError:
                # Signals can only be registered in main thread
                log.debug("Signal handlers not registered (not in main thread)")
                return
            self._previous_handlers[signum] = previous
        self.log("Registered signals", LogLevel.VERBOSE)

    def _restore_signal_handlers(self):
        for signum, previous in self._previous_handlers.items():
            try:
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
            except ValueError:
                log.debug(f"Could not restore handler for signal {signum}")
        self._previous_handlers = {}
