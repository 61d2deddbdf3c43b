"""
Lifecycle state of the scheduler daemon.

Signal handlers and the owning loop only touch this object through its
transition methods. Each flag is an independent boolean so a handler
interrupting a read never leaves a half-written state behind.
"""

from enum import Enum


class Phase(Enum):
    """Daemon lifecycle phases"""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class LifecycleState:
    """Flags read once per tick by the daemon loop."""

    def __init__(self):
        self.started = False
        self.running = True
        self.paused = False
        self.immediate = False
        self.reconnect_requested = False
        self.stopped = False

    @property
    def phase(self) -> Phase:
        if self.stopped:
            return Phase.STOPPED
        if not self.running:
            return Phase.SHUTTING_DOWN
        if not self.started:
            return Phase.STARTING
        if self.paused:
            return Phase.PAUSED
        return Phase.RUNNING

    def start(self):
        self.started = True

    def request_shutdown(self, immediate: bool = False):
        """Stop at the next tick boundary. Immediate and graceful stop end the loop the same way."""
        if immediate:
            self.immediate = True
        self.running = False

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    def request_reconnect(self):
        self.reconnect_requested = True

    def consume_reconnect(self) -> bool:
        """Clear a pending reconnect request, returning whether one was pending."""
        if not self.reconnect_requested:
            return False
        self.reconnect_requested = False
        return True

    def mark_stopped(self):
        self.running = False
        self.stopped = True

    def __repr__(self):
        return f"LifecycleState(phase={self.phase.value}, paused={self.paused})"
