"""Child process pool.

Forks worker children and bounds how many of them run at once. The table of
active children itself lives in the SignalRelay: the pool inserts on spawn,
the relay removes on reap.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from procdaemon.core.signals import SignalRelay


class ProcessRole(str, Enum):
    """Which side of a fork the caller is on."""

    PARENT = "parent"
    CHILD = "child"
    FAILED = "failed"


@dataclass
class SpawnResult:
    """Outcome of ``ChildProcessPool.spawn()``."""

    role: ProcessRole
    pid: int | None = None
    error: OSError | None = None

    @property
    def is_child(self) -> bool:
        return self.role == ProcessRole.CHILD

    @property
    def is_parent(self) -> bool:
        return self.role == ProcessRole.PARENT

    @property
    def failed(self) -> bool:
        return self.role == ProcessRole.FAILED


class ChildProcessPool:
    """Tracks forked children and enforces a concurrency bound."""

    def __init__(self, relay: SignalRelay):
        self._relay = relay

    def spawn(self) -> SpawnResult:
        """Fork a child process.

        The pool never runs the job itself. On the CHILD side the caller runs
        the job and terminates the process afterwards.
        """
        try:
            pid = os.fork()
        except OSError as e:
            return SpawnResult(role=ProcessRole.FAILED, error=e)

        if pid == 0:
            self._relay.reset_after_fork()
            return SpawnResult(role=ProcessRole.CHILD, pid=os.getpid())

        self._relay.track(pid)
        return SpawnResult(role=ProcessRole.PARENT, pid=pid)

    def count(self) -> int:
        """Number of children not reaped yet."""
        return self._relay.count()

    def capacity_reached(self, max_children: int) -> bool:
        return self.count() >= max_children

    def wait_for_capacity(self, max_children: int, poll_interval: float = 1.0) -> None:
        """Block until fewer than ``max_children`` children are active.

        Signals are dispatched on every poll so SIGCHLD reaping keeps running
        while we wait. A stop request ends the wait early; the caller checks
        the stop flag before dispatching anything.
        """
        while self.capacity_reached(max_children):
            time.sleep(poll_interval)
            self._relay.dispatch()
            if self._relay.is_stop_requested():
                return

    def free_slots(self, max_children: int) -> int:
        return max(0, max_children - self.count())


def log_capacity_wait(pool: ChildProcessPool, max_children: int, poll_interval: float = 1.0) -> None:
    """``wait_for_capacity`` with one log line on entry and one on exit."""
    logger.debug("Reached maximum number of child processes. Waiting...")
    pool.wait_for_capacity(max_children, poll_interval)
    if pool.capacity_reached(max_children):
        return
    logger.debug(
        f"Free workers found: {pool.free_slots(max_children)} worker(s). Delegate tasks."
    )
