"""Before/after hooks around iterations and jobs."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Callable

from procdaemon.models import DaemonEvent, Job

if TYPE_CHECKING:
    from procdaemon.core.daemon import Daemon

HookCallback = Callable[["Daemon", "Job | None"], None]


class EventHooks:
    """Ordered observer lists, one per DaemonEvent.

    Callbacks run synchronously in registration order and receive the daemon
    plus the current job (None for iteration events).
    """

    def __init__(self):
        self._callbacks: dict[DaemonEvent, list[HookCallback]] = defaultdict(list)

    def on(self, event: DaemonEvent, callback: HookCallback) -> HookCallback:
        self._callbacks[event].append(callback)
        return callback

    def off(self, event: DaemonEvent, callback: HookCallback) -> bool:
        try:
            self._callbacks[event].remove(callback)
        except ValueError:
            return False
        return True

    def trigger(self, event: DaemonEvent, daemon: "Daemon", job: Job | None = None) -> None:
        for callback in list(self._callbacks[event]):
            callback(daemon, job)

    def count(self, event: DaemonEvent) -> int:
        return len(self._callbacks[event])
