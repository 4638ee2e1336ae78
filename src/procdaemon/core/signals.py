"""Signal relay for the supervisor process.

The OS-level handler does nothing but remember which signals arrived. The
supervisor applies them at explicit poll points by calling ``dispatch()``,
so the stop flag and the table of active children never change in the
middle of an arbitrary statement of the main loop.
"""

from __future__ import annotations

import os
import signal
from collections import deque
from dataclasses import dataclass
from typing import Callable

from loguru import logger

HANDLED_SIGNALS = (
    signal.SIGTERM,
    signal.SIGINT,
    signal.SIGHUP,
    signal.SIGUSR1,
    signal.SIGCHLD,
)


@dataclass
class ReapedChild:
    """A child collected by ``waitpid``."""

    pid: int
    status: int
    tracked: bool

    @property
    def exit_code(self) -> int | None:
        """Exit code if the child exited normally."""
        if os.WIFEXITED(self.status):
            return os.WEXITSTATUS(self.status)
        return None

    @property
    def signal(self) -> int | None:
        """Terminating signal if the child was killed."""
        if os.WIFSIGNALED(self.status):
            return os.WTERMSIG(self.status)
        return None


class SignalRelay:
    """Process-wide stop flag and active-children table."""

    def __init__(
        self,
        on_hangup: Callable[[], None] | None = None,
        on_user_signal: Callable[[], None] | None = None,
    ):
        self._on_hangup = on_hangup
        self._on_user_signal = on_user_signal

        self._stop_requested = False
        self._children: dict[int, bool] = {}
        self._pending: deque[int] = deque()
        self._previous: dict[int, object] = {}
        self._installed = False

    # Installation

    def install(self) -> None:
        """Register the handler for every supervised signal."""
        for signum in HANDLED_SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)
        self._installed = True

    def uninstall(self) -> None:
        """Restore the handlers that were active before ``install()``."""
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def _handle(self, signum: int, frame: object) -> None:
        # deque.append is atomic; no I/O here
        self._pending.append(signum)

    # Dispatch

    def dispatch(self) -> list[ReapedChild]:
        """Apply all signals received since the previous call.

        Returns:
            Children reaped while handling SIGCHLD
        """
        reaped: list[ReapedChild] = []

        while self._pending:
            signum = self._pending.popleft()

            if signum in (signal.SIGTERM, signal.SIGINT):
                if not self._stop_requested:
                    logger.info(f"Received {signal.Signals(signum).name}, stopping after current job")
                self.request_stop()
            elif signum == signal.SIGHUP:
                if self._on_hangup:
                    self._on_hangup()
            elif signum == signal.SIGUSR1:
                if self._on_user_signal:
                    self._on_user_signal()
            elif signum == signal.SIGCHLD:
                reaped.extend(self.reap_exited())

        for child in reaped:
            if child.tracked:
                logger.debug(
                    f"Child process {child.pid} finished "
                    f"(exit code: {child.exit_code}, signal: {child.signal})"
                )

        return reaped

    def deliver(self, signum: int) -> None:
        """Queue a signal as if the OS had delivered it."""
        self._handle(signum, None)

    # Stop flag

    def request_stop(self) -> None:
        self._stop_requested = True

    def is_stop_requested(self) -> bool:
        return self._stop_requested

    # Children

    def track(self, pid: int) -> None:
        """Mark a freshly forked child as active."""
        self._children[pid] = True

    def active_children(self) -> list[int]:
        return list(self._children)

    def count(self) -> int:
        return len(self._children)

    def reap_exited(self) -> list[ReapedChild]:
        """Collect every child that has exited so far without blocking.

        Several SIGCHLD deliveries may be coalesced into one, so keep waiting
        until the kernel reports no more exited children.
        """
        reaped: list[ReapedChild] = []

        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid <= 0:
                break

            tracked = self._children.pop(pid, None) is not None
            reaped.append(ReapedChild(pid=pid, status=status, tracked=tracked))

        return reaped

    def reset_after_fork(self) -> None:
        """Forget the parent's bookkeeping inside a freshly forked child."""
        self._children.clear()
        self._pending.clear()
        self._stop_requested = False
