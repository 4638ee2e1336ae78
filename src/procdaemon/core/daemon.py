"""Supervisor loop for procdaemon.

A Daemon repeatedly asks its job source for work and runs every job either
inline or in a forked child. The lifecycle is

    STARTING -> (FORKING_TO_BACKGROUND) -> RUNNING -> STOPPING -> TERMINATED

Stopping is cooperative: SIGTERM/SIGINT only set a flag, which is checked
before each iteration and before each job. A job that already started always
runs to completion.
"""

from __future__ import annotations

import os
import sys
import time
from datetime import datetime
from typing import Callable

import setproctitle
from loguru import logger
from rich.console import Console
from rich.text import Text

from procdaemon.core.hooks import EventHooks
from procdaemon.core.jobs import JobSource, SingleJobSource
from procdaemon.core.log_utils import DaemonLogging
from procdaemon.core.pidfile import PidFileManager, process_name
from procdaemon.core.pool import ChildProcessPool, log_capacity_wait
from procdaemon.core.resources import format_bytes, resident_memory
from procdaemon.core.signals import SignalRelay
from procdaemon.models import (
    DaemonEvent,
    DaemonPhase,
    DaemonSettings,
    ExitCode,
    Job,
)

WorkCallable = Callable[[Job], bool]


class Daemon:
    """A long-running worker process."""

    #: Seconds between capacity checks while all child slots are busy.
    capacity_poll_interval: float = 1.0

    def __init__(
        self,
        name: str,
        work: WorkCallable | None = None,
        source: JobSource | None = None,
        settings: DaemonSettings | None = None,
        renew_connections: Callable[[], None] | None = None,
        hooks: EventHooks | None = None,
        relay: SignalRelay | None = None,
        pid_files: PidFileManager | None = None,
        log: DaemonLogging | None = None,
        console: Console | None = None,
    ):
        """Initialize the daemon.

        Args:
            name: Route or dotted identity, e.g. "reports/export/index"
            work: Work callable; subclasses may override ``__call__`` instead
            source: Job source, defaults to a single-job source
            settings: Resolved runtime settings
            renew_connections: Called before every iteration and in every
                forked child before it runs its job
            hooks: Before/after iteration and job observers
        """
        self.route = name
        self.name = process_name(name)
        self.settings = settings or DaemonSettings()

        self._work = work
        self._renew_connections = renew_connections

        self.source = source or SingleJobSource(self.name, self.settings.sleep)
        self.hooks = hooks or EventHooks()
        self.relay = relay or SignalRelay()
        self.pool = ChildProcessPool(self.relay)
        self.pid_files = pid_files or PidFileManager(self.settings.pid_dir)
        self.log = log or DaemonLogging(
            self.name,
            self.settings.log_dir,
            demonize=self.settings.demonize,
            verbose=self.settings.verbose,
            max_size=self.settings.log_max_size,
            rotate=self.settings.log_rotate,
        )
        self.console = console or Console()

        self.phase = DaemonPhase.STARTING
        self.parent_pid: int | None = None
        self._owns_pid_file = False

    def __call__(self, job: Job) -> bool:
        """Daemon worker body."""
        if self._work is None:
            raise NotImplementedError(f"Daemon {self.name} has no work callable")
        return bool(self._work(job))

    # Lifecycle

    def run(self) -> int:
        """Start the daemon and run until stopped.

        Returns:
            ExitCode.OK after a regular stop
        """
        self.phase = DaemonPhase.STARTING
        self.log.configure()
        self.ensure_single_instance()

        if self.settings.demonize:
            self.fork_to_background()

        self.change_process_name()
        self.relay.install()

        try:
            return self.loop()
        except Exception as e:
            logger.error(f"Daemon {self.name} error: {e}")
            raise
        finally:
            self.relay.uninstall()
            if self._owns_pid_file:
                self.pid_files.remove(self.name)
                self._owns_pid_file = False
            self.log.flush()

    def ensure_single_instance(self) -> None:
        """Refuse to start while another live process owns our PID file."""
        owner = self.pid_files.owner_if_alive(self.name)
        if owner is not None and owner != os.getpid():
            self.halt(
                ExitCode.UNSPECIFIED_ERROR,
                f"Another instance of daemon {self.name} is already running (PID {owner}).",
            )

    def fork_to_background(self) -> None:
        """Detach from the controlling terminal.

        The parent exits right away; the child becomes a session leader with
        its standard streams pointed at /dev/null.
        """
        self.phase = DaemonPhase.FORKING_TO_BACKGROUND
        try:
            pid = os.fork()
        except OSError as e:
            self.halt(ExitCode.UNSPECIFIED_ERROR, f"fork() rise error: {e}")

        if pid > 0:
            self.log.flush()
            os._exit(ExitCode.OK)

        os.setsid()
        self.close_std_streams()
        self.phase = DaemonPhase.STARTING

    def close_std_streams(self) -> None:
        """Point stdin, stdout and stderr at /dev/null."""
        sys.stdout.flush()
        sys.stderr.flush()

        with open(os.devnull, "r") as f:
            os.dup2(f.fileno(), sys.stdin.fileno())

        with open(os.devnull, "a") as f:
            os.dup2(f.fileno(), sys.stdout.fileno())
            os.dup2(f.fileno(), sys.stderr.fileno())

    def change_process_name(self) -> None:
        setproctitle.setproctitle(self.name)

    def loop(self) -> int:
        """Main loop."""
        pid = os.getpid()
        if not self.pid_files.write(self.name, pid):
            self.halt(
                ExitCode.UNSPECIFIED_ERROR,
                f"Can't create pid file {self.pid_files.path(self.name)}.",
            )
        self._owns_pid_file = True
        self.parent_pid = pid
        self.phase = DaemonPhase.RUNNING
        logger.debug(f"Daemon {self.name} pid {pid} started.")

        while True:
            self.relay.dispatch()
            if self.relay.is_stop_requested():
                break
            if self.memory_exceeded():
                break
            if not self.iterate():
                break

        self.phase = DaemonPhase.STOPPING
        logger.info(f"Daemon {self.name} pid {pid} is stopped.")
        self.phase = DaemonPhase.TERMINATED
        return ExitCode.OK

    def iterate(self) -> bool:
        """Run one pass over the job source.

        Returns:
            False if the loop has to end before the iteration finished
        """
        self.hooks.trigger(DaemonEvent.BEFORE_ITERATION, self)
        self.renew_connections()

        jobs = self.source.next_jobs()
        if jobs:
            while True:
                job = self.source.extract(jobs)
                if job is None:
                    break

                if self.settings.multi_instance and self.pool.capacity_reached(
                    self.settings.max_child_processes
                ):
                    log_capacity_wait(
                        self.pool,
                        self.settings.max_child_processes,
                        self.capacity_poll_interval,
                    )

                self.relay.dispatch()
                if self.relay.is_stop_requested():
                    logger.debug(f"Stop requested, {len(jobs) + 1} job(s) left undispatched")
                    break
                if self.memory_exceeded():
                    return False

                if not self.run_job(job) and not self.settings.multi_instance:
                    logger.warning(f"Job {job.name} returned error.")
        else:
            time.sleep(self.settings.sleep)

        self.relay.dispatch()
        self.hooks.trigger(DaemonEvent.AFTER_ITERATION, self)

        if self.source.paced and not self.relay.is_stop_requested():
            time.sleep(self.source.sleep_interval())
            self.relay.dispatch()

        return True

    def memory_exceeded(self) -> bool:
        used = resident_memory()
        if used > self.settings.memory_limit:
            logger.warning(
                f"Daemon {self.name} pid {os.getpid()} used {format_bytes(used)} "
                f"on {format_bytes(self.settings.memory_limit)} allowed by memory limit."
            )
            return True
        return False

    # Job execution

    def run_job(self, job: Job) -> bool:
        """Run one job inline or hand it to a forked child.

        In multi-instance mode the return value only says whether the job
        was dispatched; the child reports the job's own result through its
        exit code.
        """
        if not self.settings.multi_instance:
            return self.execute(job)

        self.log.flush()
        result = self.pool.spawn()

        if result.failed:
            logger.error(f"Can't fork child process for job {job.name}: {result.error}")
            return False

        if result.is_parent:
            logger.debug(f"Job {job.name} delegated to child process {result.pid}")
            return True

        self.run_in_child(job)

    def execute(self, job: Job) -> bool:
        self.hooks.trigger(DaemonEvent.BEFORE_JOB, self, job)
        status = self(job)
        self.hooks.trigger(DaemonEvent.AFTER_JOB, self, job)
        return bool(status)

    def run_in_child(self, job: Job) -> None:
        """Job body of a forked child. Never returns."""
        pid = os.getpid()
        code = ExitCode.UNSPECIFIED_ERROR
        message = None
        try:
            self.renew_connections()
            if self.execute(job):
                code = ExitCode.OK
            else:
                message = f"Child process #{pid} return error."
        except Exception as e:
            logger.exception(f"Child process #{pid} failed on job {job.name}")
            message = f"Child process #{pid} failed: {e}"
        finally:
            self.terminate_child(code, message)

    def terminate_child(self, code: ExitCode, message: str | None = None) -> None:
        self.report(code, message)
        self.log.flush()
        os._exit(int(code))

    # Collaborators

    def renew_connections(self) -> None:
        """Reopen external connections. Failures propagate."""
        if self._renew_connections is not None:
            self._renew_connections()

    # Output

    def halt(self, code: ExitCode, message: str | None = None) -> None:
        """Stop the process and show or write message."""
        self.report(code, message)
        raise SystemExit(int(code))

    def report(self, code: ExitCode, message: str | None) -> None:
        if message is None:
            return
        if code == ExitCode.UNSPECIFIED_ERROR:
            logger.error(message)
        else:
            logger.debug(message)
        self.echo(message, error=code == ExitCode.UNSPECIFIED_ERROR)

    def echo(self, message: str, error: bool = False) -> None:
        """Show message in console. Silent in background mode."""
        if self.settings.demonize:
            return
        stamp = datetime.now().strftime("%d.%m.%Y %H:%M:%S")
        line = Text(f"[{stamp}] ", style="bold")
        line.append(message, style="red" if error else None)
        self.console.print(line)
