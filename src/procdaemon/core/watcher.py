"""Watcher daemon.

A watcher is a daemon whose jobs are other daemons. For every declared
daemon it checks the PID file and

- leaves a healthy, enabled daemon alone,
- stops a running daemon that is disabled (SIGTERM, or SIGKILL with hard_kill),
- launches an enabled daemon that is not running.
"""

from __future__ import annotations

import os
import signal
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from procdaemon.config import ConfigError, load_config, load_watch_list, settings_for
from procdaemon.core.daemon import Daemon
from procdaemon.core.jobs import JobListSource, JobProvider
from procdaemon.core.pidfile import PidFileManager
from procdaemon.models import DaemonSettings, ExitCode, Job

Launcher = Callable[[str], Any]


class WatcherJobSource(JobListSource):
    """Job list that paces itself: every call but the first sleeps first."""

    def __init__(self, provider: JobProvider, sleep: float = 5):
        super().__init__(provider)
        self.sleep = sleep
        self.first_iteration = True

    def next_jobs(self) -> list[Job]:
        if self.first_iteration:
            self.first_iteration = False
        else:
            time.sleep(self.sleep)
        return super().next_jobs()


class WatcherDaemon(Daemon, ABC):
    """Supervises a declared list of other daemons."""

    def __init__(
        self,
        name: str = "watcher",
        launcher: Launcher | None = None,
        settings: DaemonSettings | None = None,
        **kwargs: Any,
    ):
        settings = settings or DaemonSettings()
        if settings.multi_instance:
            # Checks fork on their own when they launch a target
            settings = settings.model_copy(update={"multi_instance": False})
        kwargs.setdefault("source", WatcherJobSource(self.get_daemons_list, settings.sleep))
        super().__init__(name, settings=settings, **kwargs)
        self._launcher = launcher

    @abstractmethod
    def get_daemons_list(self) -> Iterable[Job | dict[str, Any]]:
        """Daemons to check, e.g. ``[{"name": "reports.export", "enabled": True}]``."""
        pass

    def __call__(self, job: Job) -> bool:
        return self.check(job)

    def check(self, job: Job) -> bool:
        """Check one daemon and start or stop it as configured.

        A failure to launch one daemon never fails the iteration.
        """
        logger.debug(f"Check daemon {job.name}")

        pid = self.target_pid_files(job).owner_if_alive(job.name)
        if pid is not None:
            if job.enabled:
                logger.debug(f"Daemon {job.name} running and working fine")
            else:
                self.stop_target(job, pid)
        else:
            logger.warning(f"Daemon {job.name} pid not found.")
            if job.enabled:
                self.start_target(job)

        logger.debug(f"Daemon {job.name} is checked.")
        return True

    def target_pid_files(self, job: Job) -> PidFileManager:
        """PID files of the daemon behind ``job``; the watcher's own by default."""
        return self.pid_files

    def stop_target(self, job: Job, pid: int) -> bool:
        signum = signal.SIGKILL if job.hard_kill else signal.SIGTERM
        logger.warning(
            f"Daemon {job.name} running, but disabled in config. "
            f"Send {signal.Signals(signum).name} signal to pid {pid}."
        )
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            logger.debug(f"Daemon {job.name} pid {pid} exited before the signal")
            return False
        except PermissionError as e:
            logger.error(f"Can't signal daemon {job.name} pid {pid}: {e}")
            return False
        return True

    def start_target(self, job: Job) -> int | None:
        """Fork and run the target's background entry point in the child.

        Returns:
            Pid of the launching child, or None if fork failed
        """
        logger.debug(f"Try to run daemon {job.name}.")
        # Nothing buffered may be written twice across the fork
        self.log.flush()

        try:
            pid = os.fork()
        except OSError as e:
            logger.error(f"Can't fork to launch daemon {job.name}: {e}")
            return None

        if pid == 0:
            self.launch_in_child(job)

        self.log.configure()
        logger.debug(f"Daemon {job.name} is running with pid {pid}")
        return pid

    def launch_in_child(self, job: Job) -> None:
        """Body of the launching child. Never returns."""
        code = ExitCode.UNSPECIFIED_ERROR
        try:
            self.log.discard()
            self.relay.reset_after_fork()
            self.relay.uninstall()
            self.launch(job.name)
            code = ExitCode.OK
        except SystemExit as e:
            code = ExitCode.OK if not e.code else ExitCode.UNSPECIFIED_ERROR
        except Exception:
            logger.exception(f"Launching daemon {job.name} failed")
        finally:
            os._exit(int(code))

    def launch(self, name: str) -> None:
        """Run daemon ``name`` with background mode forced on."""
        if self._launcher is None:
            raise NotImplementedError(f"Watcher {self.name} has no launcher")
        self._launcher(name)


class CallableWatcherDaemon(WatcherDaemon):
    """Watcher whose daemon list comes from a provider callable."""

    def __init__(self, name: str = "watcher", provider: JobProvider | None = None, **kwargs: Any):
        self._provider = provider
        super().__init__(name, **kwargs)

    def get_daemons_list(self) -> Iterable[Job | dict[str, Any]]:
        if self._provider is None:
            return []
        return self._provider()


class ConfigWatcherDaemon(WatcherDaemon):
    """Watcher that re-reads the ``watch`` list of a YAML file every pass."""

    def __init__(self, name: str = "watcher", config_path: Path | None = None, **kwargs: Any):
        self.config_path = config_path
        super().__init__(name, **kwargs)

    def get_daemons_list(self) -> list[Job]:
        return load_watch_list(self.config_path)

    def target_pid_files(self, job: Job) -> PidFileManager:
        """Probe the target where it writes its PID file.

        A ``daemons.<name>.pid_dir`` override moves a target's PID file out
        of the watcher's own directory.
        """
        try:
            pid_dir = settings_for(load_config(self.config_path), job.name).pid_dir
        except ConfigError as e:
            logger.warning(f"Can't resolve settings of daemon {job.name}, using {self.pid_files.pid_dir}: {e}")
            return self.pid_files

        if pid_dir == self.pid_files.pid_dir:
            return self.pid_files
        return PidFileManager(pid_dir)
