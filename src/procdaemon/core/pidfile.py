"""PID file handling.

One file per logical daemon identity. The file holds the owner's pid and is
used both to refuse a second instance and to probe whether a daemon is alive.
"""

from __future__ import annotations

import os
from pathlib import Path

import psutil
from loguru import logger

PID_DIR_MODE = 0o744


def process_name(route: str) -> str:
    """Collapse a hierarchical route into a dotted daemon identity.

    Examples:
        "foo/bar/index" -> "foo.bar"
        "reports/export" -> "reports.export"
        "watcher" -> "watcher"
    """
    parts = [part for part in route.strip("/").split("/") if part]
    if len(parts) > 1:
        parts = [part for part in parts if part != "index"]
    return ".".join(parts)


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running.

    Zombies count as gone: they have exited and only wait to be reaped.
    """
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, but belongs to someone else
        return True


class PidFileManager:
    """Creates, reads and removes PID files under one directory."""

    def __init__(self, pid_dir: Path):
        self.pid_dir = Path(pid_dir)

    def path(self, identity: str) -> Path:
        """Deterministic PID file path for a daemon identity.

        Creates the PID directory if it does not exist yet.
        """
        if not self.pid_dir.exists():
            self.pid_dir.mkdir(mode=PID_DIR_MODE, parents=True, exist_ok=True)
        return self.pid_dir / process_name(identity)

    def write(self, identity: str, pid: int) -> bool:
        """Write ``pid`` as the file contents.

        Returns:
            False if the file could not be written
        """
        try:
            self.path(identity).write_text(str(pid))
        except OSError as e:
            logger.error(f"Can't write pid file for {identity}: {e}")
            return False
        return True

    def read(self, identity: str) -> int | None:
        """Return the stored pid, or None if there is no usable file."""
        path = self.path(identity)
        try:
            content = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Can't read pid file {path}: {e}")
            return None

        try:
            return int(content)
        except ValueError:
            logger.warning(f"Pid file {path} holds no pid: {content!r}")
            return None

    def remove(self, identity: str) -> bool:
        """Delete the PID file if it belongs to the calling process.

        A file owned by another pid (a newer instance) is left untouched.

        Returns:
            True if the file was deleted
        """
        path = self.path(identity)
        if not path.exists():
            logger.error(f"Can't unlink pid file {path}")
            return False

        if self.read(identity) != os.getpid():
            return False

        try:
            path.unlink()
        except FileNotFoundError:
            logger.error(f"Can't unlink pid file {path}")
            return False
        return True

    def is_alive(self, pid: int) -> bool:
        """Liveness probe for a pid read from a PID file."""
        return is_process_running(pid)

    def owner_if_alive(self, identity: str) -> int | None:
        """The pid recorded for ``identity`` when that process is running."""
        pid = self.read(identity)
        if pid is not None and self.is_alive(pid):
            return pid
        return None
