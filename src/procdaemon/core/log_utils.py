"""Logging setup for daemon processes."""

from __future__ import annotations

import re
import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {process} | {level: <8} | {name}:{function} - {message}"

SIZE_UNITS = {
    "B": 1,
    "K": 1024,
    "M": 1024 ** 2,
    "G": 1024 ** 3,
    "T": 1024 ** 4,
}

SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:([KMGT])B?|B)?$")


def parse_size(size_str: str) -> int:
    """Convert "10MB", "256M", "1.5KB" or "1024" to a number of bytes.

    Raises:
        ValueError: If the string is not a size
    """
    match = SIZE_PATTERN.match(size_str.strip().upper())
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    number, unit = match.groups()
    return int(float(number) * SIZE_UNITS[unit or "B"])


class DaemonLogging:
    """Owns the loguru sinks of one daemon process.

    Every daemon writes to ``<log_dir>/<name>.log``. The console sink is only
    installed while the process is attached to a terminal session, i.e. when
    it is not running in background mode.
    """

    def __init__(
        self,
        name: str,
        log_dir: Path,
        demonize: bool = False,
        verbose: bool = False,
        max_size: str = "10MB",
        rotate: int = 5,
    ):
        self.name = name
        self.log_dir = log_dir
        self.demonize = demonize
        self.verbose = verbose
        self.max_size = max_size
        self.rotate = rotate

    @property
    def log_file(self) -> Path:
        """Path of this daemon's log file."""
        return self.log_dir / f"{self.name}.log"

    def configure(self) -> None:
        """Drop inherited sinks and install this daemon's own."""
        logger.remove()

        if not self.demonize:
            logger.add(
                sys.stderr,
                format=CONSOLE_FORMAT,
                level="DEBUG" if self.verbose else "INFO",
                colorize=True,
            )

        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            self.log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            rotation=parse_size(self.max_size),
            retention=self.rotate,
        )

    def flush(self) -> None:
        """Wait until every pending message reached its sink."""
        logger.complete()

    def discard(self) -> None:
        """Remove all sinks without reinstalling them.

        Used right after a fork, before the child sets up logging for its own
        identity, so that nothing is written twice through inherited handles.
        """
        logger.remove()
