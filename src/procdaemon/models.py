"""Pydantic models for procdaemon configuration and state."""

from __future__ import annotations

from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from procdaemon.core.log_utils import parse_size
from procdaemon.core.pidfile import process_name

DEFAULT_BASE_DIR = Path.home() / ".procdaemon"
DEFAULT_PID_DIR = DEFAULT_BASE_DIR / "pids"
DEFAULT_LOG_DIR = DEFAULT_BASE_DIR / "logs"

# 256MB
DEFAULT_MEMORY_LIMIT = 268435456


class ExitCode(IntEnum):
    """Process exit codes."""

    OK = 0
    UNSPECIFIED_ERROR = 1


class DaemonPhase(str, Enum):
    """Lifecycle phase of a daemon process."""

    STARTING = "starting"
    FORKING_TO_BACKGROUND = "forking_to_background"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class DaemonEvent(str, Enum):
    """Hook points emitted by the supervisor loop."""

    BEFORE_ITERATION = "before_iteration"
    AFTER_ITERATION = "after_iteration"
    BEFORE_JOB = "before_job"
    AFTER_JOB = "after_job"


class Job(BaseModel):
    """One unit of work handed to a daemon's work callable.

    Watch lists written for older setups use ``daemon`` instead of ``name``
    and ``hardKill`` instead of ``hard_kill``; both spellings are accepted.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(validation_alias=AliasChoices("name", "daemon"))
    enabled: bool = True
    hard_kill: bool = Field(
        default=False, validation_alias=AliasChoices("hard_kill", "hardKill")
    )
    priority: int = 0


def parse_watch_list(entries: Any, source: str = "config") -> list[Job]:
    """Normalise a raw ``watch`` section into Jobs.

    A plain string is shorthand for ``{"name": ...}``. Entries that fail
    validation are skipped so that one typo does not stop the watcher from
    supervising everything else. Names are collapsed with ``process_name``.
    """
    if entries is None:
        return []
    if not isinstance(entries, list):
        logger.warning(f"Invalid watch list in {source}: expected list, got {type(entries).__name__}")
        return []

    jobs: list[Job] = []
    for entry in entries:
        if isinstance(entry, str):
            entry = {"name": entry}
        try:
            job = entry if isinstance(entry, Job) else Job.model_validate(entry)
        except ValidationError as e:
            logger.error(f"Skipping invalid watch entry {entry!r}: {e}")
            continue
        job.name = process_name(job.name)
        jobs.append(job)

    return jobs


class DaemonSettings(BaseModel):
    """Resolved runtime settings for a single daemon."""

    demonize: bool = False
    multi_instance: bool = False
    max_child_processes: int = Field(default=10, ge=1)
    memory_limit: int = DEFAULT_MEMORY_LIMIT  # bytes
    sleep: float = Field(default=5, ge=0)  # seconds between job list checks
    pid_dir: Path = DEFAULT_PID_DIR
    log_dir: Path = DEFAULT_LOG_DIR
    log_max_size: str = "10MB"
    log_rotate: int = 5
    verbose: bool = False

    @field_validator("memory_limit", mode="before")
    @classmethod
    def parse_memory_limit(cls, v: int | str) -> int:
        """Allow human-readable sizes like "256MB"."""
        if isinstance(v, str):
            return parse_size(v)
        return v

    @field_validator("pid_dir", "log_dir", mode="before")
    @classmethod
    def expand_dir(cls, v: str | Path) -> Path:
        return Path(v).expanduser()


class ProcDaemonConfig(BaseModel):
    """Contents of the procdaemon YAML configuration file."""

    defaults: dict = Field(default_factory=dict)
    daemons: dict[str, dict] = Field(default_factory=dict)
    watch: list[Job] = Field(default_factory=list)

    @field_validator("watch", mode="before")
    @classmethod
    def normalise_watch(cls, v: Any) -> list[Job]:
        return parse_watch_list(v)
