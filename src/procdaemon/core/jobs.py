"""Job sources.

A job source tells the supervisor loop what to do in one iteration. The loop
only ever calls ``next_jobs()`` once per iteration and then ``extract()``
until it returns None.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable

from procdaemon.models import Job

JobProvider = Callable[[], Iterable["Job | dict[str, Any]"]]


def coerce_jobs(items: Iterable[Job | dict[str, Any]]) -> list[Job]:
    """Turn provider output into Job models."""
    return [item if isinstance(item, Job) else Job.model_validate(item) for item in items]


class JobSource(ABC):
    """Abstract base class for job sources."""

    #: Whether the loop sleeps ``sleep_interval()`` after every iteration.
    paced: bool = False

    @abstractmethod
    def next_jobs(self) -> list[Job]:
        """Jobs for the current iteration. Empty means sleep and retry."""
        pass

    def extract(self, jobs: list[Job]) -> Job | None:
        """Remove and return the next job to run (FIFO)."""
        if not jobs:
            return None
        return jobs.pop(0)

    def sleep_interval(self) -> float:
        """Seconds to sleep after an iteration of a paced source."""
        return 0


class SingleJobSource(JobSource):
    """Yields one job per iteration: "run this daemon's own work"."""

    paced = True

    def __init__(self, name: str, interval: float = 5):
        self.name = name
        self.interval = interval

    def next_jobs(self) -> list[Job]:
        return [Job(name=self.name, enabled=True)]

    def sleep_interval(self) -> float:
        return self.interval


class JobListSource(JobSource):
    """Jobs come from an external provider (config file, database, ...)."""

    def __init__(self, provider: JobProvider):
        self._provider = provider

    def next_jobs(self) -> list[Job]:
        return coerce_jobs(self._provider() or [])


class PriorityJobListSource(JobListSource):
    """Hands out the highest ``priority`` first; FIFO among equals."""

    def extract(self, jobs: list[Job]) -> Job | None:
        if not jobs:
            return None
        best = max(range(len(jobs)), key=lambda i: (jobs[i].priority, -i))
        return jobs.pop(best)
