"""Tests for job sources and hooks."""

from __future__ import annotations

from unittest.mock import MagicMock

from procdaemon.core.hooks import EventHooks
from procdaemon.core.jobs import (
    JobListSource,
    PriorityJobListSource,
    SingleJobSource,
    coerce_jobs,
)
from procdaemon.models import DaemonEvent, Job


class TestSingleJobSource:
    """Tests for the single-job source."""

    def test_yields_one_job(self):
        source = SingleJobSource("reports.export", interval=30)

        jobs = source.next_jobs()

        assert [job.name for job in jobs] == ["reports.export"]
        assert jobs[0].enabled is True
        assert source.extract(jobs).name == "reports.export"
        assert source.extract(jobs) is None

    def test_paced_with_own_interval(self):
        source = SingleJobSource("reports.export", interval=30)
        assert source.paced is True
        assert source.sleep_interval() == 30


class TestJobListSource:
    """Tests for the job-list source."""

    def test_fifo_extraction(self):
        source = JobListSource(lambda: [{"name": "a"}, {"name": "b"}, {"name": "c"}])
        jobs = source.next_jobs()

        order = []
        while True:
            job = source.extract(jobs)
            if job is None:
                break
            order.append(job.name)

        assert order == ["a", "b", "c"]
        assert jobs == []

    def test_empty_provider(self):
        assert JobListSource(lambda: []).next_jobs() == []
        assert JobListSource(lambda: None).next_jobs() == []

    def test_not_paced(self):
        assert JobListSource(lambda: []).paced is False

    def test_provider_called_every_iteration(self):
        provider = MagicMock(return_value=[{"name": "a"}])
        source = JobListSource(provider)
        source.next_jobs()
        source.next_jobs()
        assert provider.call_count == 2

    def test_priority_extraction(self):
        source = PriorityJobListSource(
            lambda: [
                {"name": "low", "priority": 0},
                {"name": "high", "priority": 5},
                {"name": "mid", "priority": 2},
                {"name": "high-later", "priority": 5},
            ]
        )
        jobs = source.next_jobs()
        order = [source.extract(jobs).name for _ in range(4)]

        assert order == ["high", "high-later", "mid", "low"]
        assert source.extract(jobs) is None


class TestJobModel:
    """Tests for Job parsing."""

    def test_legacy_keys(self):
        job = Job.model_validate({"daemon": "mailer", "enabled": False, "hardKill": True})
        assert job.name == "mailer"
        assert job.enabled is False
        assert job.hard_kill is True

    def test_defaults(self):
        job = Job(name="mailer")
        assert job.enabled is True
        assert job.hard_kill is False

    def test_coerce_keeps_models(self):
        job = Job(name="a")
        assert coerce_jobs([job, {"name": "b"}])[0] is job


class TestEventHooks:
    """Tests for EventHooks."""

    def test_callbacks_run_in_order(self):
        hooks = EventHooks()
        calls = []
        hooks.on(DaemonEvent.BEFORE_JOB, lambda d, j: calls.append(("first", j.name)))
        hooks.on(DaemonEvent.BEFORE_JOB, lambda d, j: calls.append(("second", j.name)))

        hooks.trigger(DaemonEvent.BEFORE_JOB, MagicMock(), Job(name="a"))

        assert calls == [("first", "a"), ("second", "a")]

    def test_off(self):
        hooks = EventHooks()
        callback = hooks.on(DaemonEvent.AFTER_ITERATION, MagicMock())

        assert hooks.off(DaemonEvent.AFTER_ITERATION, callback) is True
        assert hooks.off(DaemonEvent.AFTER_ITERATION, callback) is False
        assert hooks.count(DaemonEvent.AFTER_ITERATION) == 0

    def test_trigger_without_callbacks(self):
        EventHooks().trigger(DaemonEvent.AFTER_JOB, MagicMock())
