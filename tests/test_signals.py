"""Tests for the signal relay and the child process pool."""

from __future__ import annotations

import os
import signal
import time
from unittest.mock import MagicMock, patch

import pytest

from procdaemon.core.pool import ChildProcessPool, ProcessRole
from procdaemon.core.signals import SignalRelay


@pytest.fixture
def relay():
    return SignalRelay()


class TestStopFlag:
    """Tests for SIGTERM/SIGINT handling."""

    def test_sigterm_sets_stop_on_dispatch(self, relay):
        relay.deliver(signal.SIGTERM)

        # Nothing changes until the loop dispatches
        assert relay.is_stop_requested() is False

        relay.dispatch()
        assert relay.is_stop_requested() is True

    def test_sigint_sets_stop(self, relay):
        relay.deliver(signal.SIGINT)
        relay.dispatch()
        assert relay.is_stop_requested() is True

    def test_repeated_sigterm_is_idempotent(self, relay):
        for _ in range(5):
            relay.deliver(signal.SIGTERM)
        relay.dispatch()
        relay.deliver(signal.SIGTERM)
        relay.dispatch()

        assert relay.is_stop_requested() is True

    def test_request_stop(self, relay):
        relay.request_stop()
        assert relay.is_stop_requested() is True


class TestReservedSignals:
    """SIGHUP and SIGUSR1 are no-ops unless a callback is given."""

    def test_no_callbacks(self, relay):
        relay.deliver(signal.SIGHUP)
        relay.deliver(signal.SIGUSR1)
        relay.dispatch()
        assert relay.is_stop_requested() is False

    def test_callbacks(self):
        on_hangup = MagicMock()
        on_user = MagicMock()
        relay = SignalRelay(on_hangup=on_hangup, on_user_signal=on_user)

        relay.deliver(signal.SIGHUP)
        relay.deliver(signal.SIGUSR1)
        relay.dispatch()

        on_hangup.assert_called_once_with()
        on_user.assert_called_once_with()


class TestInstall:
    """Tests for handler registration."""

    def test_install_and_uninstall(self, relay):
        before = signal.getsignal(signal.SIGTERM)

        relay.install()
        try:
            assert signal.getsignal(signal.SIGTERM) == relay._handle
            assert signal.getsignal(signal.SIGCHLD) == relay._handle
            assert relay.installed
        finally:
            relay.uninstall()

        assert signal.getsignal(signal.SIGTERM) == before
        assert not relay.installed

    def test_real_signal_is_queued(self, relay):
        relay.install()
        try:
            os.kill(os.getpid(), signal.SIGUSR1)
            # Let the interpreter run the Python-level handler
            time.sleep(0.05)
            assert signal.SIGUSR1 in relay._pending
        finally:
            relay.uninstall()


class TestReaping:
    """Tests for SIGCHLD reaping."""

    def test_reaps_coalesced_children(self, relay):
        """One SIGCHLD may stand for several exited children."""
        for pid in (101, 102, 103):
            relay.track(pid)

        with patch("os.waitpid", side_effect=[(101, 0), (102, 256), (0, 0)]) as waitpid:
            relay.deliver(signal.SIGCHLD)
            reaped = relay.dispatch()

        assert [child.pid for child in reaped] == [101, 102]
        assert reaped[1].exit_code == 1
        assert relay.active_children() == [103]
        waitpid.assert_called_with(-1, os.WNOHANG)

    def test_no_children_left(self, relay):
        relay.track(101)
        with patch("os.waitpid", side_effect=ChildProcessError()):
            assert relay.reap_exited() == []
        assert relay.count() == 1

    def test_untracked_child_is_reaped(self, relay):
        relay.track(101)
        with patch("os.waitpid", side_effect=[(555, 0), (0, 0)]):
            reaped = relay.reap_exited()

        assert reaped[0].tracked is False
        assert relay.active_children() == [101]

    def test_reset_after_fork(self, relay):
        relay.track(101)
        relay.request_stop()
        relay.deliver(signal.SIGCHLD)

        relay.reset_after_fork()

        assert relay.count() == 0
        assert relay.is_stop_requested() is False
        assert relay.dispatch() == []

    def test_reap_completeness_with_real_children(self, relay):
        """All forked children disappear from the table once reaped."""
        pool = ChildProcessPool(relay)
        pids = []
        for _ in range(3):
            result = pool.spawn()
            if result.is_child:
                os._exit(0)
            pids.append(result.pid)

        assert sorted(relay.active_children()) == sorted(pids)

        deadline = time.time() + 10
        while relay.count() and time.time() < deadline:
            relay.reap_exited()
            time.sleep(0.05)

        assert relay.count() == 0


class TestChildProcessPool:
    """Tests for ChildProcessPool."""

    def test_spawn_parent(self, relay):
        pool = ChildProcessPool(relay)
        with patch("os.fork", return_value=4242):
            result = pool.spawn()

        assert result.role == ProcessRole.PARENT
        assert result.pid == 4242
        assert pool.count() == 1

    def test_spawn_child(self, relay):
        relay.track(99)
        pool = ChildProcessPool(relay)
        with patch("os.fork", return_value=0):
            result = pool.spawn()

        assert result.is_child
        assert result.pid == os.getpid()
        # The child does not inherit the parent's bookkeeping
        assert pool.count() == 0

    def test_spawn_failure(self, relay):
        pool = ChildProcessPool(relay)
        with patch("os.fork", side_effect=OSError("Resource temporarily unavailable")):
            result = pool.spawn()

        assert result.failed
        assert isinstance(result.error, OSError)
        assert pool.count() == 0

    def test_capacity_reached(self, relay):
        pool = ChildProcessPool(relay)
        assert not pool.capacity_reached(2)
        relay.track(1)
        relay.track(2)
        assert pool.capacity_reached(2)
        assert pool.free_slots(3) == 1

    def test_wait_for_capacity_dispatches_signals(self, relay):
        pool = ChildProcessPool(relay)
        relay.track(201)
        relay.track(202)

        def fake_sleep(seconds):
            relay.deliver(signal.SIGCHLD)

        with patch("time.sleep", side_effect=fake_sleep) as sleep, patch(
            "os.waitpid", side_effect=[(0, 0), (201, 0), (0, 0)]
        ):
            pool.wait_for_capacity(2, poll_interval=0.5)

        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)
        assert relay.active_children() == [202]

    def test_wait_for_capacity_ends_on_stop(self, relay):
        pool = ChildProcessPool(relay)
        relay.track(301)

        def fake_sleep(seconds):
            relay.deliver(signal.SIGTERM)

        with patch("time.sleep", side_effect=fake_sleep) as sleep:
            pool.wait_for_capacity(1)

        sleep.assert_called_once_with(1.0)
        assert relay.is_stop_requested()
        assert relay.active_children() == [301]

    def test_wait_for_capacity_returns_immediately(self, relay):
        pool = ChildProcessPool(relay)
        with patch("time.sleep") as sleep:
            pool.wait_for_capacity(1)
        sleep.assert_not_called()
