"""Tests for the signal-driven lifecycle controller."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from provisioner.lifecycle import LifecycleController
from provisioner.registry import ShutdownState
from provisioner.signals import SignalKind, SignalQueue


@pytest.fixture
def heartbeat():
    return MagicMock()


@pytest.fixture
def controller(registry, heartbeat) -> LifecycleController:
    return LifecycleController(registry, heartbeat, SignalQueue())


def _run_in_thread(controller) -> threading.Thread:
    t = threading.Thread(target=controller.run, daemon=True)
    t.start()
    return t


class TestSignalQueue:

    def test_fifo(self):
        q = SignalQueue()
        q.put(SignalKind.CHILD_EXITED)
        q.put(SignalKind.TERMINATE)
        assert len(q) == 2
        assert q.pop() is SignalKind.CHILD_EXITED
        assert q.pop() is SignalKind.TERMINATE
        assert q.pop() is None


class TestChildExited:

    def test_child_exit_reaps_deleted_tenant(self, controller, registry, fake_manager):
        m = fake_manager("t1", workers=3)
        registry.add_or_update_tenant(m)
        registry.delete_tenant("t1")
        assert registry.terminating() == {"t1"}

        m.workers = 0
        controller.handle(SignalKind.CHILD_EXITED)

        assert "t1" not in registry
        assert "verify_workers" in m.calls
        assert registry.state is ShutdownState.RUNNING


class TestShutdown:

    def test_terminate_runs_full_sequence(self, controller, registry, heartbeat, fake_manager):
        a = fake_manager("a", workers=2)
        b = fake_manager("b", workers=0)
        registry.add_or_update_tenant(a)
        registry.add_or_update_tenant(b)

        # Workers wind down once they have been told to stop
        def drain():
            a.calls.append("verify_workers")
            if "delete" in a.calls:
                a.workers = 0
        a.verify_workers = drain
        heartbeat.unregister.side_effect = lambda: seen.append(registry.total_workers())
        seen = []

        controller.handle(SignalKind.TERMINATE)

        assert a.calls.count("delete") == 1
        assert b.calls.count("delete") == 1
        heartbeat.unregister.assert_called_once()
        assert seen == [0]
        assert registry.state is ShutdownState.TERMINATED
        assert controller.terminated.is_set()
        assert len(registry) == 0

    @pytest.mark.parametrize("kind", [SignalKind.TERMINATE, SignalKind.INTERRUPT])
    def test_loop_exits_on_termination(self, controller, registry, heartbeat, kind):
        t = _run_in_thread(controller)
        controller.signals.put(kind)
        assert controller.terminated.wait(2)
        t.join(2)
        assert not t.is_alive()
        heartbeat.unregister.assert_called_once()

    def test_second_terminate_is_noop(self, controller, registry, heartbeat, fake_manager):
        m = fake_manager("t1", workers=0)
        registry.add_or_update_tenant(m)
        registry.begin_shutdown()

        controller.handle(SignalKind.TERMINATE)
        controller.handle(SignalKind.INTERRUPT)

        assert registry.state is ShutdownState.SHUTTING_DOWN
        assert m.calls.count("delete") == 1
        heartbeat.unregister.assert_not_called()

    def test_signals_consumed_in_order(self, controller, registry, heartbeat, fake_manager):
        m = fake_manager("t1", workers=0)
        registry.add_or_update_tenant(m)
        for kind in (SignalKind.CHILD_EXITED, SignalKind.TERMINATE, SignalKind.TERMINATE):
            controller.signals.put(kind)

        t = _run_in_thread(controller)
        assert controller.terminated.wait(2)
        t.join(2)

        assert m.calls.index("verify_workers") < m.calls.index("delete")
        assert heartbeat.unregister.call_count == 1
        # The loop stops after the first completed shutdown
        assert len(controller.signals) == 1

    def test_reap_timeout_still_unregisters(self, controller, registry, heartbeat, fake_manager, config):
        stuck = fake_manager("stuck", workers=1)
        registry.add_or_update_tenant(stuck)
        registry.config = config.merged({"reap_timeout": 0.05})

        controller.handle(SignalKind.TERMINATE)

        heartbeat.unregister.assert_called_once()
        assert registry.state is ShutdownState.TERMINATED
        assert "stuck" in registry
