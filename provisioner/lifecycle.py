"""
Lifecycle Controller
====================

Drains the signal queue, one event per iteration:

  CLD        → verify_tenants (reap exited workers)
  TERM / INT → if RUNNING:
                 RUNNING → SHUTTING_DOWN, delete every tenant
                 wait for all workers to exit (bounded by reap_timeout)
                 unregister from the server
                 SHUTTING_DOWN → TERMINATED, loop exits

A second TERM/INT while shutting down is consumed and ignored.
"""

from __future__ import annotations
import logging
import threading
import time
from typing import Optional

import psutil  # type: ignore

from .errors import ProcessReapTimeout
from .heartbeat import HeartbeatClient
from .registry import ShutdownState, TenantRegistry
from .signals import SignalKind, SignalQueue

log = logging.getLogger(__name__)


class LifecycleController:
    def __init__(
        self,
        registry:  TenantRegistry,
        heartbeat: HeartbeatClient,
        signals:   Optional[SignalQueue] = None,
    ):
        self.registry   = registry
        self.heartbeat  = heartbeat
        self.signals    = signals or SignalQueue()
        self.terminated = threading.Event()

    @property
    def poll_interval(self) -> float:
        return self.registry.config.signal_poll_interval

    def run(self):
        log.info("started signal processing thread")
        while not self.terminated.is_set():
            if len(self.signals):
                log.info(f"reaping {len(self.signals)} signals: {self.signals}")
            kind = self.signals.pop()
            if kind is None:
                time.sleep(self.poll_interval)
                continue
            self.handle(kind)

    def handle(self, kind: SignalKind):
        log.debug(f"processing signal: {kind.value}")
        if kind is SignalKind.CHILD_EXITED:
            self.registry.verify_tenants()
        elif kind in (SignalKind.TERMINATE, SignalKind.INTERRUPT):
            if self.registry.state is ShutdownState.RUNNING:
                self.shutdown()
            else:
                log.debug(f"already {self.registry.state.value}, ignoring {kind.value}")

    def shutdown(self):
        if not self.registry.begin_shutdown():
            return

        try:
            self.wait_for_workers()
        except ProcessReapTimeout as e:
            log.critical(f"{e} — unregistering anyway")

        self.heartbeat.unregister()
        self.registry.mark_terminated()
        self.terminated.set()
        log.info("signal processing thread finished")

    def wait_for_workers(self):
        """Block until every worker across every tenant has been reaped."""
        timeout  = self.registry.config.reap_timeout
        deadline = time.monotonic() + timeout

        self.registry.verify_tenants()
        while self.registry.total_workers() > 0:
            if time.monotonic() >= deadline:
                raise ProcessReapTimeout(self.registry.total_workers(), timeout)
            time.sleep(self.poll_interval)
            self.registry.verify_tenants()

        # Anything else we forked (or a worker the managers lost track of)
        children = psutil.Process().children()
        if children:
            log.info(f"waiting on {len(children)} remaining child process(es)")
            _, alive = psutil.wait_procs(children, timeout=max(0.0, deadline - time.monotonic()))
            if alive:
                raise ProcessReapTimeout(len(alive), timeout)
