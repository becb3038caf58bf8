"""
Tenant Registry
===============

Shared agent state: identity, the tenant id → TenantManager mapping, the set
of tenants waiting for their workers to exit, and the shutdown state.

The API threads, the lifecycle controller and the heartbeat client all hold
the same TenantRegistry; every read and write goes through its lock.

Tenant removal rules:
  - delete with zero workers      → removed immediately
  - delete with live workers      → manager.delete(), id marked terminating
  - verify_tenants after SIGCHLD  → terminating ids at zero workers removed
"""

from __future__ import annotations
import enum
import logging
import os
import socket
import threading
from typing import Optional, Protocol

from .config import ProvisionerConfig
from .errors import AgentShuttingDown, InvalidArgument, TenantNotFound

log = logging.getLogger(__name__)


def make_agent_id() -> str:
    """<lowercased hostname>.<pid> — the key the server knows this agent by."""
    return f"{socket.gethostname().lower()}.{os.getpid()}"


class ShutdownState(enum.Enum):
    RUNNING       = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED    = "terminated"


class Manager(Protocol):
    """What the registry needs from a tenant manager (see tenant.TenantManager)."""

    id:       str
    agent_id: Optional[str]
    options:  Optional[ProvisionerConfig]

    def spawn(self) -> None: ...
    def update(self, other: "Manager") -> None: ...
    def delete(self) -> None: ...
    def verify_workers(self) -> None: ...
    def num_workers(self) -> int: ...


class TenantRegistry:
    def __init__(self, config: ProvisionerConfig, agent_id: Optional[str] = None):
        self.config   = config
        self.agent_id = agent_id or make_agent_id()

        self._lock        = threading.RLock()
        self._tenants:     dict[str, Manager] = {}
        self._terminating: set[str] = set()
        self._state       = ShutdownState.RUNNING

        log.info(f"provisioner {self.agent_id} initialized")

    # ─── State ────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            return self._state

    def begin_shutdown(self) -> bool:
        """
        Move RUNNING → SHUTTING_DOWN and ask every tenant's workers to stop.
        Returns False (and does nothing) if shutdown already began.
        """
        with self._lock:
            if self._state is not ShutdownState.RUNNING:
                return False
            self._state = ShutdownState.SHUTTING_DOWN
            log.info(f"shutting down — deleting {len(self._tenants)} tenant(s)")

            for tenant_id, manager in self._tenants.items():
                manager.delete()
                self._terminating.add(tenant_id)
            self._purge_finished()
            return True

    def mark_terminated(self):
        with self._lock:
            if self._state is ShutdownState.RUNNING:
                raise RuntimeError("cannot terminate before shutdown has begun")
            self._state = ShutdownState.TERMINATED

    def _require_running(self):
        if self._state is not ShutdownState.RUNNING:
            raise AgentShuttingDown(f"provisioner is {self._state.value}, rejecting tenant changes")

    # ─── Tenant API ───────────────────────────────────────────────────────────

    def add_or_update_tenant(self, manager: Manager):
        tenant_id = getattr(manager, "id", None)
        if not tenant_id:
            raise InvalidArgument(f"cannot add a TenantManager without an id: {manager!r}")

        with self._lock:
            self._require_running()

            existing = self._tenants.get(tenant_id)
            if existing is not None:
                log.debug(f"Editing tenant: {tenant_id}")
                existing.update(manager)
                return

            log.debug(f"Adding new tenant: {tenant_id}")
            manager.agent_id = self.agent_id
            manager.options  = self.config
            manager.spawn()
            self._tenants[tenant_id] = manager

    def delete_tenant(self, tenant_id: str):
        with self._lock:
            self._require_running()

            manager = self._tenants.get(tenant_id)
            if manager is None:
                raise TenantNotFound(tenant_id)

            if manager.num_workers() == 0:
                log.debug(f"Deleting idle tenant: {tenant_id}")
                del self._tenants[tenant_id]
                return

            log.debug(f"Deleting tenant {tenant_id} — waiting on {manager.num_workers()} worker(s)")
            manager.delete()
            self._terminating.add(tenant_id)

    def verify_tenants(self):
        """Reconcile worker counts after a child exits; drop fully-deleted tenants."""
        with self._lock:
            for manager in self._tenants.values():
                manager.verify_workers()
            self._purge_finished()

    def _purge_finished(self):
        for tenant_id in list(self._terminating):
            manager = self._tenants.get(tenant_id)
            if manager is None:
                self._terminating.discard(tenant_id)
            elif manager.num_workers() == 0:
                log.info(f"Tenant {tenant_id} has no workers left — removed")
                del self._tenants[tenant_id]
                self._terminating.discard(tenant_id)

    # ─── Reads ────────────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, int]:
        """tenant id → worker count, as reported in heartbeats."""
        with self._lock:
            return {tenant_id: m.num_workers() for tenant_id, m in self._tenants.items()}

    def get_tenant(self, tenant_id: str) -> Manager:
        with self._lock:
            try:
                return self._tenants[tenant_id]
            except KeyError:
                raise TenantNotFound(tenant_id) from None

    def tenants(self) -> list[Manager]:
        with self._lock:
            return list(self._tenants.values())

    def terminating(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._terminating)

    def total_workers(self) -> int:
        with self._lock:
            return sum(m.num_workers() for m in self._tenants.values())

    def __contains__(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._tenants

    def __len__(self) -> int:
        with self._lock:
            return len(self._tenants)
