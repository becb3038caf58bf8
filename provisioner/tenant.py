"""
Tenant Manager
==============

Owns the worker processes for one tenant on this host.

Each worker is a plain subprocess of the configured worker_command with the
tenant's coordinates appended:

  <worker_command> --uri <server> --tenant <tenant id> --provisioner <agent id>

The manager never waits on its workers. The provisioner receives SIGCHLD
when one exits and calls verify_workers(), which polls (and so reaps) every
process and forgets the dead ones. Exited workers are not restarted.
"""

from __future__ import annotations
import logging
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Optional

from .config import ProvisionerConfig
from .errors import InvalidArgument, SpawnError

log = logging.getLogger(__name__)

ABORT_WAIT = 5  # seconds to wait for a half-launched worker before SIGKILL


@dataclass
class TenantManager:
    id:        str
    workers:   int  = 0                         # desired worker count
    resources: dict = field(default_factory=dict)

    # Stamped by the registry when the tenant is first added
    agent_id:  Optional[str]               = None
    options:   Optional[ProvisionerConfig] = None

    _procs:    list = field(default_factory=list, init=False, repr=False)
    _retiring: set  = field(default_factory=set, init=False, repr=False)
    _deleting: bool = field(default=False, init=False, repr=False)
    _lock:     threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict, tenant_id: Optional[str] = None) -> "TenantManager":
        """Build from an API request body. A tenant_id from the URL wins over the body."""
        if not isinstance(data, dict):
            raise InvalidArgument("tenant must be a JSON object")
        try:
            workers = int(data.get("workers", 0))
        except (TypeError, ValueError):
            raise InvalidArgument(f"workers must be an integer, got {data.get('workers')!r}") from None
        if workers < 0:
            raise InvalidArgument(f"workers must not be negative, got {workers}")

        resources = data.get("resources") or {}
        if not isinstance(resources, dict):
            raise InvalidArgument("resources must be a JSON object")

        return cls(
            id        = tenant_id or data.get("id") or "",
            workers   = workers,
            resources = resources,
        )

    def to_dict(self) -> dict:
        return {
            "id":        self.id,
            "workers":   self.workers,
            "resources": self.resources,
            "running":   self.num_workers(),
            "deleting":  self._deleting,
        }

    # ─── Process control ──────────────────────────────────────────────────────

    def _command(self) -> list[str]:
        if self.options is None or not self.options.worker_command:
            raise SpawnError("no worker_command configured")
        return [
            *self.options.worker_command,
            "--uri",         self.options.server_uri,
            "--tenant",      self.id,
            "--provisioner", self.agent_id or "",
        ]

    def _launch(self, count: int):
        """Start count workers, or none: a failed launch stops the ones it started."""
        cmd = self._command()
        started = []
        for _ in range(count):
            try:
                proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL)
            except OSError as e:
                self._abort(started)
                raise SpawnError(f"failed to launch worker for tenant {self.id}: {e}") from e
            started.append(proc)
            log.info(f"[tenant {self.id}] started worker pid {proc.pid}")
        self._procs.extend(started)

    def _abort(self, procs: list):
        for proc in procs:
            log.warning(f"[tenant {self.id}] stopping worker pid {proc.pid} after failed launch")
            self._terminate(proc)
            try:
                proc.wait(timeout=ABORT_WAIT)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()

    def _terminate(self, proc: subprocess.Popen):
        try:
            proc.terminate()
        except ProcessLookupError:
            pass  # already gone, verify_workers will drop it

    def spawn(self):
        with self._lock:
            log.info(f"[tenant {self.id}] spawning {self.workers} worker(s)")
            self._launch(self.workers)

    def update(self, other: "TenantManager"):
        """Apply an edited tenant definition, scaling workers up or down."""
        with self._lock:
            self.resources = dict(other.resources)
            self.workers   = other.workers

            if self._deleting:
                log.info(f"[tenant {self.id}] is being deleted — not starting workers")
                return

            active = [p for p in self._procs if p.pid not in self._retiring]
            diff   = self.workers - len(active)
            if diff > 0:
                log.info(f"[tenant {self.id}] scaling up by {diff} worker(s)")
                self._launch(diff)
            elif diff < 0:
                log.info(f"[tenant {self.id}] scaling down by {-diff} worker(s)")
                for proc in active[diff:]:
                    self._retiring.add(proc.pid)
                    self._terminate(proc)

    def delete(self):
        """Ask every worker to stop. Does not wait."""
        with self._lock:
            self._deleting = True
            log.info(f"[tenant {self.id}] stopping {len(self._procs)} worker(s)")
            for proc in self._procs:
                self._retiring.add(proc.pid)
                self._terminate(proc)

    def verify_workers(self):
        with self._lock:
            alive = []
            for proc in self._procs:
                code = proc.poll()
                if code is None:
                    alive.append(proc)
                    continue
                if proc.pid in self._retiring:
                    log.debug(f"[tenant {self.id}] worker pid {proc.pid} exited ({code})")
                    self._retiring.discard(proc.pid)
                else:
                    log.warning(f"[tenant {self.id}] worker pid {proc.pid} died unexpectedly (exit {code})")
            self._procs = alive

    def num_workers(self) -> int:
        return len(self._procs)

    def pids(self) -> list[int]:
        with self._lock:
            return [p.pid for p in self._procs]
