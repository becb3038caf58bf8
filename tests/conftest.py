"""Shared test fixtures for the provisioner."""

from __future__ import annotations

import sys
from typing import Optional

import pytest

from provisioner.config import ProvisionerConfig
from provisioner.registry import TenantRegistry


class FakeManager:
    """TenantManager stand-in with a settable worker count and call log."""

    def __init__(self, id: Optional[str], workers: int = 0, fail_spawn: bool = False):
        self.id         = id
        self.workers    = workers
        self.agent_id   = None
        self.options    = None
        self.fail_spawn = fail_spawn
        self.calls: list[str] = []
        self.updated_with: list["FakeManager"] = []

    def spawn(self):
        self.calls.append("spawn")
        if self.fail_spawn:
            raise OSError("spawn failed")

    def update(self, other):
        self.calls.append("update")
        self.updated_with.append(other)
        self.workers = other.workers

    def delete(self):
        self.calls.append("delete")

    def verify_workers(self):
        self.calls.append("verify_workers")

    def num_workers(self) -> int:
        return self.workers

    def to_dict(self) -> dict:
        return {"id": self.id, "workers": self.workers}


@pytest.fixture
def config() -> ProvisionerConfig:
    return ProvisionerConfig(
        server_uri           = "http://loom.test:55054",
        host                 = "127.0.0.1",
        port                 = 0,
        capacity             = 100,
        heartbeat_interval   = 0.05,
        signal_poll_interval = 0.01,
        reap_timeout         = 2.0,
        shutdown_grace       = 1.0,
        request_timeout      = 1.0,
        worker_command       = [sys.executable, "-c", "import time; time.sleep(30)"],
    )


@pytest.fixture
def registry(config) -> TenantRegistry:
    return TenantRegistry(config, agent_id="host-a.1234")


@pytest.fixture
def fake_manager():
    return FakeManager
