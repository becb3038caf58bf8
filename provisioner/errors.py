"""
Provisioner Errors
==================

Registry errors (InvalidArgument, TenantNotFound, AgentShuttingDown,
SpawnError) are raised synchronously to the API layer, which turns them into
HTTP responses.

Control-plane errors (TransportError, ServerRejected) never leave the
heartbeat client — they are logged and the attempt is dropped.
"""

from __future__ import annotations
from typing import Optional


class ProvisionerError(Exception):
    """Base class for every error raised by the provisioner."""


class ConfigError(ProvisionerError):
    pass


class InvalidArgument(ProvisionerError, ValueError):
    pass


class TenantNotFound(ProvisionerError, KeyError):
    def __init__(self, tenant_id: str):
        super().__init__(tenant_id)
        self.tenant_id = tenant_id

    def __str__(self) -> str:
        return f"tenant {self.tenant_id!r} not found"


class AgentShuttingDown(ProvisionerError):
    """Registry mutation attempted after shutdown began."""


class SpawnError(ProvisionerError):
    pass


class TransportError(ProvisionerError):
    """Connection failure, timeout or unreadable response from the server."""


class ServerRejected(ProvisionerError):
    def __init__(self, status_code: int, body: str = "", url: Optional[str] = None):
        super().__init__(f"response code {status_code} from {url}: {body[:200]}")
        self.status_code = status_code
        self.body        = body
        self.url         = url


class ProcessReapTimeout(ProvisionerError):
    def __init__(self, remaining: int, timeout: float):
        super().__init__(f"{remaining} worker process(es) still alive after {timeout}s")
        self.remaining = remaining
        self.timeout   = timeout
