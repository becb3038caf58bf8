"""
Heartbeat Client
================

Keeps the Loom server's view of this provisioner current.

  PUT    /v1/provisioners/{id}            register (idempotent upsert)
  POST   /v1/provisioners/{id}/heartbeat  usage report every 10s
  DELETE /v1/provisioners/{id}            unregister, once, on shutdown

Nothing here is fatal. A failed call is logged and dropped; the next tick
tries again. A 404 on heartbeat means the server forgot us, so we register
again straight away.
"""

from __future__ import annotations
import logging
import threading
from typing import Optional

import requests

from .config import ProvisionerConfig
from .errors import ServerRejected, TransportError
from .registry import TenantRegistry

log = logging.getLogger(__name__)

USER_HEADER = {"X-Loom-UserID": "admin"}


class HeartbeatClient:
    def __init__(self, registry: TenantRegistry, config: Optional[ProvisionerConfig] = None):
        self.registry = registry
        self.config   = config or registry.config
        self.base_url = f"{self.config.server_url}/v1/provisioners/{registry.agent_id}"

    # ─── HTTP ─────────────────────────────────────────────────────────────────

    def _request(self, method: str, url: str, payload: Optional[dict] = None) -> requests.Response:
        """Issue one call. Raises TransportError or ServerRejected (any non-200)."""
        try:
            resp = requests.request(
                method,
                url,
                json    = payload,
                headers = USER_HEADER,
                timeout = self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if resp.status_code != 200:
            raise ServerRejected(resp.status_code, resp.text, url)
        return resp

    # ─── Registration ─────────────────────────────────────────────────────────

    def registration_payload(self) -> dict:
        # The server has always received these as strings
        return {
            "id":            self.registry.agent_id,
            "capacityTotal": str(self.config.capacity),
            "host":          self.config.host,
            "port":          str(self.config.port),
        }

    def register(self) -> bool:
        payload = self.registration_payload()
        log.info(f"Registering with server at {self.base_url}: {payload}")
        try:
            self._request("PUT", self.base_url, payload)
        except ServerRejected as e:
            log.warning(f"{e} when registering with loom server")
            return False
        except TransportError as e:
            log.error(f"Caught exception when registering with loom server: {e}")
            return False

        log.info("Successfully registered")
        return True

    def unregister(self) -> bool:
        log.info(f"Unregistering with server at {self.base_url}")
        try:
            self._request("DELETE", self.base_url)
        except ServerRejected as e:
            log.warning(f"{e} when unregistering with loom server")
            return False
        except TransportError as e:
            log.error(f"Caught exception when unregistering with loom server: {e}")
            return False

        log.info("Successfully unregistered")
        return True

    # ─── Heartbeat ────────────────────────────────────────────────────────────

    def heartbeat_payload(self) -> dict:
        return {"usage": self.registry.snapshot()}

    def send_heartbeat(self) -> bool:
        url = f"{self.base_url}/heartbeat"
        try:
            log.debug(f"sending heartbeat to {url}")
            self._request("POST", url, self.heartbeat_payload())
        except ServerRejected as e:
            if e.status_code == 404:
                log.warning("Response code 404 when sending heartbeat, re-registering provisioner")
                self.register()
            else:
                log.warning(f"{e} when sending heartbeat")
            return False
        except TransportError as e:
            log.error(f"Caught exception sending heartbeat to loom server: {e}")
            return False

        log.debug("Successfully sent heartbeat")
        return True

    def run(self, stop: threading.Event):
        """Register once, then heartbeat every interval until stop is set."""
        log.info("starting heartbeat thread")
        self.register()
        while not stop.is_set():
            self.send_heartbeat()
            stop.wait(self.config.heartbeat_interval)
        log.info("heartbeat thread stopped")
