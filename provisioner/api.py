"""
Provisioner API
===============

Local HTTP API the Loom server uses to assign tenants to this host.

  GET    /status             agent id, shutdown state, usage
  GET    /v1/tenants         all tenants
  GET    /v1/tenants/{id}    one tenant
  POST   /v1/tenants         add (or edit) a tenant, id in the body
  PUT    /v1/tenants/{id}    add or edit a tenant
  DELETE /v1/tenants/{id}    delete a tenant

Registry errors map to 400 (bad input), 404 (unknown tenant),
503 (shutting down) and 500 (worker launch failure).
"""

from __future__ import annotations
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional

from .errors import AgentShuttingDown, InvalidArgument, SpawnError, TenantNotFound
from .registry import TenantRegistry
from .tenant import TenantManager

log = logging.getLogger(__name__)

TENANTS_PATH = "/v1/tenants"

ERROR_STATUS = (
    (InvalidArgument,   400),
    (TenantNotFound,    404),
    (AgentShuttingDown, 503),
    (SpawnError,        500),
)


def _make_handler(registry: TenantRegistry, manager_factory: Callable[..., TenantManager]):

    class ProvisionerHandler(BaseHTTPRequestHandler):

        def _json_response(self, data, status: int = 200):
            body = json.dumps(data, default=str).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _error(self, status: int, message: str):
            self._json_response({"error": message}, status=status)

        def _read_json(self) -> dict:
            header = self.headers.get("Content-Length") or "0"
            try:
                length = int(header)
            except ValueError:
                raise InvalidArgument(f"invalid Content-Length: {header!r}") from None
            if length < 0:
                raise InvalidArgument(f"invalid Content-Length: {header!r}")
            raw = self.rfile.read(length) if length else b""
            try:
                return json.loads(raw or b"{}")
            except json.JSONDecodeError as e:
                raise InvalidArgument(f"invalid JSON body: {e}") from e

        def _tenant_id(self) -> Optional[str]:
            """Path /v1/tenants/{id} → id; /v1/tenants → None."""
            path = self.path.split("?", 1)[0].rstrip("/")
            if path == TENANTS_PATH:
                return None
            if path.startswith(TENANTS_PATH + "/"):
                tenant_id = path[len(TENANTS_PATH) + 1:]
                if tenant_id and "/" not in tenant_id:
                    return tenant_id
            raise LookupError(path)

        def _dispatch(self, action: Callable[[], None]):
            try:
                action()
            except LookupError as e:
                if isinstance(e, TenantNotFound):
                    self._error(404, str(e))
                else:
                    self._error(404, f"no such endpoint: {self.path}")
            except tuple(cls for cls, _ in ERROR_STATUS) as e:
                status = next(code for cls, code in ERROR_STATUS if isinstance(e, cls))
                log.warning(f"API {self.command} {self.path} → {status}: {e}")
                self._error(status, str(e))
            except Exception as e:
                log.exception(f"API {self.command} {self.path} failed")
                self._error(500, f"internal error: {e}")

        # ─── Verbs ────────────────────────────────────────────────────────────

        def do_GET(self):
            if self.path.split("?", 1)[0].rstrip("/") == "/status":
                self._json_response({
                    "id":          registry.agent_id,
                    "state":       registry.state.value,
                    "usage":       registry.snapshot(),
                    "terminating": sorted(registry.terminating()),
                })
                return

            def action():
                tenant_id = self._tenant_id()
                if tenant_id is None:
                    self._json_response([m.to_dict() for m in registry.tenants()])
                else:
                    self._json_response(registry.get_tenant(tenant_id).to_dict())
            self._dispatch(action)

        def do_POST(self):
            def action():
                if self._tenant_id() is not None:
                    raise LookupError(self.path)
                self._put_tenant(None)
            self._dispatch(action)

        def do_PUT(self):
            def action():
                tenant_id = self._tenant_id()
                if tenant_id is None:
                    raise LookupError(self.path)
                self._put_tenant(tenant_id)
            self._dispatch(action)

        def _put_tenant(self, tenant_id: Optional[str]):
            manager = manager_factory(self._read_json(), tenant_id)
            registry.add_or_update_tenant(manager)
            self._json_response(registry.get_tenant(manager.id).to_dict())

        def do_DELETE(self):
            def action():
                tenant_id = self._tenant_id()
                if tenant_id is None:
                    raise LookupError(self.path)
                registry.delete_tenant(tenant_id)
                self._json_response({"id": tenant_id, "deleting": tenant_id in registry})
            self._dispatch(action)

        def log_message(self, format, *args):
            log.debug("API: %s", format % args)

    return ProvisionerHandler


class ApiServer:
    """Serves the provisioner API on a background thread."""

    def __init__(
        self,
        registry: TenantRegistry,
        host: Optional[str] = None,
        port: Optional[int] = None,
        manager_factory: Callable[..., TenantManager] = TenantManager.from_dict,
    ):
        self.registry = registry
        self.host     = registry.config.host if host is None else host
        self.port     = registry.config.port if port is None else port
        self.error:   Optional[BaseException] = None

        self._handler = _make_handler(registry, manager_factory)
        self._server: Optional[ThreadingHTTPServer] = None
        self._ready   = threading.Event()

    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            return self.host, self.port
        return self._server.server_address[:2]

    def serve(self):
        """Bind and serve until shutdown(). Bind failures are kept in self.error."""
        try:
            self._server = ThreadingHTTPServer((self.host, self.port), self._handler)
            self._server.daemon_threads = True
        except OSError as e:
            log.error(f"Failed to start API server on {self.host}:{self.port}: {e}")
            self.error = e
            return

        log.info(f"API server listening on http://{self.address[0]}:{self.address[1]}")
        self._ready.set()
        try:
            self._server.serve_forever(poll_interval=0.5)
        finally:
            self._server.server_close()
            self._ready.clear()

    def start(self) -> threading.Thread:
        t = threading.Thread(target=self.serve, name="provisioner-api", daemon=True)
        t.start()
        return t

    def shutdown(self):
        if self._server is not None and self._ready.is_set():
            self._server.shutdown()
