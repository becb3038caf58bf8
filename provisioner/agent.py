"""
Loom Provisioner — Main Daemon
==============================

The entry point for the per-host provisioner.

Startup sequence:
  1. Load config (server URI, advertised host/port, capacity)
  2. Start the tenant API and wait until it is serving
  3. Route SIGCHLD / SIGTERM / SIGINT into the signal queue
  4. Register with the server, then heartbeat every 10s
  5. Process signals until a shutdown completes

Safe shutdown:
  SIGTERM / SIGINT → delete every tenant → wait for workers → unregister → exit
"""

from __future__ import annotations
import argparse
import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from .api import ApiServer
from .config import CONFIG_PATH, ProvisionerConfig, load_config
from .errors import ConfigError
from .heartbeat import HeartbeatClient
from .lifecycle import LifecycleController
from .registry import TenantRegistry
from .signals import install_handlers, restore_handlers

# ─── Logging ──────────────────────────────────────────────────────────────────

LOG_FORMAT  = "[%(asctime)s] %(levelname)s %(name)s — %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

log = logging.getLogger("loom.provisioner")


def configure_logging(level: str = "info", log_directory: Optional[str] = None):
    logging.basicConfig(
        level   = getattr(logging, level.upper()),
        format  = LOG_FORMAT,
        datefmt = LOG_DATEFMT,
    )
    if log_directory:
        path = Path(log_directory)
        path.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path / "provisioner.log")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
        logging.getLogger().addHandler(handler)


# ─── Provisioner Agent ────────────────────────────────────────────────────────

class ProvisionerAgent:
    READY_POLL = 0.1

    def __init__(
        self,
        config:    ProvisionerConfig,
        registry:  Optional[TenantRegistry]  = None,
        api:       Optional[ApiServer]       = None,
        heartbeat: Optional[HeartbeatClient] = None,
    ):
        self.config     = config
        self.registry   = registry or TenantRegistry(config)
        self.api        = api or ApiServer(self.registry)
        self.heartbeat  = heartbeat or HeartbeatClient(self.registry)
        self.controller = LifecycleController(self.registry, self.heartbeat)

        self._heartbeat_stop = threading.Event()
        self._threads: dict[str, threading.Thread] = {}

    def _start(self, name: str, target) -> threading.Thread:
        t = threading.Thread(target=target, name=f"provisioner-{name}", daemon=True)
        t.start()
        self._threads[name] = t
        return t

    def _wait_for_api(self) -> bool:
        api_thread = self._threads["api"]
        while not self.api.is_ready():
            if self.api.error is not None or not api_thread.is_alive():
                return False
            time.sleep(self.READY_POLL)
        return True

    def run(self) -> int:
        """Run until a shutdown completes. Returns the process exit code."""
        log.info(f"Loom provisioner {self.registry.agent_id} starting")
        log.info(f"Server: {self.config.server_url}")

        self._threads["api"] = self.api.start()
        if not self._wait_for_api():
            log.critical(f"API server failed to start: {self.api.error} — exiting")
            return 1

        previous = install_handlers(self.controller.signals)
        try:
            self._start("heartbeat", lambda: self.heartbeat.run(self._heartbeat_stop))
            signal_thread = self._start("signals", self.controller.run)

            # Short waits keep the main thread free to run signal handlers
            while not self.controller.terminated.wait(0.5):
                if not signal_thread.is_alive():
                    log.critical("signal processing thread died — exiting")
                    self._stop_workers()
                    return 1

            self._stop_workers()
        finally:
            restore_handlers(previous)

        log.info("provisioner gracefully shut down")
        return 0

    def _stop_workers(self):
        """Cancel heartbeat and API threads; give each shutdown_grace to finish."""
        self._heartbeat_stop.set()
        self.api.shutdown()
        for name in ("heartbeat", "api"):
            t = self._threads.get(name)
            if t is None:
                continue
            t.join(timeout=self.config.shutdown_grace)
            if t.is_alive():
                log.warning(f"{name} thread still running after {self.config.shutdown_grace}s — abandoning it")


# ─── Entry Point ──────────────────────────────────────────────────────────────

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Loom Provisioner")
    parser.add_argument("--config", type=Path, default=CONFIG_PATH,
                        help=f"JSON config file (default: {CONFIG_PATH})")
    parser.add_argument("--uri", "-u", dest="server_uri",
                        help="Loom server URI")
    parser.add_argument("--host",
                        help="Address the tenant API binds and advertises")
    parser.add_argument("--port", type=int,
                        help="Port for the tenant API")
    parser.add_argument("--capacity", type=int,
                        help="Total worker capacity reported to the server")
    parser.add_argument("--worker-command", dest="worker_command",
                        help="Command line used to launch a tenant worker")
    parser.add_argument("--log-level", "-v", dest="log_level",
                        choices=["debug", "info", "warning", "error", "critical"])
    parser.add_argument("--log-directory", "-l", dest="log_directory",
                        help="Write provisioner.log to this directory")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, environ: Optional[dict] = None) -> ProvisionerConfig:
    cfg = load_config(args.config, os.environ if environ is None else environ)
    return cfg.merged({
        "server_uri":     args.server_uri,
        "host":           args.host,
        "port":           args.port,
        "capacity":       args.capacity,
        "worker_command": args.worker_command,
        "log_level":      args.log_level,
        "log_directory":  args.log_directory,
    })


def main(argv: Optional[list[str]] = None):
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config.log_level, config.log_directory)
    sys.exit(ProvisionerAgent(config).run())


if __name__ == "__main__":
    main()
