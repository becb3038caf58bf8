"""
Provisioner Config
==================

Settings come from, lowest precedence first:
  1. Defaults below
  2. ~/.loom/provisioner.json (or --config)
  3. LOOM_* environment variables
  4. CLI flags (applied by agent.main via ProvisionerConfig.merged)
"""

from __future__ import annotations
import json
import os
import shlex
from dataclasses import dataclass, field, fields, asdict, replace
from pathlib import Path
from typing import Optional

from .errors import ConfigError

CONFIG_PATH = Path.home() / ".loom" / "provisioner.json"

# env var → config field
ENV_VARS = {
    "LOOM_SERVER_URI":       "server_uri",
    "LOOM_PROVISIONER_HOST": "host",
    "LOOM_PROVISIONER_PORT": "port",
    "LOOM_CAPACITY":         "capacity",
    "LOOM_LOG_LEVEL":        "log_level",
    "LOOM_LOG_DIRECTORY":    "log_directory",
}

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass(frozen=True)
class ProvisionerConfig:
    server_uri:           str   = "http://localhost:55054"
    host:                 str   = "127.0.0.1"   # address the API binds and advertises
    port:                 int   = 4567
    capacity:             int   = 100           # capacityTotal reported on register
    heartbeat_interval:   float = 10.0
    signal_poll_interval: float = 1.0
    reap_timeout:         float = 300.0
    shutdown_grace:       float = 5.0
    request_timeout:      float = 10.0
    worker_command:       list[str] = field(default_factory=list)
    log_level:            str   = "info"
    log_directory:        Optional[str] = None

    def __post_init__(self):
        for name in ("heartbeat_interval", "signal_poll_interval", "reap_timeout",
                     "shutdown_grace", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.capacity < 0:
            raise ConfigError(f"capacity must not be negative: {self.capacity}")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(f"unknown log level {self.log_level!r}")
        if not self.server_uri:
            raise ConfigError("server_uri is required")

    @property
    def server_url(self) -> str:
        return self.server_uri.rstrip("/")

    @classmethod
    def from_dict(cls, data: dict) -> "ProvisionerConfig":
        known = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**_coerce(data, known))

    def merged(self, overrides: dict) -> "ProvisionerConfig":
        """Return a copy with every non-None value in overrides applied."""
        known = {f.name: f for f in fields(self)}
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(values, known))

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce(data: dict, known: dict) -> dict:
    out = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"unknown config key {key!r}")
        ftype = known[key].type
        try:
            if ftype == "int":
                out[key] = int(value)
            elif ftype == "float":
                out[key] = float(value)
            elif ftype == "list[str]":
                if isinstance(value, str):
                    value = shlex.split(value)
                out[key] = [str(v) for v in value]
            else:
                out[key] = value
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid value for {key}: {value!r} ({e})") from e
    return out


def load_config(path: Path = CONFIG_PATH, environ: Optional[dict] = None) -> ProvisionerConfig:
    environ = os.environ if environ is None else environ

    data = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")

    for var, key in ENV_VARS.items():
        if environ.get(var):
            data[key] = environ[var]

    return ProvisionerConfig.from_dict(data)


def save_config(path: Path, cfg: ProvisionerConfig):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg.to_dict(), indent=2))
