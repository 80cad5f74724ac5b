"""
Configuration
=============

Two kinds of configuration live here:

  - LifecycleConfig: paths, periods and margins. Defaults match the
    vast.ai vllm/vllm-openai image layout and can be overridden from a
    JSON file (~/.gpu-reservation/config.json).
  - ReservationContext: what this instance knows about its reservation,
    read once at boot from the process environment and the durable
    environment file (/etc/environment). Components receive it explicitly;
    the heartbeat monitor calls reload() on every tick so that externally
    updated values take effect without a restart.
"""

from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

log = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".gpu-reservation" / "config.json"

RESERVATION_PREFIX   = "RESERVATION_"
RESERVATION_ID_VAR   = "RESERVATION_ID"
CONTAINER_ID_VAR     = "CONTAINER_ID"
CONTAINER_ALIAS_VAR  = "VAST_CONTAINERLABEL"
# Written by us into the durable env file so later shells can find the container
DURABLE_CONTAINER_VAR = "RESERVATION_CONTAINER_ID"
API_KEY_VAR          = "VLLM_API_KEY"
DEFAULT_API_KEY      = "default-key"


class ReservationError(Exception):
    """Base class for errors raised by this package."""


# ─── Lifecycle Config ─────────────────────────────────────────────────────────

@dataclass
class LifecycleConfig:
    status_path:        Path  = Path("/root/instance_status.json")
    durable_env_path:   Path  = Path("/etc/environment")
    script_dir:         Path  = Path("/root")
    monitor_log_path:   Path  = Path("/var/log/reservation_monitor.log")
    lock_path:          Path  = Path("/root/.self_terminate.lock")
    hf_cache_dir:       Path  = Path("/root/.cache/huggingface")
    heartbeat_period_s: int   = 60
    grace_period_s:     int   = 30
    safety_margin_min:  int   = 5
    default_duration_h: float = 2.0
    server_host:        str   = "0.0.0.0"
    server_port:        int   = 18000
    probe_server:       bool  = True

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(minutes=self.safety_margin_min)

    @property
    def default_duration(self) -> timedelta:
        return timedelta(hours=self.default_duration_h)

    @property
    def self_terminate_script(self) -> Path:
        return self.script_dir / "self_terminate.sh"

    @property
    def monitor_script(self) -> Path:
        return self.script_dir / "monitor.sh"

    @property
    def health_url(self) -> str:
        return f"http://127.0.0.1:{self.server_port}/health"


def load_config(path: Path) -> LifecycleConfig:
    """
    Load overrides for LifecycleConfig from a JSON object.
    A missing or unreadable file yields the defaults; unknown keys
    are skipped.
    """
    cfg = LifecycleConfig()
    if not path.exists():
        return cfg

    try:
        raw = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        log.warning(f"Ignoring unreadable config {path}: {e}")
        return cfg
    if not isinstance(raw, dict):
        log.warning(f"Ignoring config {path}: expected a JSON object, got {type(raw).__name__}")
        return cfg

    known = {f.name for f in fields(LifecycleConfig)}
    overrides = {}
    for key, value in raw.items():
        if key not in known:
            log.warning(f"Ignoring unknown config key {key!r} in {path}")
            continue
        if isinstance(getattr(cfg, key), Path):
            value = Path(value)
        overrides[key] = value

    log.debug(f"Loaded {len(overrides)} config override(s) from {path}")
    return replace(cfg, **overrides)


# ─── Durable Environment File ─────────────────────────────────────────────────

def read_env_file(path: Path) -> dict[str, str]:
    """
    Parse KEY=value lines (pam_env style, optional `export` and quotes).
    Unreadable or missing files read as empty.
    """
    try:
        text = path.read_text()
    except OSError:
        return {}

    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def append_env_lines(path: Path, items: Mapping[str, str]) -> list[str]:
    """
    Append KEY=value lines for entries the file does not already hold with
    the same value. Returns the keys written.
    """
    current = read_env_file(path)
    lines = []
    for key, value in items.items():
        if "\n" in value or current.get(key) == value:
            continue
        lines.append(f"{key}={value}")

    if not lines:
        return []

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as fh:
        fh.write("\n".join(lines) + "\n")
    return [line.split("=", 1)[0] for line in lines]


# ─── Reservation Identity / Context ───────────────────────────────────────────

@dataclass(frozen=True)
class ReservationIdentity:
    reservation_id: str
    container_id:   str

    @classmethod
    def from_sources(
        cls,
        env: Mapping[str, str],
        durable_env: Mapping[str, str],
    ) -> "ReservationIdentity":
        reservation_id = env.get(RESERVATION_ID_VAR) or durable_env.get(RESERVATION_ID_VAR) or ""
        container_id = (
            env.get(CONTAINER_ID_VAR)
            or env.get(CONTAINER_ALIAS_VAR)
            or durable_env.get(DURABLE_CONTAINER_VAR)
            or ""
        )
        return cls(reservation_id=reservation_id, container_id=container_id)

    def durable_items(self) -> dict[str, str]:
        items = {}
        if self.reservation_id:
            items[RESERVATION_ID_VAR] = self.reservation_id
        if self.container_id:
            items[DURABLE_CONTAINER_VAR] = self.container_id
        return items


@dataclass(frozen=True)
class ReservationContext:
    identity:         ReservationIdentity
    env:              Mapping[str, str]
    durable_env:      Mapping[str, str]
    durable_env_path: Path
    # Live source consulted by reload(); os.environ unless a test injects one
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ, repr=False, compare=False)

    @classmethod
    def load(
        cls,
        durable_env_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ReservationContext":
        source = os.environ if environ is None else environ
        env = dict(source)
        durable_env = read_env_file(durable_env_path)
        return cls(
            identity         = ReservationIdentity.from_sources(env, durable_env),
            env              = env,
            durable_env      = durable_env,
            durable_env_path = durable_env_path,
            environ          = source,
        )

    def reload(self) -> "ReservationContext":
        """Re-read the environment and the durable env file. Identity is kept."""
        fresh = ReservationContext.load(self.durable_env_path, self.environ)
        return replace(fresh, identity=self.identity)

    @property
    def api_key(self) -> str:
        return self.env.get(API_KEY_VAR) or DEFAULT_API_KEY

    def reservation_vars(self) -> dict[str, str]:
        return {k: v for k, v in self.env.items() if k.startswith(RESERVATION_PREFIX)}

    def debug_vars(self) -> dict[str, str]:
        markers = ("RESERVATION", "VAST", "CONTAINER")
        return {k: v for k, v in sorted(self.env.items()) if any(m in k for m in markers)}
