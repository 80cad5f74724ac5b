"""
Status Recorder
===============

Writes the instance's last-known lifecycle phase to a JSON file
(/root/instance_status.json by default):

  {"status": "running", "timestamp": "...", "reservation_id": "...",
   "container_id": "...", "uptime": "up 3 hours, 2 minutes"}

The file is replaced whole on every write (temp file + os.replace), so a
reader sees either the previous record or the new one, never a mix.
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
import time
from contextlib import suppress
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import psutil  # type: ignore

from .config import ReservationIdentity

log = logging.getLogger(__name__)


class InstanceStatus(str, Enum):
    STARTING    = "starting"
    RUNNING     = "running"
    TERMINATING = "terminating"


def local_timestamp() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def format_uptime(seconds: float) -> str:
    """Same wording as `uptime -p`."""
    minutes = int(seconds // 60)
    weeks, minutes = divmod(minutes, 7 * 24 * 60)
    days, minutes = divmod(minutes, 24 * 60)
    hours, minutes = divmod(minutes, 60)

    parts = []
    for value, unit in ((weeks, "week"), (days, "day"), (hours, "hour"), (minutes, "minute")):
        if value:
            parts.append(f"{value} {unit}{'s' if value != 1 else ''}")
    return "up " + (", ".join(parts) if parts else "0 minutes")


def system_uptime() -> Optional[str]:
    try:
        return format_uptime(time.time() - psutil.boot_time())
    except Exception as e:
        log.debug(f"Uptime unavailable: {e}")
        return None


class StatusRecorder:
    def __init__(
        self,
        path:     Path,
        identity: ReservationIdentity,
        clock:    Callable[[], str] = local_timestamp,
    ):
        self.path     = path
        self.identity = identity
        self._clock   = clock

    def build(self, status: InstanceStatus, uptime: Optional[str] = None, **extra) -> dict:
        record = {
            "status":         InstanceStatus(status).value,
            "timestamp":      self._clock(),
            "reservation_id": self.identity.reservation_id,
            "container_id":   self.identity.container_id,
        }
        if uptime:
            record["uptime"] = uptime
        record.update(extra)
        return record

    def write(self, status: InstanceStatus, uptime: Optional[str] = None, **extra) -> dict:
        """
        Record `status`. A failed write is logged and skipped: the record
        only reports state and must never block the lifecycle behind it.
        """
        record = self.build(status, uptime, **extra)
        try:
            _atomic_write_json(self.path, record)
        except OSError as e:
            log.warning(f"Could not write status {record['status']} to {self.path}: {e}")
            return record
        log.debug(f"Status → {record['status']} ({self.path})")
        return record


def read_status(path: Path) -> Optional[dict]:
    try:
        return json.loads(path.read_text())
    except FileNotFoundError:
        return None


def _atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    finally:
        with suppress(FileNotFoundError):
            os.unlink(tmp)
