"""
Self-Terminate
==============

Tears the instance down:

  1. status → terminating
  2. wait 30s for external cleanup hooks
  3. `vastai destroy instance <container_id>`
  4. `poweroff` if destroy fails

May be invoked by `at`, cron, the heartbeat monitor or by hand, possibly
at the same time. An exclusive flock on a lock file lets one invocation
run the sequence; the others return IN_PROGRESS. The kernel drops the
lock if the holder dies, so the next invocation starts over.
"""

from __future__ import annotations
import fcntl
import logging
import os
import shutil
import subprocess
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator

from .config import ReservationIdentity
from .status import InstanceStatus, StatusRecorder

log = logging.getLogger(__name__)

DESTROY_TIMEOUT_S  = 120
POWEROFF_TIMEOUT_S = 60


class TerminateOutcome(str, Enum):
    DESTROYED   = "destroyed"
    POWERED_OFF = "powered_off"
    FAILED      = "failed"
    IN_PROGRESS = "in_progress"

    @property
    def succeeded(self) -> bool:
        return self in (TerminateOutcome.DESTROYED, TerminateOutcome.POWERED_OFF)


@contextmanager
def exclusive_lock(path: Path) -> Iterator[bool]:
    """Yield True if the lock was acquired, False if someone else holds it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as fh:
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            yield False
            return
        try:
            yield True
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


class SelfTerminate:
    def __init__(
        self,
        identity:       ReservationIdentity,
        recorder:       StatusRecorder,
        lock_path:      Path,
        grace_period_s: float = 30,
        run     = subprocess.run,
        which   = shutil.which,
        sleep   = time.sleep,
        geteuid = os.geteuid,
    ):
        self.identity       = identity
        self.recorder       = recorder
        self.lock_path      = lock_path
        self.grace_period_s = grace_period_s
        self._run           = run
        self._which         = which
        self._sleep         = sleep
        self._geteuid       = geteuid

    def __call__(self) -> TerminateOutcome:
        with exclusive_lock(self.lock_path) as acquired:
            if not acquired:
                log.info("Self-termination already in progress in another process")
                return TerminateOutcome.IN_PROGRESS
            return self._terminate()

    def _terminate(self) -> TerminateOutcome:
        log.info(f"Starting self-termination for reservation {self.identity.reservation_id or '<unknown>'}")
        self.recorder.write(InstanceStatus.TERMINATING)

        log.info(f"Waiting {self.grace_period_s:g} seconds for cleanup...")
        self._sleep(self.grace_period_s)

        if self._destroy():
            log.info(f"Instance {self.identity.container_id} destroyed")
            return TerminateOutcome.DESTROYED

        log.warning("vastai destroy failed, attempting poweroff")
        if self._poweroff():
            return TerminateOutcome.POWERED_OFF

        log.critical("poweroff failed — instance is still running and billing")
        return TerminateOutcome.FAILED

    def _destroy(self) -> bool:
        container_id = self.identity.container_id
        if not container_id:
            log.error("No container id (CONTAINER_ID / VAST_CONTAINERLABEL) — cannot destroy")
            return False
        if not self._which("vastai"):
            log.error("vastai CLI not found")
            return False

        log.info("Executing vastai destroy command...")
        try:
            result = self._run(
                ["vastai", "destroy", "instance", container_id],
                capture_output=True, text=True, timeout=DESTROY_TIMEOUT_S,
            )
        except subprocess.TimeoutExpired:
            log.error(f"vastai destroy timed out after {DESTROY_TIMEOUT_S}s")
            return False
        except OSError as e:
            log.error(f"vastai destroy error: {e}")
            return False

        if result.returncode != 0:
            log.error(f"vastai destroy exit {result.returncode}: {(result.stderr or '').strip()[:300]}")
            return False
        return True

    def _poweroff(self) -> bool:
        cmd = ["poweroff"] if self._geteuid() == 0 else ["sudo", "poweroff"]
        try:
            result = self._run(cmd, capture_output=True, text=True, timeout=POWEROFF_TIMEOUT_S)
        except (OSError, subprocess.SubprocessError) as e:
            log.error(f"{' '.join(cmd)} error: {e}")
            return False
        if result.returncode != 0:
            log.error(f"{' '.join(cmd)} exit {result.returncode}: {(result.stderr or '').strip()[:300]}")
            return False
        return True
