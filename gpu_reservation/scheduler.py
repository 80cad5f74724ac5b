"""
Termination Scheduler
=====================

Registers the self-terminate script to run once the reservation is over:

  - `at now + N minutes`, N = ceil(minutes until end_time) + 5
  - a crontab entry at end_time + 5 minutes (local time) as a backup

Both are best effort. Many container images ship without atd or cron, and
that is an expected configuration: the heartbeat monitor covers it.
"""

from __future__ import annotations
import logging
import math
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

from .deadline import SAFETY_MARGIN, ReservationDeadline

log = logging.getLogger(__name__)

AT   = "at"
CRON = "cron"


class Registration(str, Enum):
    REGISTERED  = "registered"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ScheduledTerminationJob:
    mechanism:   str   # AT or CRON
    fire_offset: int   # minutes from now
    time_spec:   str   # "now + 15 minutes" / "35 14 18 10 *"


def minutes_until_fire(
    end_time: datetime,
    now:      datetime,
    margin:   timedelta = SAFETY_MARGIN,
) -> int:
    seconds = (end_time - now).total_seconds()
    return math.ceil(seconds / 60) + int(margin.total_seconds() // 60)


def cron_time_spec(fire_time: datetime) -> str:
    """minute hour day month, in the host's local time (cron's clock)."""
    local = fire_time.astimezone()
    return f"{local.minute} {local.hour} {local.day} {local.month} *"


class TerminationScheduler:
    def __init__(
        self,
        script: Path,
        margin: timedelta = SAFETY_MARGIN,
        run   = subprocess.run,
        which = shutil.which,
    ):
        self.script  = script
        self.margin  = margin
        self._run    = run
        self._which  = which

    def plan(self, deadline: ReservationDeadline, now: datetime) -> list[ScheduledTerminationJob]:
        offset = minutes_until_fire(deadline.end_time, now, self.margin)
        return [
            ScheduledTerminationJob(AT, offset, f"now + {offset} minutes"),
            ScheduledTerminationJob(CRON, offset, cron_time_spec(deadline.end_time + self.margin)),
        ]

    def schedule(
        self,
        deadline: ReservationDeadline,
        now:      datetime,
    ) -> list[tuple[ScheduledTerminationJob, Registration]]:
        """
        Register both jobs. A deadline that is not in the future produces
        no jobs at all; the heartbeat monitor handles it on its first tick.
        """
        if deadline.is_past(now):
            log.warning(f"Invalid or past reservation end time {deadline.end_time.isoformat()} — not scheduling")
            return []

        results = []
        for job in self.plan(deadline, now):
            results.append((job, self.try_register(job)))

        log.info(
            f"Scheduling termination for {deadline.end_time.isoformat()} "
            f"(in {results[0][0].fire_offset} minutes, source: {deadline.source})"
        )
        return results

    def try_register(self, job: ScheduledTerminationJob) -> Registration:
        try:
            if job.mechanism == AT:
                return self._register_at(job)
            return self._register_cron(job)
        except (OSError, subprocess.SubprocessError) as e:
            log.warning(f"{job.mechanism} registration failed: {e}")
            return Registration.UNAVAILABLE

    def _register_at(self, job: ScheduledTerminationJob) -> Registration:
        if not self._which("at"):
            log.info("'at' not available — relying on cron/heartbeat")
            return Registration.UNAVAILABLE

        result = self._run(
            ["at", "now", "+", str(job.fire_offset), "minutes"],
            input=f"{self.script}\n", capture_output=True, text=True, timeout=10,
        )
        if result.returncode != 0:
            log.warning(f"'at' rejected the job: {result.stderr.strip()[:200]}")
            return Registration.UNAVAILABLE

        log.info(f"Scheduled with 'at' command ({job.time_spec})")
        return Registration.REGISTERED

    def _register_cron(self, job: ScheduledTerminationJob) -> Registration:
        if not self._which("crontab"):
            log.info("'crontab' not available — relying on at/heartbeat")
            return Registration.UNAVAILABLE

        line = f"{job.time_spec} {self.script}"
        current = self._run(["crontab", "-l"], capture_output=True, text=True, timeout=10)
        # `crontab -l` exits 1 when the user has no crontab yet
        existing = current.stdout if current.returncode == 0 else ""
        if line in existing.splitlines():
            log.info("Cron backup already installed")
            return Registration.REGISTERED

        table = (existing.rstrip("\n") + "\n" if existing.strip() else "") + line + "\n"
        result = self._run(["crontab", "-"], input=table, capture_output=True, text=True, timeout=10)
        if result.returncode != 0:
            log.warning(f"crontab install failed: {result.stderr.strip()[:200]}")
            return Registration.UNAVAILABLE

        log.info(f"Added cron backup ({job.time_spec})")
        return Registration.REGISTERED

    def describe_jobs(self) -> list[str]:
        """Return `atq` and `crontab -l` output for the startup log."""
        lines = []
        for tool, cmd, empty in (
            ("atq",     ["atq"],           "No 'at' jobs scheduled"),
            ("crontab", ["crontab", "-l"], "No cron jobs scheduled"),
        ):
            if not self._which(tool):
                continue
            try:
                result = self._run(cmd, capture_output=True, text=True, timeout=10)
                out = result.stdout.strip() if result.returncode == 0 else ""
            except (OSError, subprocess.SubprocessError):
                out = ""
            lines.extend(out.splitlines() if out else [empty])
        return lines
