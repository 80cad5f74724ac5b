"""
Heartbeat Monitor
=================

Detached background process, the backstop for the whole lifecycle.

Every tick (60s):
  1. write status=running with timestamp and uptime
  2. re-resolve the deadline from live state (env + /etc/environment)
  3. if the deadline falls before the next tick, run self-terminate

The deadline counts as exceeded once it would pass before the next tick
(now + period > end_time), so a deadline is never overrun by a full
period. The price is that termination can start up to one period before
end_time, and with the 30s grace the destroy call can land up to 30s
before the paid end.

The monitor exits only after self-terminate reports DESTROYED or
POWERED_OFF. Any other outcome is retried on the next tick. A status
write that fails is logged and the tick carries on.
"""

from __future__ import annotations
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import requests

from .config import ReservationContext
from .deadline import DeadlineResolver, ReservationDeadline, utcnow
from .status import InstanceStatus, StatusRecorder, system_uptime
from .terminate import SelfTerminate, TerminateOutcome

log = logging.getLogger(__name__)


def probe_server(url: str, timeout: float = 2.0) -> bool:
    """True if the inference server answers its health endpoint."""
    try:
        return requests.get(url, timeout=timeout).ok
    except requests.RequestException:
        return False


class HeartbeatMonitor:
    def __init__(
        self,
        context:           ReservationContext,
        recorder:          StatusRecorder,
        resolver:          DeadlineResolver,
        terminate:         SelfTerminate,
        period_s:          float = 60,
        fallback_deadline: Optional[datetime] = None,
        probe:             Optional[Callable[[], bool]] = None,
        clock  = utcnow,
        sleep  = time.sleep,
        uptime = system_uptime,
    ):
        self.context           = context
        self.recorder          = recorder
        self.resolver          = resolver
        self.terminate         = terminate
        self.period_s          = period_s
        # Without a pinned default a missing end time would slide forward every tick
        self.fallback_deadline = fallback_deadline or clock() + resolver.default_duration
        self._probe            = probe
        self._clock            = clock
        self._sleep            = sleep
        self._uptime           = uptime

        self.ticks      = 0
        self.triggered  = False
        self.last_outcome: Optional[TerminateOutcome] = None

    def deadline_exceeded(self, deadline: ReservationDeadline, now: datetime) -> bool:
        """True once the deadline would pass before the next tick."""
        return now + timedelta(seconds=self.period_s) > deadline.end_time

    def current_deadline(self, now: datetime) -> ReservationDeadline:
        self.context = self.context.reload()
        return self.resolver.resolve(self.context, now=now, fallback=self.fallback_deadline, warn=False)

    def tick(self) -> bool:
        """Run one heartbeat. Returns True when the monitor should exit."""
        self.ticks += 1
        now = self._clock()

        # After a trigger the status stays "terminating" while we retry
        if not self.triggered:
            extra = {}
            if self._probe is not None:
                extra["server"] = "up" if self._probe() else "down"
            self.recorder.write(InstanceStatus.RUNNING, uptime=self._uptime(), **extra)

            deadline = self.current_deadline(now)
            if not self.deadline_exceeded(deadline, now):
                log.debug(f"Tick {self.ticks}: {deadline.seconds_remaining(now):.0f}s until {deadline.end_time.isoformat()}")
                return False

            log.warning(
                f"Reservation time exceeded (end {deadline.end_time.isoformat()}, "
                f"source {deadline.source}), triggering termination"
            )
            self.triggered = True

        self.last_outcome = self.terminate()
        if self.last_outcome.succeeded:
            return True

        log.warning(f"Self-termination returned {self.last_outcome.value} — retrying in {self.period_s:g}s")
        return False

    def run(self) -> Optional[TerminateOutcome]:
        log.info(
            f"Heartbeat monitor started for reservation "
            f"{self.context.identity.reservation_id or '<unknown>'} (every {self.period_s:g}s)"
        )
        while not self.tick():
            self._sleep(self.period_s)
        log.info(f"Heartbeat monitor exiting after {self.ticks} tick(s): {self.last_outcome.value}")
        return self.last_outcome
