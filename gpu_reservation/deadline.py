"""
Deadline Resolver
=================

Finds the reservation end time. Candidates, first non-empty wins:

  1. RESERVATION_END_TIME in the process environment
  2. RESERVATION_END_TIME in the durable env file (the platform sometimes
     writes it there after the container has already started)
  3. EXTRA_ENV_RESERVATION_END_TIME, the platform's alias

A missing or unparseable value is not an error: the instance gets the
default reservation length (2h) instead. Termination fires at
end_time + 5 minutes to absorb scheduler latency and clock skew.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import ReservationContext

log = logging.getLogger(__name__)

END_TIME_VAR     = "RESERVATION_END_TIME"
END_TIME_ALIAS   = "EXTRA_ENV_RESERVATION_END_TIME"
SAFETY_MARGIN    = timedelta(minutes=5)
DEFAULT_DURATION = timedelta(hours=2)
DEFAULT_SOURCE   = "default"

# Layouts `date -d` accepts that datetime.fromisoformat does not
_DATE_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%a %b %d %H:%M:%S %Y",
    "%a, %d %b %Y %H:%M:%S %z",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReservationDeadline:
    end_time:      datetime
    source:        str
    safety_margin: timedelta = SAFETY_MARGIN

    @property
    def effective_fire_time(self) -> datetime:
        return self.end_time + self.safety_margin

    @property
    def is_default(self) -> bool:
        return self.source == DEFAULT_SOURCE

    def is_past(self, now: datetime) -> bool:
        return self.end_time <= now

    def seconds_remaining(self, now: datetime) -> float:
        return (self.end_time - now).total_seconds()


# ─── Sources / Parsing ────────────────────────────────────────────────────────

def resolve_end_time(ctx: ReservationContext) -> Optional[tuple[str, str]]:
    """Return (raw value, source name) of the first non-empty candidate."""
    candidates = (
        ("env",         ctx.env.get(END_TIME_VAR)),
        ("durable_env", ctx.durable_env.get(END_TIME_VAR)),
        ("alias",       ctx.env.get(END_TIME_ALIAS)),
    )
    for source, value in candidates:
        if value and value.strip():
            return value.strip(), source
    return None


def parse_end_time(raw: str) -> Optional[datetime]:
    """
    Parse an absolute date/time into an aware datetime.
    Naive values are local time, the way `date -d` reads them.
    Unix epoch seconds are accepted bare or as "@<epoch>".
    Returns None when nothing matches.
    """
    text = raw.strip().strip("\"'")
    if not text:
        return None

    if text.startswith("@") or text.isdigit():
        try:
            return datetime.fromtimestamp(float(text.lstrip("@")), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None

    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


# ─── Resolver ─────────────────────────────────────────────────────────────────

class DeadlineResolver:
    def __init__(
        self,
        safety_margin:    timedelta = SAFETY_MARGIN,
        default_duration: timedelta = DEFAULT_DURATION,
        clock = utcnow,
    ):
        self.safety_margin    = safety_margin
        self.default_duration = default_duration
        self._clock           = clock

    def resolve(
        self,
        ctx:      ReservationContext,
        now:      Optional[datetime] = None,
        fallback: Optional[datetime] = None,
        warn:     bool = True,
    ) -> ReservationDeadline:
        """
        Resolve the deadline from ctx. `fallback` pins the default deadline
        to a fixed instant (the heartbeat passes the one computed at boot);
        without it the default is now + default_duration.
        """
        now = now or self._clock()
        report = log.warning if warn else log.debug

        found = resolve_end_time(ctx)
        if found is None:
            report(
                f"No {END_TIME_VAR} set — defaulting to "
                f"{self.default_duration.total_seconds() / 3600:g} hour termination"
            )
            return self.default_deadline(now, fallback)

        raw, source = found
        end_time = parse_end_time(raw)
        if end_time is None:
            report(f"Unparseable reservation end time {raw!r} (from {source}) — using default")
            return self.default_deadline(now, fallback)

        if source == "alias":
            log.debug(f"Found {END_TIME_VAR} in {END_TIME_ALIAS}")
        return ReservationDeadline(end_time, source, self.safety_margin)

    def default_deadline(
        self,
        now:      datetime,
        fallback: Optional[datetime] = None,
    ) -> ReservationDeadline:
        end_time = fallback if fallback is not None else now + self.default_duration
        return ReservationDeadline(end_time, DEFAULT_SOURCE, self.safety_margin)
