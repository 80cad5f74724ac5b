from __future__ import annotations

import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from gpu_reservation.config import ReservationContext, ReservationIdentity
from gpu_reservation.status import StatusRecorder


class FakeRunner:
    """
    Stands in for subprocess.run. `results` maps "cmd arg" or "cmd" to a
    return code, a (return code, stdout) pair, or an exception to raise.
    """

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append((cmd, kwargs))
        outcome = self.results.get(" ".join(cmd[:2]), self.results.get(cmd[0], 0))
        if isinstance(outcome, BaseException):
            raise outcome
        rc, stdout = outcome if isinstance(outcome, tuple) else (outcome, "")
        return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr="")

    @property
    def commands(self):
        return [cmd for cmd, _ in self.calls]


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start
        self.sleeps = []

    def __call__(self) -> datetime:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


def which_for(*available):
    return lambda tool: f"/usr/bin/{tool}" if tool in available else None


@pytest.fixture
def start() -> datetime:
    return datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start) -> FakeClock:
    return FakeClock(start)


@pytest.fixture
def identity() -> ReservationIdentity:
    return ReservationIdentity(reservation_id="res-42", container_id="9876543")


@pytest.fixture
def status_path(tmp_path) -> Path:
    return tmp_path / "instance_status.json"


@pytest.fixture
def recorder(status_path, identity) -> StatusRecorder:
    return StatusRecorder(status_path, identity, clock=lambda: "2026-10-18T12:00:00+00:00")


@pytest.fixture
def env_file(tmp_path) -> Path:
    return tmp_path / "environment"


@pytest.fixture
def make_context(env_file):
    def _make(env=None, durable: str = "") -> ReservationContext:
        if durable:
            env_file.write_text(durable)
        return ReservationContext.load(env_file, environ=dict(env or {}))
    return _make


@pytest.fixture
def unwritable_recorder(tmp_path, identity) -> StatusRecorder:
    # Parent "directory" is a regular file, so every write raises OSError
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    return StatusRecorder(blocker / "instance_status.json", identity, clock=lambda: "2026-10-18T12:00:00+00:00")
