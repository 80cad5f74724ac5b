from __future__ import annotations

import subprocess
import threading

from gpu_reservation.config import ReservationIdentity
from gpu_reservation.status import InstanceStatus, StatusRecorder, read_status
from gpu_reservation.terminate import SelfTerminate, TerminateOutcome

from conftest import FakeRunner, which_for


class CountingRecorder(StatusRecorder):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.phases = []

    def write(self, status, uptime=None, **extra):
        self.phases.append(InstanceStatus(status))
        return super().write(status, uptime, **extra)


def make_terminate(tmp_path, recorder, run, which=None, sleep=None, euid=0, identity=None):
    return SelfTerminate(
        identity       = identity or recorder.identity,
        recorder       = recorder,
        lock_path      = tmp_path / "self_terminate.lock",
        grace_period_s = 30,
        run            = run,
        which          = which or which_for("vastai"),
        sleep          = sleep or (lambda s: None),
        geteuid        = lambda: euid,
    )


def test_destroy_success(tmp_path, recorder, status_path) -> None:
    run, sleeps = FakeRunner(), []
    outcome = make_terminate(tmp_path, recorder, run, sleep=sleeps.append)()

    assert outcome == TerminateOutcome.DESTROYED
    assert sleeps == [30]
    assert run.commands == [["vastai", "destroy", "instance", "9876543"]]
    assert read_status(status_path)["status"] == "terminating"


def test_destroy_failure_falls_back_to_poweroff(tmp_path, recorder) -> None:
    run = FakeRunner({"vastai": 1})
    outcome = make_terminate(tmp_path, recorder, run)()
    assert outcome == TerminateOutcome.POWERED_OFF
    assert run.commands[-1] == ["poweroff"]


def test_non_root_powers_off_with_sudo(tmp_path, recorder) -> None:
    run = FakeRunner({"vastai": subprocess.TimeoutExpired("vastai", 120)})
    outcome = make_terminate(tmp_path, recorder, run, euid=1000)()
    assert outcome == TerminateOutcome.POWERED_OFF
    assert run.commands[-1] == ["sudo", "poweroff"]


def test_missing_cli_or_container_goes_straight_to_poweroff(tmp_path, recorder) -> None:
    run = FakeRunner()
    assert make_terminate(tmp_path, recorder, run, which=which_for())() == TerminateOutcome.POWERED_OFF
    assert run.commands == [["poweroff"]]

    run = FakeRunner()
    no_container = ReservationIdentity("res-42", "")
    assert make_terminate(tmp_path, recorder, run, identity=no_container)() == TerminateOutcome.POWERED_OFF
    assert run.commands == [["poweroff"]]


def test_poweroff_failure_is_terminal(tmp_path, recorder) -> None:
    run = FakeRunner({"vastai": 1, "poweroff": OSError("no such file")})
    assert make_terminate(tmp_path, recorder, run)() == TerminateOutcome.FAILED
    assert not TerminateOutcome.FAILED.succeeded


def test_nested_invocation_during_grace_is_in_progress(tmp_path, status_path, identity) -> None:
    recorder = CountingRecorder(status_path, identity)
    run = FakeRunner()
    nested = []

    def sleep(_):
        nested.append(make_terminate(tmp_path, recorder, run)())

    outcome = make_terminate(tmp_path, recorder, run, sleep=sleep)()

    assert outcome == TerminateOutcome.DESTROYED
    assert nested == [TerminateOutcome.IN_PROGRESS]
    assert recorder.phases == [InstanceStatus.TERMINATING]
    assert run.commands == [["vastai", "destroy", "instance", "9876543"]]


def test_concurrent_invocations_write_terminating_once(tmp_path, status_path, identity) -> None:
    recorder = CountingRecorder(status_path, identity)
    run = FakeRunner()
    in_grace, release = threading.Event(), threading.Event()
    outcomes = []

    def slow_sleep(_):
        in_grace.set()
        release.wait(5)

    holder = threading.Thread(
        target=lambda: outcomes.append(make_terminate(tmp_path, recorder, run, sleep=slow_sleep)())
    )
    holder.start()
    assert in_grace.wait(5)

    others = [make_terminate(tmp_path, recorder, run)() for _ in range(4)]
    release.set()
    holder.join(5)

    assert others == [TerminateOutcome.IN_PROGRESS] * 4
    assert outcomes == [TerminateOutcome.DESTROYED]
    assert recorder.phases == [InstanceStatus.TERMINATING]
    assert len(run.commands) == 1


def test_lock_released_so_later_invocation_retries(tmp_path, recorder) -> None:
    run = FakeRunner({"vastai": 1, "poweroff": 1})
    terminate = make_terminate(tmp_path, recorder, run)
    assert terminate() == TerminateOutcome.FAILED
    assert terminate() == TerminateOutcome.FAILED
    assert run.commands.count(["vastai", "destroy", "instance", "9876543"]) == 2


def test_unwritable_status_does_not_block_destroy(tmp_path, unwritable_recorder) -> None:
    run = FakeRunner()
    outcome = make_terminate(tmp_path, unwritable_recorder, run)()
    assert outcome == TerminateOutcome.DESTROYED
    assert run.commands == [["vastai", "destroy", "instance", "9876543"]]
