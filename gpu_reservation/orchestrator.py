"""
Launch Orchestrator
===================

The container entrypoint. Runs once, in the foreground, then becomes vLLM.

Startup sequence:
  1. Log the reservation identity
  2. Write status=starting, before anything that could report a later phase
  3. Append RESERVATION_* to /etc/environment (so SSH sessions see them)
  4. Install the vast.ai CLI if missing
  5. Write self_terminate.sh, schedule it with at + cron
  6. Write monitor.sh and start it detached (nohup-style, own session)
  7. Count GPUs, pick the workload tier, pre-fetch the model
  8. exec `vllm serve` — the server becomes the container's main process

If `vllm` is not installed the instance is misconfigured: log and exit 1.
The deadline machinery started in steps 5-6 still cleans it up.
"""

from __future__ import annotations
import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

from . import __version__
from .config import LifecycleConfig, ReservationContext, ReservationError, append_env_lines
from .deadline import DeadlineResolver, ReservationDeadline, utcnow
from .gpu_discovery import count_gpus
from .scheduler import Registration, TerminationScheduler
from .status import InstanceStatus, StatusRecorder
from .workload import WorkloadConfiguration, WorkloadTable, server_environment

log = logging.getLogger(__name__)

PIP_TIMEOUT_S      = 300
PREFETCH_TIMEOUT_S = 4 * 3600


class ServerBinaryMissing(ReservationError):
    """The inference server executable is not on PATH."""


def model_cached(model: str, cache_dir: Path) -> bool:
    """True if the HF hub cache already holds a snapshot of `model`."""
    repo = f"models--{model.replace('/', '--')}"
    for base in (cache_dir, cache_dir / "hub"):
        snapshots = base / repo / "snapshots"
        if snapshots.is_dir() and any(snapshots.iterdir()):
            return True
    return False


# ─── Launch Orchestrator ──────────────────────────────────────────────────────

class LaunchOrchestrator:
    def __init__(
        self,
        cfg:         LifecycleConfig,
        context:     ReservationContext,
        table:       Optional[WorkloadTable] = None,
        config_path: Optional[Path] = None,
        gpu_counter: Callable[[], int] = count_gpus,
        run     = subprocess.run,
        popen   = subprocess.Popen,
        which   = shutil.which,
        execvpe = os.execvpe,
        clock   = utcnow,
    ):
        self.cfg         = cfg
        self.context     = context
        self.table       = table or WorkloadTable()
        self.config_path = config_path
        self._gpu_counter = gpu_counter
        self._run        = run
        self._popen      = popen
        self._which      = which
        self._execvpe    = execvpe
        self._clock      = clock

        self.recorder  = StatusRecorder(cfg.status_path, context.identity)
        self.resolver  = DeadlineResolver(cfg.safety_margin, cfg.default_duration, clock=clock)
        self.scheduler = TerminationScheduler(cfg.self_terminate_script, cfg.safety_margin, run=run, which=which)

    # ─── Identity ─────────────────────────────────────────────────────────────

    def propagate_identity(self) -> list[str]:
        """Persist RESERVATION_* (and the resolved container id) to the env file."""
        items = {**self.context.reservation_vars(), **self.context.identity.durable_items()}
        try:
            written = append_env_lines(self.cfg.durable_env_path, items)
        except OSError as e:
            log.warning(f"Could not update {self.cfg.durable_env_path}: {e}")
            return []
        if written:
            log.info(f"Exported {', '.join(written)} to {self.cfg.durable_env_path}")
        return written

    # ─── Bootstrap ────────────────────────────────────────────────────────────

    def bootstrap(self) -> bool:
        """Make sure the vast.ai CLI is available for self-termination."""
        if self._which("vastai"):
            return True

        log.info("Installing vast.ai CLI...")
        try:
            result = self._run(
                [sys.executable, "-m", "pip", "install", "vastai"],
                capture_output=True, text=True, timeout=PIP_TIMEOUT_S,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log.warning(f"vastai install failed: {e} — destroy will fall back to poweroff")
            return False

        if result.returncode != 0:
            log.warning(f"vastai install exit {result.returncode}: {result.stderr.strip()[-300:]}")
            return False
        return True

    # ─── Artifacts ────────────────────────────────────────────────────────────

    def render_script(self, subcommand: str, *args: str) -> str:
        """
        A wrapper script for at/cron/nohup. Identity and PATH are baked in
        because cron runs jobs with an empty environment.
        """
        identity = self.context.identity
        exports = {
            "RESERVATION_ID": identity.reservation_id,
            "CONTAINER_ID":   identity.container_id,
            "PATH":           self.context.env.get("PATH", os.defpath),
        }
        cmd = [sys.executable, "-m", "gpu_reservation"]
        if self.config_path is not None:
            cmd += ["--config", str(self.config_path)]
        cmd += [subcommand, *args]

        lines = ["#!/bin/bash", f"# Installed by gpu-reservation {__version__}"]
        lines += [f"export {k}={shlex.quote(v)}" for k, v in exports.items()]
        lines.append("exec " + " ".join(shlex.quote(c) for c in cmd) + ' "$@"')
        return "\n".join(lines) + "\n"

    def _install(self, path: Path, content: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        path.chmod(0o755)
        log.info(f"Installed {path}")
        return path

    def install_terminate_script(self) -> Path:
        return self._install(self.cfg.self_terminate_script, self.render_script("terminate"))

    def install_monitor_script(self, deadline: ReservationDeadline) -> Path:
        # Only a default deadline needs pinning; real ones are re-read live
        args = ["--fallback-deadline", deadline.end_time.isoformat()] if deadline.is_default else []
        return self._install(self.cfg.monitor_script, self.render_script("monitor", *args))

    # ─── Deadline ─────────────────────────────────────────────────────────────

    def schedule_termination(self) -> ReservationDeadline:
        now = self._clock()
        deadline = self.resolver.resolve(self.context, now=now)
        results = self.scheduler.schedule(deadline, now)
        registered = [job.mechanism for job, outcome in results if outcome == Registration.REGISTERED]
        if results and not registered:
            log.warning("No termination job could be registered — heartbeat monitor is the only safeguard")
        return deadline

    def start_monitor(self) -> Optional[subprocess.Popen]:
        """Start monitor.sh detached from this process (it must outlive the exec)."""
        log_path = self.cfg.monitor_log_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            out = open(log_path, "ab")
        except OSError as e:
            log.warning(f"Cannot open {log_path}: {e} — monitor output discarded")
            out = subprocess.DEVNULL

        try:
            proc = self._popen(
                [str(self.cfg.monitor_script)],
                stdin             = subprocess.DEVNULL,
                stdout            = out,
                stderr            = subprocess.STDOUT,
                start_new_session = True,
                close_fds         = True,
            )
        except OSError as e:
            log.error(f"Failed to start heartbeat monitor: {e}")
            return None
        finally:
            if out is not subprocess.DEVNULL:
                out.close()

        log.info(f"Heartbeat monitor started (pid {proc.pid}), logging to {log_path}")
        return proc

    # ─── Workload ─────────────────────────────────────────────────────────────

    def configure_workload(self) -> WorkloadConfiguration:
        gpu_count = self._gpu_counter()
        log.info(f"Detected {gpu_count} GPUs")
        workload = self.table.select(gpu_count, api_key=self.context.api_key)
        log.info(
            f"Using {workload.model} for {workload.tier}x GPU configuration "
            f"(tensor parallel {workload.tensor_parallel_size})"
        )
        return workload

    def prefetch_model(self, workload: WorkloadConfiguration) -> bool:
        """Warm the HF cache so tensor-parallel workers don't race on download."""
        cache_dir = self.cfg.hf_cache_dir
        if model_cached(workload.model, cache_dir):
            log.info(f"Model {workload.model} already cached, skipping download")
            return True

        tool = next((t for t in ("hf", "huggingface-cli") if self._which(t)), None)
        if tool is None:
            log.warning("Neither hf nor huggingface-cli found — vLLM will download the model itself")
            return False

        log.info(f"Downloading {workload.model} with {tool}...")
        try:
            result = self._run(
                [tool, "download", workload.model, "--cache-dir", str(cache_dir)],
                timeout=PREFETCH_TIMEOUT_S,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log.warning(f"Pre-download failed: {e} — continuing anyway...")
            return False

        if result.returncode != 0:
            log.warning(f"Pre-download exit {result.returncode} — continuing anyway...")
            return False
        return True

    def build_server_command(self, workload: WorkloadConfiguration, binary: str = "vllm") -> list[str]:
        return [
            binary, "serve", workload.model,
            "--host", self.cfg.server_host,
            "--port", str(self.cfg.server_port),
            *workload.server_args(),
        ]

    def launch_server(self, workload: WorkloadConfiguration) -> None:
        binary = self._which("vllm")
        if not binary:
            log.error("vLLM command not found! This entrypoint requires the vllm/vllm-openai image")
            raise ServerBinaryMissing("vllm not found on PATH")

        env = {**self.context.env, **server_environment(workload, self.cfg)}
        cmd = self.build_server_command(workload, binary)
        log.info(f"Starting vLLM with model: {workload.model}")
        log.debug(f"exec: {' '.join(shlex.quote(c) for c in cmd)}")
        self._execvpe(binary, cmd, env)

    # ─── Main Sequence ────────────────────────────────────────────────────────

    def run(self) -> None:
        identity = self.context.identity
        log.info("=== GPU Reservation Launch ===")
        log.info(f"Reservation ID: {identity.reservation_id or '<unset>'}")
        log.info(f"Container ID:   {identity.container_id or '<unset>'}")
        for key, value in self.context.debug_vars().items():
            log.debug(f"  {key}={value}")

        self.recorder.write(InstanceStatus.STARTING)
        self.propagate_identity()
        self.bootstrap()

        self.install_terminate_script()
        deadline = self.schedule_termination()
        self.install_monitor_script(deadline)
        self.start_monitor()

        workload = self.configure_workload()

        log.info("=== Scheduled Termination Jobs ===")
        for line in self.scheduler.describe_jobs():
            log.info(f"  {line}")

        self.prefetch_model(workload)
        self.launch_server(workload)
