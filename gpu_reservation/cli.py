"""
Command-line entry points.

  gpu-reservation launch      container entrypoint (ends in exec vllm)
  gpu-reservation monitor     heartbeat loop, started detached by launch
  gpu-reservation terminate   self-terminate, run by at/cron/monitor
  gpu-reservation status      print the instance status record
  gpu-reservation deadline    print the resolved deadline and fire offset
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import CONFIG_PATH, LifecycleConfig, ReservationContext, load_config
from .deadline import DeadlineResolver, parse_end_time, utcnow
from .heartbeat import HeartbeatMonitor, probe_server
from .orchestrator import LaunchOrchestrator, ServerBinaryMissing
from .scheduler import minutes_until_fire
from .status import StatusRecorder, read_status
from .terminate import SelfTerminate
from .workload import WorkloadTable

log = logging.getLogger("gpu_reservation.cli")


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level  = logging.DEBUG if verbose else logging.INFO,
        format = "[%(asctime)s] %(levelname)s %(name)s — %(message)s",
        datefmt= "%Y-%m-%dT%H:%M:%S",
    )


def _self_terminate(cfg: LifecycleConfig, ctx: ReservationContext) -> SelfTerminate:
    recorder = StatusRecorder(cfg.status_path, ctx.identity)
    return SelfTerminate(ctx.identity, recorder, cfg.lock_path, cfg.grace_period_s)


# ─── Subcommands ──────────────────────────────────────────────────────────────

def cmd_launch(cfg: LifecycleConfig, args) -> int:
    ctx = ReservationContext.load(cfg.durable_env_path)
    table = None
    if args.workload_table:
        try:
            table = WorkloadTable.from_file(args.workload_table)
        except (OSError, ValueError) as e:
            log.error(f"{e}; using the built-in workload table")
    orchestrator = LaunchOrchestrator(cfg, ctx, table=table, config_path=args.config_path)
    try:
        orchestrator.run()
    except ServerBinaryMissing as e:
        log.error(f"Fatal configuration error: {e}")
        return 1
    return 0


def cmd_monitor(cfg: LifecycleConfig, args) -> int:
    ctx = ReservationContext.load(cfg.durable_env_path)
    fallback = None
    if args.fallback_deadline:
        fallback = parse_end_time(args.fallback_deadline)
        if fallback is None:
            log.warning(f"Ignoring unparseable --fallback-deadline {args.fallback_deadline!r}")

    monitor = HeartbeatMonitor(
        context           = ctx,
        recorder          = StatusRecorder(cfg.status_path, ctx.identity),
        resolver          = DeadlineResolver(cfg.safety_margin, cfg.default_duration),
        terminate         = _self_terminate(cfg, ctx),
        period_s          = cfg.heartbeat_period_s,
        fallback_deadline = fallback,
        probe             = (lambda: probe_server(cfg.health_url)) if cfg.probe_server else None,
    )
    monitor.run()
    return 0


def cmd_terminate(cfg: LifecycleConfig, args) -> int:
    ctx = ReservationContext.load(cfg.durable_env_path)
    outcome = _self_terminate(cfg, ctx)()
    log.info(f"Self-termination finished: {outcome.value}")
    return 0


def cmd_status(cfg: LifecycleConfig, args) -> int:
    record = read_status(cfg.status_path)
    if record is None:
        print(f"No status record at {cfg.status_path}")
        return 1
    print(json.dumps(record, indent=2))
    return 0


def cmd_deadline(cfg: LifecycleConfig, args) -> int:
    ctx = ReservationContext.load(cfg.durable_env_path)
    now = utcnow()
    deadline = DeadlineResolver(cfg.safety_margin, cfg.default_duration).resolve(ctx, now=now)
    print(json.dumps({
        "end_time":            deadline.end_time.isoformat(),
        "source":              deadline.source,
        "effective_fire_time": deadline.effective_fire_time.isoformat(),
        "fire_offset_minutes": minutes_until_fire(deadline.end_time, now, cfg.safety_margin),
        "past":                deadline.is_past(now),
    }, indent=2))
    return 0


COMMANDS = {
    "launch":    cmd_launch,
    "monitor":   cmd_monitor,
    "terminate": cmd_terminate,
    "status":    cmd_status,
    "deadline":  cmd_deadline,
}


# ─── Entry Point ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gpu-reservation", description="GPU reservation lifecycle agent")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", dest="config_path", type=Path, default=None,
                        help=f"JSON config overrides (default: {CONFIG_PATH} if present)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    launch = sub.add_parser("launch", help="Container entrypoint: schedule termination, start vLLM")
    launch.add_argument("--workload-table", type=Path, default=None,
                        help="JSON file replacing the built-in GPU-count → vLLM table")

    monitor = sub.add_parser("monitor", help="Run the heartbeat loop in the foreground")
    monitor.add_argument("--fallback-deadline", default=None,
                         help="Deadline to enforce when no end time can be resolved")

    sub.add_parser("terminate", help="Destroy this instance now")
    sub.add_parser("status", help="Print the instance status record")
    sub.add_parser("deadline", help="Print the resolved reservation deadline")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    cfg = load_config(args.config_path or CONFIG_PATH)
    sys.exit(COMMANDS[args.command](cfg, args))


if __name__ == "__main__":
    main()
