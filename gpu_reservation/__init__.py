"""
GPU Reservation Agent
=====================

Runs inside a rented GPU instance for the lifetime of one reservation.

What it does:
  1. Propagate the reservation identity into /etc/environment
  2. Resolve the reservation end time (env var, env file, platform alias)
  3. Schedule self-termination with `at`, backed up by a cron entry
  4. Start a detached heartbeat monitor that re-checks the deadline every 60s
  5. Pick a vLLM configuration for the detected GPU count
  6. exec `vllm serve` as the process of record

Termination model:
  - The instance must be destroyed no later than end_time + 5 minutes
  - `at` and cron are best effort; either may be missing on the image
  - The heartbeat monitor is the backstop and does not depend on either
  - Self-termination is idempotent: status → 30s grace → `vastai destroy`
    → `poweroff` if destroy fails

Requirements:
  pip install requests psutil pynvml

Usage:
  gpu-reservation launch
  gpu-reservation monitor
  gpu-reservation terminate
"""

__version__ = "0.3.0"
