"""
GPU Discovery
=============

Counts the NVIDIA GPUs visible to this container. The count is the only
sizing input for the workload table.

Tries pynvml first, falls back to `nvidia-smi -L`, and reports 0 when
neither works (the table's fallback tier then applies).
"""

from __future__ import annotations
import logging
import subprocess

log = logging.getLogger(__name__)


def count_gpus() -> int:
    try:
        return _count_via_pynvml()
    except Exception as e:
        log.warning(f"pynvml discovery failed: {e} — trying nvidia-smi fallback")

    try:
        return _count_via_nvidiasmi()
    except Exception as e:
        log.warning(f"nvidia-smi fallback failed: {e} — assuming no GPUs")

    return 0


def _count_via_pynvml() -> int:
    import pynvml  # type: ignore
    pynvml.nvmlInit()
    try:
        count = pynvml.nvmlDeviceGetCount()
    finally:
        pynvml.nvmlShutdown()
    log.info(f"pynvml: discovered {count} GPU(s)")
    return count


def _count_via_nvidiasmi() -> int:
    result = subprocess.run(
        ["nvidia-smi", "-L"],
        capture_output=True, text=True, timeout=10,
    )
    if result.returncode != 0:
        raise RuntimeError(f"nvidia-smi exit {result.returncode}: {result.stderr}")

    count = sum(1 for line in result.stdout.splitlines() if line.startswith("GPU "))
    log.info(f"nvidia-smi: discovered {count} GPU(s)")
    return count
