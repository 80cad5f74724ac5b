"""
Workload Table
==============

Maps the detected GPU count to a vLLM launch configuration. This is policy
data, not lifecycle logic: the built-in table can be replaced with a JSON
file (--workload-table) without touching anything else.

Table file format:

  {
    "fallback": 2,
    "tiers": {
      "4": {"model": "...", "tensor_parallel_size": 4, "max_model_len": 262144,
            "gpu_memory_utilization": 0.95, "dtype": "float16",
            "extra_args": ["--enable-chunked-prefill"],
            "env": {"VLLM_FLASH_ATTN_VERSION": "2"}}
    }
  }

A GPU count with no exact tier uses the "fallback" tier.
"""

from __future__ import annotations
import json
import logging
from dataclasses import MISSING, dataclass, field, fields
from pathlib import Path
from typing import Mapping, Optional

from .config import DEFAULT_API_KEY, LifecycleConfig

log = logging.getLogger(__name__)

QWEN_CODER     = "Qwen/Qwen3-Coder-30B-A3B-Instruct"
QWEN_CODER_FP8 = "Qwen/Qwen3-Coder-30B-A3B-Instruct-FP8"


@dataclass(frozen=True)
class WorkloadConfiguration:
    tier:                   int
    model:                  str
    tensor_parallel_size:   int
    max_model_len:          int
    gpu_memory_utilization: float
    dtype:                  Optional[str] = None
    quantization:           Optional[str] = None
    api_key:                str = DEFAULT_API_KEY
    served_model_name:      str = "qwen-coder"
    tool_call_parser:       str = "qwen3_coder"
    extra_args:             tuple = ()
    env:                    Mapping[str, str] = field(default_factory=dict)

    def server_args(self) -> list[str]:
        """vllm serve flags, excluding the model and --host/--port."""
        args = ["--tensor-parallel-size", str(self.tensor_parallel_size)]
        if self.dtype:
            args += ["--dtype", self.dtype]
        if self.quantization:
            args += ["--quantization", self.quantization]
        args += [
            "--max-model-len",          str(self.max_model_len),
            "--gpu-memory-utilization", f"{self.gpu_memory_utilization:g}",
            *self.extra_args,
            "--api-key",                self.api_key,
            "--served-model-name",      self.served_model_name,
            "--enable-auto-tool-choice",
            "--tool-call-parser",       self.tool_call_parser,
        ]
        return args


# ─── Built-in Tiers ───────────────────────────────────────────────────────────

DEFAULT_TIERS: dict[int, dict] = {
    8: {
        "model":                  QWEN_CODER,
        "tensor_parallel_size":   8,
        "dtype":                  "float16",
        "max_model_len":          262144,
        "gpu_memory_utilization": 0.95,
        "extra_args": [
            "--trust-remote-code",
            "--enable-chunked-prefill",
            "--enable-prefix-caching",
        ],
        "env": {
            "VLLM_SKIP_P2P_CHECK":     "1",
            "VLLM_FLASH_ATTN_VERSION": "2",
            "PYTORCH_CUDA_ALLOC_CONF": "expandable_segments:True",
            "CUDA_VISIBLE_DEVICES":    "0,1,2,3,4,5,6,7",
        },
    },
    4: {
        "model":                  QWEN_CODER,
        "tensor_parallel_size":   4,
        "dtype":                  "float16",
        "max_model_len":          262144,
        "gpu_memory_utilization": 0.95,
        "extra_args": [
            "--max-num-batched-tokens", "32768",
            "--enable-chunked-prefill",
            "--disable-log-requests",
            "--disable-custom-all-reduce",
        ],
        "env": {
            "PYTORCH_CUDA_ALLOC_CONF": "expandable_segments:True",
            "VLLM_FLASH_ATTN_VERSION": "2",
        },
    },
    2: {
        "model":                  QWEN_CODER_FP8,
        "tensor_parallel_size":   2,
        "quantization":           "fp8",
        "max_model_len":          262144,
        "gpu_memory_utilization": 0.90,
        "extra_args": [
            "--kv-cache-dtype", "fp8",
            "--rope-scaling",
            '{"rope_type":"yarn","factor":8.0,"original_max_position_embeddings":32768}',
            "--trust-remote-code",
            "--disable-custom-all-reduce",
        ],
        "env": {
            "CUDA_LAUNCH_BLOCKING":       "1",
            "PYTORCH_CUDA_ALLOC_CONF":    "expandable_segments:True,max_split_size_mb:512",
            "VLLM_USE_TRITON_FLASH_ATTN": "1",
            "VLLM_FLASH_ATTN_VERSION":    "3",
        },
    },
}

DEFAULT_FALLBACK_TIER = 2

PORTAL_CONFIG = (
    "localhost:1111:11111:/:Instance Portal"
    "|localhost:8000:18000:/docs:vLLM API"
    "|localhost:8265:28265:/:Ray Dashboard"
    "|localhost:8080:18080:/:Jupyter"
    "|localhost:8080:8080:/terminals/1:Jupyter Terminal"
    "|localhost:9090:19090:/metrics:Prometheus Metrics"
)
RAY_ARGS = "--head --port 6379 --dashboard-host 127.0.0.1 --dashboard-port 28265"


_TIER_KEYS = {f.name for f in fields(WorkloadConfiguration)}
_REQUIRED_KEYS = {
    f.name for f in fields(WorkloadConfiguration)
    if f.default is MISSING and f.default_factory is MISSING and f.name != "tier"
}


def _check_tier(tier: int, entry: Mapping) -> None:
    unknown = set(entry) - _TIER_KEYS
    if unknown:
        raise ValueError(f"Tier {tier}: unknown key(s) {sorted(unknown)} (allowed: {sorted(_TIER_KEYS)})")
    missing = _REQUIRED_KEYS - set(entry)
    if missing:
        raise ValueError(f"Tier {tier}: missing key(s) {sorted(missing)}")


class WorkloadTable:
    def __init__(
        self,
        tiers:    Optional[Mapping[int, dict]] = None,
        fallback: int = DEFAULT_FALLBACK_TIER,
    ):
        self.tiers    = dict(DEFAULT_TIERS if tiers is None else tiers)
        self.fallback = fallback
        if self.fallback not in self.tiers:
            raise ValueError(f"Fallback tier {fallback} is not in the table ({sorted(self.tiers)})")
        for tier, entry in self.tiers.items():
            _check_tier(tier, entry)

    @classmethod
    def from_file(cls, path: Path) -> "WorkloadTable":
        raw = json.loads(path.read_text())
        try:
            tiers = {int(k): v for k, v in raw["tiers"].items()}
            fallback = int(raw.get("fallback", min(tiers)))
            table = cls(tiers, fallback)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Invalid workload table {path}: {e}") from e
        log.info(f"Loaded workload table from {path}: tiers {sorted(tiers)}, fallback {fallback}")
        return table

    def select(self, gpu_count: int, api_key: str = DEFAULT_API_KEY) -> WorkloadConfiguration:
        tier = gpu_count if gpu_count in self.tiers else self.fallback
        entry = {k: v for k, v in self.tiers[tier].items() if k not in ("tier", "api_key")}
        entry["extra_args"] = tuple(entry.get("extra_args", ()))
        entry["env"] = dict(entry.get("env", {}))
        return WorkloadConfiguration(tier=tier, api_key=api_key, **entry)


def server_environment(workload: WorkloadConfiguration, cfg: LifecycleConfig) -> dict[str, str]:
    """Environment for the vllm process, on top of the inherited one."""
    cache = str(cfg.hf_cache_dir)
    env = {
        "VLLM_MODEL":                   workload.model,
        "HF_HUB_ENABLE_HF_TRANSFER":    "1",
        "VLLM_USE_MODELSCOPE":          "0",
        "HF_HUB_DISABLE_PROGRESS_BARS": "0",
        # fork instead of spawn avoids multiprocessing issues with tensor parallelism
        "VLLM_WORKER_MULTIPROC_METHOD": "fork",
        "HF_HOME":                      cache,
        "HUGGINGFACE_HUB_CACHE":        cache,
        "RAY_ARGS":                     RAY_ARGS,
        "PORTAL_CONFIG":                PORTAL_CONFIG,
    }
    env.update(workload.env)
    return env
