from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from barcode_lab.logging import get_logger

_CGROUP_CPU_MAX: Final[Path] = Path("/sys/fs/cgroup/cpu.max")
_CGROUP_MEM_MAX: Final[Path] = Path("/sys/fs/cgroup/memory.max")
_MAX_TORCH_THREADS: Final[int] = 8


@dataclass(frozen=True)
class ResourceLimits:
    """CPU and memory visible to this process, plus the per-trial torch thread count."""

    cpu_cores: int
    memory_bytes: int | None
    torch_threads: int


def _read_cgroup(path: Path) -> str | None:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8").strip()


def _cpu_from_quota(cpu_max: str) -> int | None:
    """Whole cores granted by a cgroup v2 ``cpu.max`` line (``<quota> <period>``)."""
    quota, _, period = cpu_max.partition(" ")
    if not (quota.isdigit() and period.isdigit()):
        return None
    q, p = int(quota), int(period) or 100_000
    return max(1, q // p) if q > 0 else None


def detect_cpu_cores() -> int:
    raw = _read_cgroup(_CGROUP_CPU_MAX)
    cores = _cpu_from_quota(raw) if raw else None
    return cores if cores is not None else max(1, os.cpu_count() or 1)


def _detect_memory_limit_bytes() -> int | None:
    raw = _read_cgroup(_CGROUP_MEM_MAX)
    if raw is None or not raw.isdigit():
        return None
    return int(raw) or None


def _compute_torch_threads(cores: int, parallel_trials: int) -> int:
    return min(_MAX_TORCH_THREADS, max(1, cores // max(1, parallel_trials)))


def default_parallelism() -> int:
    """Parallel trial count used when the caller leaves it at 0."""
    return detect_cpu_cores()


def detect_resource_limits(parallel_trials: int = 1) -> ResourceLimits:
    cores = detect_cpu_cores()
    limits = ResourceLimits(
        cpu_cores=cores,
        memory_bytes=_detect_memory_limit_bytes(),
        torch_threads=_compute_torch_threads(cores, parallel_trials),
    )
    mem_mb = None if limits.memory_bytes is None else limits.memory_bytes // (1024 * 1024)
    get_logger().info(
        "resource_limits cpu_cores=%d memory_mb=%s torch_threads=%d parallel_trials=%d",
        limits.cpu_cores,
        mem_mb,
        limits.torch_threads,
        parallel_trials,
    )
    return limits
