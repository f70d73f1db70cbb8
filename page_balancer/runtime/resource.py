"""System resource helpers: parallelism discovery and utilisation snapshots."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional

import psutil


@dataclass(frozen=True)
class ResourceSnapshot:
    timestamp: float
    cpu_utilisation: Optional[float] = None
    memory_utilisation: Optional[float] = None


def available_parallelism() -> int:
    """Number of logical execution units reported by the host, at least 1."""
    count = psutil.cpu_count(logical=True)
    return max(1, int(count)) if count else 1


class ResourceMonitor:
    """Interface for resource monitors."""

    def snapshot(self) -> ResourceSnapshot:  # pragma: no cover - interface
        raise NotImplementedError


class NullResourceMonitor(ResourceMonitor):
    def snapshot(self) -> ResourceSnapshot:
        return ResourceSnapshot(timestamp=time.monotonic())


class PsUtilResourceMonitor(ResourceMonitor):
    """Collect CPU and memory utilisation via psutil."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # prime cpu_percent so the first call is meaningful
        psutil.cpu_percent(interval=None)

    def snapshot(self) -> ResourceSnapshot:
        with self._lock:
            cpu = psutil.cpu_percent(interval=None) / 100.0
            mem = psutil.virtual_memory().percent / 100.0
        return ResourceSnapshot(timestamp=time.monotonic(), cpu_utilisation=_clamp(cpu), memory_utilisation=_clamp(mem))


def _clamp(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return max(0.0, min(1.0, float(value)))


def get_default_resource_monitor() -> ResourceMonitor:
    return PsUtilResourceMonitor()
