"""Runtime resource utilities shared by the executor."""

from .resource import (
    NullResourceMonitor,
    PsUtilResourceMonitor,
    ResourceMonitor,
    ResourceSnapshot,
    available_parallelism,
    get_default_resource_monitor,
)

__all__ = [
    "NullResourceMonitor",
    "PsUtilResourceMonitor",
    "ResourceMonitor",
    "ResourceSnapshot",
    "available_parallelism",
    "get_default_resource_monitor",
]
