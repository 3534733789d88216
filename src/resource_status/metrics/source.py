"""
Host metrics source.

Reads CPU, memory and per-mount disk usage through psutil and returns them as
a RawMetrics snapshot in bytes. Any failure while reading the host is raised
as MetricsSourceError so the worker can route it through the queue's retry
policy.

The ``cpu_load`` field is the system-wide CPU utilisation percentage
(0-100) measured over a short blocking window, not a load average.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import psutil

from resource_status.errors import MetricsSourceError
from resource_status.logging import get_logger

logger = get_logger(__name__)

# Blocking window used by psutil.cpu_percent; a zero interval compares against
# the previous call and returns 0.0 on the first one.
CPU_SAMPLE_INTERVAL = 0.5  # seconds


@dataclass(frozen=True)
class DiskUsage:
    """Usage of one mounted filesystem.

    Attributes:
        mount: Mount point (e.g. "/", "/data").
        total_bytes: Filesystem size in bytes.
        used_bytes: Bytes in use.
    """

    mount: str
    total_bytes: int
    used_bytes: int


@dataclass(frozen=True)
class RawMetrics:
    """A single host reading, before unit conversion.

    Attributes:
        cpu_load: CPU utilisation percentage.
        memory_used_bytes: Memory in use.
        memory_total_bytes: Installed memory.
        disks: Mounted filesystems, in the order the host reports them.
    """

    cpu_load: float
    memory_used_bytes: int
    memory_total_bytes: int
    disks: list[DiskUsage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "cpu_load": self.cpu_load,
            "memory_used_bytes": self.memory_used_bytes,
            "memory_total_bytes": self.memory_total_bytes,
            "disks": [
                {"mount": d.mount, "total_bytes": d.total_bytes, "used_bytes": d.used_bytes}
                for d in self.disks
            ],
        }


def read_disks() -> list[DiskUsage]:
    """
    Read usage for every physical mounted filesystem.

    Mounts that cannot be stat'ed (permission, stale network mounts) are
    skipped rather than failing the whole reading.
    """
    disks: list[DiskUsage] = []
    for partition in psutil.disk_partitions(all=False):
        try:
            usage = psutil.disk_usage(partition.mountpoint)
        except OSError as e:
            logger.debug(
                "Skipping unreadable mount",
                extra={"mount": partition.mountpoint, "error": str(e)},
            )
            continue
        disks.append(
            DiskUsage(
                mount=partition.mountpoint,
                total_bytes=int(usage.total),
                used_bytes=int(usage.used),
            )
        )
    return disks


def collect_raw_metrics() -> RawMetrics:
    """
    Read the current host metrics.

    This call blocks for CPU_SAMPLE_INTERVAL and must be run in an executor
    from async code.

    Returns:
        RawMetrics snapshot.

    Raises:
        MetricsSourceError: If any host read fails.
    """
    try:
        cpu_load = float(psutil.cpu_percent(interval=CPU_SAMPLE_INTERVAL))
        memory = psutil.virtual_memory()
        disks = read_disks()
    except Exception as e:
        raise MetricsSourceError(
            f"Failed to read host metrics: {e}",
            details={"error_type": type(e).__name__},
        ) from e

    return RawMetrics(
        cpu_load=cpu_load,
        memory_used_bytes=int(memory.used),
        memory_total_bytes=int(memory.total),
        disks=disks,
    )
