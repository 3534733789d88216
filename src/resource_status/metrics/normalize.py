"""
Conversion of raw host readings into ResourceSample rows.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime

from resource_status.errors import MetricsSourceError
from resource_status.metrics.source import DiskUsage, RawMetrics
from resource_status.store.models import ResourceSample

BYTES_PER_MB = 1024 * 1024
ROOT_MOUNT = "/"


def bytes_to_mb(value: int | float) -> int:
    """Convert bytes to whole megabytes, rounding halves up."""
    if value < 0:
        raise MetricsSourceError(
            "Negative byte count reported by metrics source",
            details={"value": value},
        )
    return int(math.floor(value / BYTES_PER_MB + 0.5))


def select_disk(disks: Sequence[DiskUsage]) -> DiskUsage:
    """
    Pick the filesystem a sample reports.

    The root mount wins when present; otherwise the first reported entry is
    used.

    Raises:
        MetricsSourceError: If no filesystem was reported.
    """
    if not disks:
        raise MetricsSourceError("Metrics source reported no mounted filesystems")
    for disk in disks:
        if disk.mount == ROOT_MOUNT:
            return disk
    return disks[0]


def build_sample(raw: RawMetrics, created_at: datetime) -> ResourceSample:
    """Normalize a RawMetrics reading into an unsaved ResourceSample."""
    disk = select_disk(raw.disks)
    return ResourceSample(
        cpu_usage=float(raw.cpu_load),
        memory_used_mb=bytes_to_mb(raw.memory_used_bytes),
        memory_total_mb=bytes_to_mb(raw.memory_total_bytes),
        disk_used_mb=bytes_to_mb(disk.used_bytes),
        disk_total_mb=bytes_to_mb(disk.total_bytes),
        created_at=created_at,
    )
