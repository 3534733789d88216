"""
Summary statistics over resource samples.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from resource_status.store import ResourceSample


def _summary(values: list[float]) -> dict[str, float]:
    return {
        "avg": sum(values) / len(values),
        "min": min(values),
        "max": max(values),
    }


def compute_stats(samples: Sequence[ResourceSample]) -> dict[str, Any] | None:
    """
    Compute avg/min/max of CPU, memory percent and disk percent.

    Args:
        samples: Samples ordered newest first.

    Returns:
        The statistics payload, or None when ``samples`` is empty. A sample
        whose total is zero counts as 0% for that resource.
    """
    if not samples:
        return None

    newest, oldest = samples[0], samples[-1]
    return {
        "cpu": _summary([s.cpu_usage for s in samples]),
        "memory": _summary([s.memory_percent for s in samples]),
        "disk": _summary([s.disk_percent for s in samples]),
        "totalRecords": len(samples),
        "dateRange": {
            "start": oldest.to_dict()["created_at"],
            "end": newest.to_dict()["created_at"],
        },
    }
