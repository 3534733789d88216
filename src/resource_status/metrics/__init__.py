"""
Metrics module for the Resource Status service.

Components:
- source: psutil-backed host reader returning RawMetrics
- normalize: unit conversion and disk selection into ResourceSample rows
"""

from resource_status.metrics.normalize import build_sample, bytes_to_mb, select_disk
from resource_status.metrics.source import DiskUsage, RawMetrics, collect_raw_metrics

__all__ = [
    "DiskUsage",
    "RawMetrics",
    "build_sample",
    "bytes_to_mb",
    "collect_raw_metrics",
    "select_disk",
]
