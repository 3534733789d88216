"""
Data models for persisted resource samples.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


def to_timestamp(value: datetime) -> float:
    """Convert a datetime to a Unix timestamp; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.timestamp()


def from_timestamp(value: float) -> datetime:
    """Convert a Unix timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(value, UTC)


@dataclass
class ResourceSample:
    """One persisted measurement of CPU, memory and disk.

    Attributes:
        cpu_usage: CPU utilisation percentage (0-100) over a short window.
        memory_used_mb: Memory in use, whole megabytes.
        memory_total_mb: Installed memory, whole megabytes.
        disk_used_mb: Used space on the selected filesystem, whole megabytes.
        disk_total_mb: Size of the selected filesystem, whole megabytes.
        created_at: When the sample was requested (UTC).
        id: Database ID (set after insertion).
    """

    cpu_usage: float
    memory_used_mb: int
    memory_total_mb: int
    disk_used_mb: int
    disk_total_mb: int
    created_at: datetime
    id: int | None = None

    @property
    def memory_percent(self) -> float:
        if self.memory_total_mb <= 0:
            return 0.0
        return self.memory_used_mb / self.memory_total_mb * 100

    @property
    def disk_percent(self) -> float:
        if self.disk_total_mb <= 0:
            return 0.0
        return self.disk_used_mb / self.disk_total_mb * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API row shape."""
        created_at = self.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return {
            "id": self.id,
            "cpu_usage": self.cpu_usage,
            "memory_used_mb": self.memory_used_mb,
            "memory_total_mb": self.memory_total_mb,
            "disk_used_mb": self.disk_used_mb,
            "disk_total_mb": self.disk_total_mb,
            "created_at": created_at.astimezone(UTC).isoformat(),
        }
