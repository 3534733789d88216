"""
Sample store for the Resource Status service.

Components:
- models: ResourceSample row model and timestamp helpers
- storage: SQLite append-only table of samples
"""

from resource_status.store.models import ResourceSample
from resource_status.store.storage import SampleStore

__all__ = [
    "ResourceSample",
    "SampleStore",
]
