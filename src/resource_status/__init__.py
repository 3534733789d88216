"""
Resource Status - host resource sampling pipeline.

This package periodically samples CPU, memory and disk utilization through a
durable work queue, persists each sample as a time-series row, and exposes the
history through an HTTP query API.
"""

__version__ = "0.1.0"
