"""
HTTP query API for the Resource Status service.

Components:
- app: FastAPI application factory
- auth: x-api-key middleware
- routes: /api/resource-usage handlers
- stats: avg/min/max summaries over samples
"""

from resource_status.api.app import create_app

__all__ = ["create_app"]
