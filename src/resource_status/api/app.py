"""
FastAPI application for the resource usage query API.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from fastapi import FastAPI

from resource_status import __version__
from resource_status.api.auth import ApiKeyMiddleware
from resource_status.api.routes import create_resource_usage_router, utcnow
from resource_status.producer import CollectionProducer
from resource_status.store import SampleStore

API_PREFIX = "/api"


def create_app(
    store: SampleStore,
    producer: CollectionProducer,
    *,
    api_key: str,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Build the query API.

    Args:
        store: Sample store the read routes query.
        producer: Producer used by ``POST /api/resource-usage/check``.
        api_key: Key every ``/api`` request must present in ``x-api-key``.
        clock: Returns the current aware datetime.

    Returns:
        The configured FastAPI application.
    """
    app = FastAPI(
        title="Resource Status",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.store = store
    app.state.producer = producer
    app.add_middleware(ApiKeyMiddleware, api_key=api_key, prefix=API_PREFIX)
    app.include_router(
        create_resource_usage_router(store, producer, clock), prefix=API_PREFIX
    )
    return app
