"""
API key authentication middleware.

Every request under ``/api`` must carry the configured key in the
``x-api-key`` header. Rejected requests get a 401 before any route handler
runs.
"""

from __future__ import annotations

import hmac
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from resource_status.errors import UnauthenticatedError
from resource_status.logging import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = "x-api-key"
PROTECTED_PREFIX = "/api"


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """
    Reject requests without a valid API key.

    An empty configured key rejects every request.
    """

    def __init__(self, app: Any, api_key: str, prefix: str = PROTECTED_PREFIX) -> None:
        super().__init__(app)
        self._api_key = api_key.encode()
        self._prefix = prefix

    def _is_protected(self, path: str) -> bool:
        return path == self._prefix or path.startswith(self._prefix + "/")

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if not self._is_protected(request.url.path):
            return await call_next(request)

        provided = request.headers.get(API_KEY_HEADER)
        if not provided:
            return self._reject(request, UnauthenticatedError("API key is required"))

        if not self._api_key or not hmac.compare_digest(provided.encode(), self._api_key):
            return self._reject(request, UnauthenticatedError("Invalid API key"))

        return await call_next(request)

    def _reject(self, request: Request, error: UnauthenticatedError) -> Response:
        logger.warning(
            "Request rejected",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": error.to_dict(),
            },
        )
        return JSONResponse({"error": error.message}, status_code=401)
