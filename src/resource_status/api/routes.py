"""
Resource usage routes.

Read-only views over the sample store plus the manual collection trigger.
Every handler answers with a ``{"success": ...}`` envelope: 400 for invalid
parameters, 404 when there is nothing to report, 500 for any other failure.
Rows are ordered ``created_at DESC, id DESC``, so identical requests over an
unchanged store return identical bodies.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from resource_status.api.stats import compute_stats
from resource_status.errors import InternalError, InvalidArgumentError
from resource_status.logging import get_logger
from resource_status.producer import CollectionProducer
from resource_status.store import SampleStore
from resource_status.store.storage import MAX_PAGE_SIZE

logger = get_logger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
HISTORY_DAYS = 30


def utcnow() -> datetime:
    return datetime.now(UTC)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _internal_error(message: str, exc: Exception) -> JSONResponse:
    error = InternalError(message, details={"error": str(exc)})
    logger.error(message, extra={"error": error.to_dict()})
    return _error(error.message, 500)


def parse_int_param(
    name: str,
    value: str | None,
    default: int,
    minimum: int,
    maximum: int | None = None,
) -> int:
    """
    Parse an integer query parameter.

    Raises:
        InvalidArgumentError: If the value is not an integer within bounds.
    """
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError as e:
        raise InvalidArgumentError(
            f"{name} must be an integer", details={name: value}
        ) from e
    if parsed < minimum or (maximum is not None and parsed > maximum):
        if maximum is not None:
            bounds = f"between {minimum} and {maximum}"
        else:
            bounds = f"at least {minimum}"
        raise InvalidArgumentError(f"{name} must be {bounds}", details={name: parsed})
    return parsed


def parse_date_param(name: str, value: str | None) -> datetime | None:
    """
    Parse a date or datetime query parameter into an aware UTC datetime.

    A bare date (``2024-01-02``) means midnight UTC on that day, for either
    bound. Naive datetimes are taken as UTC.

    Raises:
        InvalidArgumentError: If the value is not ISO-8601.
    """
    if value is None or value == "":
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime.combine(day, time.min, UTC)
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise InvalidArgumentError(
            f"Invalid {name}: {value}", details={name: value}
        ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def history_window(now: datetime) -> tuple[datetime, datetime]:
    """Return the UTC calendar-day window covering today and the 30 days before."""
    today = now.astimezone(UTC).date()
    start = datetime.combine(today - timedelta(days=HISTORY_DAYS), time.min, UTC)
    end = datetime.combine(today, time.max, UTC)
    return start, end


def create_resource_usage_router(
    store: SampleStore,
    producer: CollectionProducer,
    clock: Callable[[], datetime] = utcnow,
) -> APIRouter:
    """
    Create the ``/resource-usage`` router.

    Args:
        store: Sample store to read from.
        producer: Producer used by the manual trigger.
        clock: Returns the current aware datetime (history window).
    """
    router = APIRouter(prefix="/resource-usage", tags=["resource-usage"])

    @router.get("")
    @router.get("/")
    async def list_resource_usage(
        page: str | None = Query(None),
        limit: str | None = Query(None),
        start_date: str | None = Query(None, alias="startDate"),
        end_date: str | None = Query(None, alias="endDate"),
    ) -> JSONResponse:
        try:
            page_num = parse_int_param("page", page, DEFAULT_PAGE, 1)
            page_size = parse_int_param("limit", limit, DEFAULT_LIMIT, 1, MAX_PAGE_SIZE)
            start = parse_date_param("startDate", start_date)
            end = parse_date_param("endDate", end_date)

            rows = await store.query(
                start=start,
                end=end,
                limit=page_size,
                offset=(page_num - 1) * page_size,
            )
            total = await store.count(start=start, end=end)
        except InvalidArgumentError as e:
            return _error(e.message, 400)
        except Exception as e:
            return _internal_error("Failed to fetch resource usage data", e)

        return JSONResponse(
            {
                "success": True,
                "data": [row.to_dict() for row in rows],
                "pagination": {
                    "page": page_num,
                    "limit": page_size,
                    "total": total,
                    "totalPages": math.ceil(total / page_size),
                },
            }
        )

    @router.get("/history")
    async def resource_usage_history() -> JSONResponse:
        start, end = history_window(clock())
        try:
            rows = await store.query(start=start, end=end)
        except Exception as e:
            return _internal_error("Failed to fetch resource usage history", e)

        return JSONResponse(
            {
                "success": True,
                "data": [row.to_dict() for row in rows],
                "meta": {
                    "days": HISTORY_DAYS,
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                    "total_records": len(rows),
                },
            }
        )

    @router.get("/latest")
    async def latest_resource_usage() -> JSONResponse:
        try:
            row = await store.latest()
        except Exception as e:
            return _internal_error("Failed to fetch latest resource usage data", e)

        if row is None:
            return _error("No resource usage data found", 404)
        return JSONResponse({"success": True, "data": row.to_dict()})

    @router.get("/stats")
    async def resource_usage_stats(
        start_date: str | None = Query(None, alias="startDate"),
        end_date: str | None = Query(None, alias="endDate"),
    ) -> JSONResponse:
        try:
            start = parse_date_param("startDate", start_date)
            end = parse_date_param("endDate", end_date)
            stats = compute_stats(await store.query(start=start, end=end))
        except InvalidArgumentError as e:
            return _error(e.message, 400)
        except Exception as e:
            return _internal_error("Failed to fetch resource usage statistics", e)

        if stats is None:
            return _error("No data found for the specified period", 404)
        return JSONResponse({"success": True, "data": stats})

    @router.post("/check")
    async def trigger_resource_usage_check() -> JSONResponse:
        try:
            request_id = await producer.enqueue_manual()
        except Exception as e:
            return _internal_error("Failed to trigger resource usage check", e)

        logger.info(
            "Resource usage check job added", extra={"request_id": request_id}
        )
        return JSONResponse(
            {
                "success": True,
                "message": "Resource usage check job added to queue",
                "jobId": request_id,
            }
        )

    return router
