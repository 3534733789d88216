"""
SQLite storage layer for resource samples.

This module implements the SampleStore class that handles:
- SQLite database initialization with proper schema
- Appending samples
- Latest-sample, paginated and range queries ordered by creation time

Rows are never updated or deleted here; retention is an external concern.

SQLite Schema:
    CREATE TABLE resource_usage (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        cpu_usage REAL,
        memory_used_mb INTEGER,
        memory_total_mb INTEGER,
        disk_used_mb INTEGER,
        disk_total_mb INTEGER,
        created_at REAL           -- Unix timestamp (UTC)
    );
    CREATE INDEX idx_resource_usage_created_at ON resource_usage(created_at);
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from resource_status.errors import FailedPreconditionError, InvalidArgumentError
from resource_status.logging import get_logger
from resource_status.store.models import ResourceSample, from_timestamp, to_timestamp

logger = get_logger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS resource_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cpu_usage REAL NOT NULL,
    memory_used_mb INTEGER NOT NULL CHECK (memory_used_mb >= 0),
    memory_total_mb INTEGER NOT NULL CHECK (memory_total_mb >= 0),
    disk_used_mb INTEGER NOT NULL CHECK (disk_used_mb >= 0),
    disk_total_mb INTEGER NOT NULL CHECK (disk_total_mb >= 0),
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_resource_usage_created_at
    ON resource_usage(created_at);
"""

_COLUMNS = (
    "id, cpu_usage, memory_used_mb, memory_total_mb, "
    "disk_used_mb, disk_total_mb, created_at"
)

# Newest first; id breaks ties so repeated queries return identical order.
_ORDER_NEWEST_FIRST = "ORDER BY created_at DESC, id DESC"


def _row_to_sample(row: sqlite3.Row) -> ResourceSample:
    return ResourceSample(
        id=row["id"],
        cpu_usage=row["cpu_usage"],
        memory_used_mb=row["memory_used_mb"],
        memory_total_mb=row["memory_total_mb"],
        disk_used_mb=row["disk_used_mb"],
        disk_total_mb=row["disk_total_mb"],
        created_at=from_timestamp(row["created_at"]),
    )


def _range_clause(
    start: datetime | None, end: datetime | None
) -> tuple[str, list[Any]]:
    conditions = []
    params: list[Any] = []
    if start is not None:
        conditions.append("created_at >= ?")
        params.append(to_timestamp(start))
    if end is not None:
        conditions.append("created_at <= ?")
        params.append(to_timestamp(end))
    where_clause = " WHERE " + " AND ".join(conditions) if conditions else ""
    return where_clause, params


class SampleStore:
    """
    SQLite-based append-only store for resource samples.

    Each operation opens and closes its own connection and runs in the
    default executor, so the API process can serve concurrent requests
    without blocking its event loop.

    Example:
        >>> store = SampleStore("/var/lib/resource-status/samples.db")
        >>> await store.initialize()
        >>> await store.insert(sample)
        >>> latest = await store.latest()
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    async def _run(self, func: Callable[[], T]) -> T:
        return await asyncio.get_running_loop().run_in_executor(None, func)

    async def initialize(self) -> None:
        """
        Initialize the database schema.

        Idempotent and safe to call multiple times.

        Raises:
            FailedPreconditionError: If the database cannot be initialized.
        """
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            def _init_db() -> None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                with self._get_connection() as conn:
                    conn.executescript(SCHEMA_SQL)
                    conn.commit()

            try:
                await self._run(_init_db)
            except Exception as e:
                logger.error(
                    "Failed to initialize sample database",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
                raise FailedPreconditionError(
                    f"Failed to initialize sample database: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

            self._initialized = True
            logger.info(
                "Sample database initialized",
                extra={"db_path": str(self.db_path)},
            )

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def insert(self, sample: ResourceSample) -> int:
        """
        Append a sample.

        Args:
            sample: The ResourceSample to insert; its ``id`` is set on success.

        Returns:
            The database ID of the inserted sample.

        Raises:
            InvalidArgumentError: If a megabyte field is negative.
            FailedPreconditionError: If the write fails.
        """
        negative = {
            name: value
            for name, value in (
                ("memory_used_mb", sample.memory_used_mb),
                ("memory_total_mb", sample.memory_total_mb),
                ("disk_used_mb", sample.disk_used_mb),
                ("disk_total_mb", sample.disk_total_mb),
            )
            if value < 0
        }
        if negative:
            raise InvalidArgumentError(
                "Sample sizes must be non-negative", details=negative
            )

        await self._ensure_initialized()

        def _insert() -> int:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO resource_usage (
                        cpu_usage, memory_used_mb, memory_total_mb,
                        disk_used_mb, disk_total_mb, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sample.cpu_usage,
                        sample.memory_used_mb,
                        sample.memory_total_mb,
                        sample.disk_used_mb,
                        sample.disk_total_mb,
                        to_timestamp(sample.created_at),
                    ),
                )
                conn.commit()
                return cursor.lastrowid or 0

        try:
            sample.id = await self._run(_insert)
        except Exception as e:
            logger.error(
                "Failed to insert resource sample",
                extra={"error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to insert resource sample: {e}"
            ) from e
        return sample.id

    async def latest(self) -> ResourceSample | None:
        """Return the most recent sample, or None when the store is empty."""
        await self._ensure_initialized()

        def _latest() -> ResourceSample | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM resource_usage {_ORDER_NEWEST_FIRST} LIMIT 1"
                ).fetchone()
                return _row_to_sample(row) if row else None

        try:
            return await self._run(_latest)
        except Exception as e:
            raise FailedPreconditionError(
                f"Failed to query latest sample: {e}"
            ) from e

    async def query(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ResourceSample]:
        """
        Query samples newest first, optionally bounded and paginated.

        Both bounds are inclusive.

        Args:
            start: Only samples created at or after this time.
            end: Only samples created at or before this time.
            limit: Maximum number of samples (1-1000); None returns all.
            offset: Number of samples to skip.

        Raises:
            InvalidArgumentError: If pagination parameters are invalid.
            FailedPreconditionError: If the query fails.
        """
        if limit is not None and (limit < 1 or limit > MAX_PAGE_SIZE):
            raise InvalidArgumentError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}",
                details={"limit": limit},
            )
        if offset < 0:
            raise InvalidArgumentError(
                "offset must be non-negative",
                details={"offset": offset},
            )

        await self._ensure_initialized()

        def _query() -> list[ResourceSample]:
            where_clause, params = _range_clause(start, end)
            sql = f"SELECT {_COLUMNS} FROM resource_usage{where_clause} {_ORDER_NEWEST_FIRST}"
            if limit is not None:
                sql += " LIMIT ? OFFSET ?"
                params.extend([limit, offset])
            elif offset:
                sql += " LIMIT -1 OFFSET ?"
                params.append(offset)
            with self._get_connection() as conn:
                return [_row_to_sample(row) for row in conn.execute(sql, params)]

        try:
            return await self._run(_query)
        except Exception as e:
            logger.error("Failed to query samples", extra={"error": str(e)})
            raise FailedPreconditionError(f"Failed to query samples: {e}") from e

    async def count(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        """Count samples within the optional inclusive range."""
        await self._ensure_initialized()

        def _count() -> int:
            where_clause, params = _range_clause(start, end)
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT COUNT(*) AS count FROM resource_usage{where_clause}",
                    params,
                ).fetchone()
                return int(row["count"])

        try:
            return await self._run(_count)
        except Exception as e:
            raise FailedPreconditionError(f"Failed to count samples: {e}") from e

    async def close(self) -> None:
        """Close the storage (no-op for connection-per-operation model)."""
        self._initialized = False
        logger.debug("Sample store closed")

    async def __aenter__(self) -> SampleStore:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
