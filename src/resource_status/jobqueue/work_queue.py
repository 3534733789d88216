"""
Durable, priority-ordered work queue backed by SQLite.

This module implements the WorkQueue class that handles:
- Enqueueing collection requests with priority and delay
- Lease-based claims (at most one worker holds a request at a time)
- Ack/nack with exponential retry backoff and dead-lettering
- Retention of finished requests (keep the newest N completed / failed)

Delivery is at-least-once: a claim whose lease expires (worker crash) is
handed out again without counting as a failed attempt. A request stalled
more than ``max_stalled`` times, or whose stored row cannot be decoded, is
dead-lettered at claim time instead of being handed out.

SQLite Schema:
    CREATE TABLE queue_requests (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,  -- enqueue order
        id TEXT UNIQUE,
        queue TEXT,
        job_kind TEXT,
        payload TEXT,                           -- JSON
        state TEXT,                             -- waiting|delayed|active|completed|failed
        priority INTEGER,
        attempts INTEGER,
        stalled_count INTEGER,                  -- reclaims after lease expiry
        max_attempts INTEGER,
        backoff_delay_ms INTEGER,
        available_at REAL,
        lease_token TEXT,
        lease_until REAL,
        worker_id TEXT,
        last_error TEXT,                        -- JSON ErrorRecord
        created_at REAL,
        updated_at REAL,
        started_at REAL,
        finished_at REAL
    );
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from resource_status.config import QueueConfig
from resource_status.errors import (
    ErrorRecord,
    FailedPreconditionError,
    InvalidArgumentError,
    LeaseLostError,
    NotFoundError,
)
from resource_status.jobqueue.connection import QueueConnection
from resource_status.jobqueue.models import (
    AckHandle,
    BackoffPolicy,
    CollectionRequest,
    EnqueueOptions,
    RequestState,
)
from resource_status.logging import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_requests (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    queue TEXT NOT NULL,
    job_kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    priority INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    stalled_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    backoff_delay_ms INTEGER NOT NULL,
    available_at REAL NOT NULL,
    lease_token TEXT,
    lease_until REAL,
    worker_id TEXT,
    last_error TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    started_at REAL,
    finished_at REAL
);

CREATE INDEX IF NOT EXISTS idx_queue_requests_claim
    ON queue_requests(queue, state, priority, available_at, seq);
"""

_CLAIMABLE = """
    queue = ?
    AND attempts < max_attempts
    AND (
        (state IN ('waiting', 'delayed') AND available_at <= ?)
        OR (state = 'active' AND lease_until <= ?)
    )
"""

_CLAIM_ORDER = "ORDER BY priority ASC, available_at ASC, seq ASC"


# Columns added after the first release, applied to older queue files.
_MIGRATIONS = {
    "stalled_count": (
        "ALTER TABLE queue_requests "
        "ADD COLUMN stalled_count INTEGER NOT NULL DEFAULT 0"
    ),
}


def _apply_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(queue_requests)")}
    for column, statement in _MIGRATIONS.items():
        if column not in columns:
            logger.info("Migrating queue schema", extra={"column": column})
            conn.execute(statement)


@contextmanager
def _immediate_transaction(
    conn: sqlite3.Connection,
) -> Generator[sqlite3.Connection, None, None]:
    """Run a block inside ``BEGIN IMMEDIATE`` so claims never race."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _fetch(conn: sqlite3.Connection, request_id: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM queue_requests WHERE id = ?", (request_id,)
    ).fetchone()


def _mark_failed(
    conn: sqlite3.Connection,
    request_id: str,
    *,
    attempts: int,
    error: ErrorRecord,
    now: float,
    payload_json: str | None = None,
) -> None:
    """Dead-letter a request, optionally replacing an undecodable payload."""
    conn.execute(
        """
        UPDATE queue_requests
        SET state = ?, attempts = ?, payload = COALESCE(?, payload),
            lease_token = NULL, lease_until = NULL,
            last_error = ?, finished_at = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            RequestState.FAILED.value,
            attempts,
            payload_json,
            json.dumps(error.to_dict(), sort_keys=True),
            now,
            now,
            request_id,
        ),
    )


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except (TypeError, ValueError):
        return False
    return True


def _prune(
    conn: sqlite3.Connection, queue: str, state: RequestState, keep: int | None
) -> int:
    """Delete all but the newest ``keep`` finished requests in ``state``."""
    if keep is None:
        return 0
    cursor = conn.execute(
        """
        DELETE FROM queue_requests
        WHERE queue = ? AND state = ? AND seq NOT IN (
            SELECT seq FROM queue_requests
            WHERE queue = ? AND state = ?
            ORDER BY finished_at DESC, seq DESC
            LIMIT ?
        )
        """,
        (queue, state.value, queue, state.value, keep),
    )
    return cursor.rowcount


class WorkQueue:
    """
    Durable work queue for collection requests.

    The queue lives in a SQLite file shared by the producer processes
    (scheduler, API) and the worker. Every state change is a single
    ``BEGIN IMMEDIATE`` transaction, so a command retried after a dropped
    connection either fully applied before or applies now.

    Example:
        >>> queue = WorkQueue("/var/lib/resource-status/queue.db")
        >>> async with queue:
        ...     request_id = await queue.enqueue("collect-resource-usage", {})
        ...     request, handle = await queue.dequeue("worker-1")
        ...     await queue.ack(handle)
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        name: str = "resource-usage",
        max_attempts: int = 3,
        max_stalled: int = 1,
        backoff: BackoffPolicy | None = None,
        lease_seconds: float = 300.0,
        poll_interval: float = 1.0,
        remove_on_complete: int | None = 10,
        remove_on_fail: int | None = 5,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the queue (does not connect).

        Args:
            db_path: Path to the SQLite database file.
            name: Logical queue name.
            max_attempts: Attempts allowed before a request is dead-lettered.
            max_stalled: Lease expiries tolerated before a request is
                dead-lettered instead of reclaimed.
            backoff: Retry delay policy (default: 2000 ms exponential).
            lease_seconds: Claim lease duration.
            poll_interval: Idle polling interval of dequeue().
            remove_on_complete: Completed requests to keep (None keeps all).
            remove_on_fail: Failed requests to keep (None keeps all).
            reconnect_delay: Initial reconnection delay.
            reconnect_max_delay: Maximum reconnection delay.
            clock: Returns the current Unix time.
        """
        if max_attempts < 1:
            raise InvalidArgumentError(
                "max_attempts must be at least 1",
                details={"max_attempts": max_attempts},
            )
        self.name = name
        self.max_attempts = max_attempts
        self.max_stalled = max_stalled
        self.backoff = backoff or BackoffPolicy()
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self._clock = clock
        self._wakeup = asyncio.Event()
        self._connection = QueueConnection(
            db_path,
            on_connect=_apply_schema,
            reconnect_delay=reconnect_delay,
            reconnect_max_delay=reconnect_max_delay,
        )

    @classmethod
    def from_config(cls, config: QueueConfig, **kwargs: Any) -> WorkQueue:
        """Create a queue from the ``queue`` configuration section."""
        return cls(
            config.path,
            name=config.name,
            max_attempts=config.max_attempts,
            max_stalled=config.max_stalled,
            backoff=BackoffPolicy(base_delay_ms=config.backoff_delay_ms),
            lease_seconds=config.lease_seconds,
            poll_interval=config.poll_interval_seconds,
            remove_on_complete=config.remove_on_complete,
            remove_on_fail=config.remove_on_fail,
            reconnect_delay=config.reconnect_delay_seconds,
            reconnect_max_delay=config.reconnect_max_delay_seconds,
            **kwargs,
        )

    @property
    def connection(self) -> QueueConnection:
        return self._connection

    async def open(self) -> None:
        await self._connection.ensure_connected()

    async def close(self) -> None:
        await self._connection.close()

    def status(self) -> dict[str, Any]:
        """Return queue settings and connection state."""
        return {
            "name": self.name,
            "max_attempts": self.max_attempts,
            "max_stalled": self.max_stalled,
            "backoff_delay_ms": self.backoff.base_delay_ms,
            "connection": self._connection.status(),
        }

    # =========================================================================
    # Producer side
    # =========================================================================

    async def enqueue(
        self,
        job_kind: str,
        payload: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> str:
        """
        Durably store a new request.

        Args:
            job_kind: Informational job name.
            payload: JSON-serializable payload.
            options: Priority and initial delay.

        Returns:
            The new request ID.

        Raises:
            InvalidArgumentError: If the job kind, payload or delay is invalid.
        """
        options = options or EnqueueOptions()
        if not job_kind:
            raise InvalidArgumentError("job_kind must not be empty")
        if options.delay_ms < 0:
            raise InvalidArgumentError(
                "delay_ms must be non-negative",
                details={"delay_ms": options.delay_ms},
            )
        try:
            payload_json = json.dumps(payload, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(
                f"Payload is not JSON-serializable: {e}"
            ) from e

        request_id = uuid.uuid4().hex
        now = self._clock()
        state = RequestState.DELAYED if options.delay_ms > 0 else RequestState.WAITING

        def _insert(conn: sqlite3.Connection) -> None:
            with _immediate_transaction(conn):
                conn.execute(
                    """
                    INSERT INTO queue_requests (
                        id, queue, job_kind, payload, state, priority,
                        attempts, max_attempts, backoff_delay_ms,
                        available_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        request_id,
                        self.name,
                        job_kind,
                        payload_json,
                        state.value,
                        options.priority,
                        self.max_attempts,
                        self.backoff.base_delay_ms,
                        now + options.delay_ms / 1000,
                        now,
                        now,
                    ),
                )

        await self._connection.execute(_insert)
        self._wakeup.set()
        logger.info(
            "Request enqueued",
            extra={
                "queue": self.name,
                "request_id": request_id,
                "job_kind": job_kind,
                "priority": options.priority,
                "delay_ms": options.delay_ms,
            },
        )
        return request_id

    # =========================================================================
    # Consumer side
    # =========================================================================

    async def try_dequeue(
        self, worker_id: str
    ) -> tuple[CollectionRequest, AckHandle] | None:
        """
        Claim the next available request, or return None if there is none.

        Candidates that stalled more than ``max_stalled`` times or whose row
        cannot be decoded are dead-lettered on the way, in the same
        transaction, and the next candidate is tried.
        """
        lease_token = uuid.uuid4().hex

        def _claim(
            conn: sqlite3.Connection,
        ) -> tuple[CollectionRequest | None, list[tuple[str, ErrorRecord]]]:
            now = self._clock()
            dead: list[tuple[str, ErrorRecord]] = []
            with _immediate_transaction(conn):
                while True:
                    row = conn.execute(
                        f"SELECT * FROM queue_requests WHERE {_CLAIMABLE} "
                        f"{_CLAIM_ORDER} LIMIT 1",
                        (self.name, now, now),
                    ).fetchone()
                    if row is None:
                        break

                    stalled_count = row["stalled_count"]
                    if row["state"] == RequestState.ACTIVE.value:
                        stalled_count += 1
                        if stalled_count > self.max_stalled:
                            error = ErrorRecord.from_exception(
                                LeaseLostError(
                                    f"Lease expired {stalled_count} times",
                                    details={"request_id": row["id"]},
                                )
                            )
                            _mark_failed(
                                conn,
                                row["id"],
                                attempts=row["attempts"],
                                error=error,
                                now=now,
                            )
                            dead.append((row["id"], error))
                            continue

                    try:
                        request = CollectionRequest.from_row(row)
                    except InvalidArgumentError as e:
                        payload_json = None
                        if not _is_json(row["payload"]):
                            payload_json = json.dumps({"malformed": row["payload"]})
                        error = ErrorRecord.from_exception(e)
                        _mark_failed(
                            conn,
                            row["id"],
                            attempts=row["attempts"] + 1,
                            error=error,
                            now=now,
                            payload_json=payload_json,
                        )
                        dead.append((row["id"], error))
                        continue

                    conn.execute(
                        """
                        UPDATE queue_requests
                        SET state = ?, lease_token = ?, lease_until = ?,
                            stalled_count = ?, worker_id = ?,
                            started_at = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            RequestState.ACTIVE.value,
                            lease_token,
                            now + self.lease_seconds,
                            stalled_count,
                            worker_id,
                            now,
                            now,
                            row["id"],
                        ),
                    )
                    if row["state"] == RequestState.ACTIVE.value:
                        logger.warning(
                            "Reclaiming request with expired lease",
                            extra={
                                "queue": self.name,
                                "request_id": row["id"],
                                "stalled_count": stalled_count,
                            },
                        )
                    return CollectionRequest.from_row(_fetch(conn, row["id"])), dead

                if dead:
                    _prune(conn, self.name, RequestState.FAILED, self.remove_on_fail)
                return None, dead

        request, dead = await self._connection.execute(_claim)
        for request_id, error in dead:
            logger.error(
                "Request dead-lettered at claim",
                extra={
                    "queue": self.name,
                    "request_id": request_id,
                    "error": error.message,
                },
            )
        if request is None:
            return None
        logger.debug(
            "Request claimed",
            extra={
                "queue": self.name,
                "request_id": request.id,
                "worker_id": worker_id,
                "attempts": request.attempts,
            },
        )
        return request, AckHandle(
            request_id=request.id, lease_token=lease_token, worker_id=worker_id
        )

    async def dequeue(
        self, worker_id: str, *, timeout: float | None = None
    ) -> tuple[CollectionRequest, AckHandle] | None:
        """
        Block until a request can be claimed.

        Waits on local enqueues and otherwise polls every ``poll_interval``
        seconds, picking up requests enqueued by other processes and delayed
        requests that became available.

        Args:
            worker_id: Identifier recorded on the claim.
            timeout: Give up after this many seconds (None waits forever).

        Returns:
            The claimed request and its handle, or None on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self._wakeup.clear()
            claimed = await self.try_dequeue(worker_id)
            if claimed is not None:
                return claimed

            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except TimeoutError:
                pass

    def _check_lease(self, row: sqlite3.Row | None, handle: AckHandle) -> None:
        if (
            row is None
            or row["state"] != RequestState.ACTIVE.value
            or row["lease_token"] != handle.lease_token
        ):
            raise LeaseLostError(
                "Claim on request is no longer held",
                details={
                    "request_id": handle.request_id,
                    "worker_id": handle.worker_id,
                },
            )

    async def ack(self, handle: AckHandle) -> CollectionRequest:
        """
        Mark a claimed request completed and prune old completed requests.

        Returns:
            The completed request.

        Raises:
            LeaseLostError: If the handle's claim is no longer held.
        """

        def _ack(conn: sqlite3.Connection) -> tuple[sqlite3.Row, int]:
            now = self._clock()
            with _immediate_transaction(conn):
                self._check_lease(_fetch(conn, handle.request_id), handle)
                conn.execute(
                    """
                    UPDATE queue_requests
                    SET state = ?, lease_token = NULL, lease_until = NULL,
                        finished_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (RequestState.COMPLETED.value, now, now, handle.request_id),
                )
                row = _fetch(conn, handle.request_id)
                pruned = _prune(
                    conn, self.name, RequestState.COMPLETED, self.remove_on_complete
                )
                return row, pruned

        row, pruned = await self._connection.execute(_ack)
        request = CollectionRequest.from_row(row)
        logger.info(
            "Request completed",
            extra={
                "queue": self.name,
                "request_id": request.id,
                "attempts": request.attempts,
                "pruned": pruned,
            },
        )
        return request

    async def nack(
        self, handle: AckHandle, error: ErrorRecord | BaseException
    ) -> CollectionRequest:
        """
        Record a failed attempt.

        The request is delayed by ``base * 2^(attempts-1)`` milliseconds while
        attempts remain, otherwise it is dead-lettered (state ``failed``).

        Returns:
            The updated request.

        Raises:
            LeaseLostError: If the handle's claim is no longer held.
        """
        if isinstance(error, BaseException):
            error = ErrorRecord.from_exception(error)
        error_json = json.dumps(error.to_dict(), sort_keys=True)

        def _nack(conn: sqlite3.Connection) -> tuple[sqlite3.Row, int]:
            now = self._clock()
            with _immediate_transaction(conn):
                current = _fetch(conn, handle.request_id)
                self._check_lease(current, handle)
                attempts = current["attempts"] + 1
                pruned = 0
                if attempts < current["max_attempts"]:
                    backoff = BackoffPolicy(base_delay_ms=current["backoff_delay_ms"])
                    conn.execute(
                        """
                        UPDATE queue_requests
                        SET state = ?, attempts = ?, available_at = ?,
                            lease_token = NULL, lease_until = NULL,
                            last_error = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            RequestState.DELAYED.value,
                            attempts,
                            now + backoff.delay_ms(attempts) / 1000,
                            error_json,
                            now,
                            handle.request_id,
                        ),
                    )
                    row = _fetch(conn, handle.request_id)
                else:
                    _mark_failed(
                        conn,
                        handle.request_id,
                        attempts=attempts,
                        error=error,
                        now=now,
                    )
                    row = _fetch(conn, handle.request_id)
                    pruned = _prune(
                        conn, self.name, RequestState.FAILED, self.remove_on_fail
                    )
                return row, pruned

        row, pruned = await self._connection.execute(_nack)
        request = CollectionRequest.from_row(row)
        if request.state == RequestState.FAILED:
            logger.error(
                "Request dead-lettered",
                extra={
                    "queue": self.name,
                    "request_id": request.id,
                    "attempts": request.attempts,
                    "error": error.message,
                    "pruned": pruned,
                },
            )
        else:
            logger.warning(
                "Request failed, retry scheduled",
                extra={
                    "queue": self.name,
                    "request_id": request.id,
                    "attempts": request.attempts,
                    "retry_at": request.available_at,
                    "error": error.message,
                },
            )
        return request

    # =========================================================================
    # Inspection and operator actions
    # =========================================================================

    async def get(self, request_id: str) -> CollectionRequest | None:
        """Return a request by ID, or None if it does not exist (or was pruned)."""
        row = await self._connection.execute(lambda conn: _fetch(conn, request_id))
        return CollectionRequest.from_row(row) if row else None

    async def counts(self) -> dict[str, int]:
        """Return the number of requests in each state."""

        def _counts(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                """
                SELECT state, COUNT(*) AS count FROM queue_requests
                WHERE queue = ? GROUP BY state
                """,
                (self.name,),
            ).fetchall()

        counts = {state.value: 0 for state in RequestState}
        for row in await self._connection.execute(_counts):
            counts[row["state"]] = row["count"]
        return counts

    async def list_dead(self, limit: int = 100) -> list[CollectionRequest]:
        """Return dead-lettered requests, most recently failed first."""
        if limit < 1:
            raise InvalidArgumentError(
                "limit must be at least 1", details={"limit": limit}
            )

        def _list(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                """
                SELECT * FROM queue_requests
                WHERE queue = ? AND state = ?
                ORDER BY finished_at DESC, seq DESC
                LIMIT ?
                """,
                (self.name, RequestState.FAILED.value, limit),
            ).fetchall()

        return [CollectionRequest.from_row(row) for row in await self._connection.execute(_list)]

    async def retry_dead(self, request_id: str) -> str:
        """
        Re-submit a dead-lettered request as a fresh request.

        The dead record is left untouched, so attempt counts never decrease.

        Returns:
            The new request ID.

        Raises:
            NotFoundError: If the request does not exist.
            FailedPreconditionError: If the request is not dead-lettered.
        """
        request = await self.get(request_id)
        if request is None:
            raise NotFoundError(
                f"Request not found: {request_id}",
                details={"request_id": request_id},
            )
        if request.state != RequestState.FAILED:
            raise FailedPreconditionError(
                f"Request is not dead-lettered: {request_id}",
                details={"request_id": request_id, "state": request.state.value},
            )
        new_id = await self.enqueue(
            request.job_kind,
            request.payload,
            EnqueueOptions(priority=request.priority),
        )
        logger.info(
            "Dead request re-submitted",
            extra={"queue": self.name, "request_id": request_id, "new_request_id": new_id},
        )
        return new_id

    async def __aenter__(self) -> WorkQueue:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
