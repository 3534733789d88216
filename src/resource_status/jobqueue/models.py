"""
Data models for the durable work queue.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from resource_status.errors import InvalidArgumentError
from resource_status.store.models import from_timestamp


class RequestState(str, Enum):
    """
    Lifecycle states of a queued request.

    State transitions:
    - waiting/delayed → active (claimed by a worker)
    - active → completed (ack)
    - active → delayed (nack with attempts left)
    - active → failed (nack with attempts exhausted; terminal)
    - active → active (lease expired, reclaimed by a worker)
    - active → failed (lease expired more than max_stalled times, or the
      stored row cannot be decoded)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential retry delay.

    Attributes:
        base_delay_ms: Delay after the first failed attempt.
    """

    base_delay_ms: int = 2000

    def delay_ms(self, attempt: int) -> int:
        """Delay imposed after the ``attempt``-th failure (1-based)."""
        if attempt < 1:
            raise InvalidArgumentError(
                "attempt must be at least 1", details={"attempt": attempt}
            )
        return self.base_delay_ms * 2 ** (attempt - 1)


@dataclass(frozen=True)
class EnqueueOptions:
    """Per-request enqueue options.

    Attributes:
        priority: Lower values are served first.
        delay_ms: Time before the request becomes claimable.
    """

    priority: int = 1
    delay_ms: int = 0


@dataclass(frozen=True)
class AckHandle:
    """Proof of a claim, required to ack or nack a request.

    Attributes:
        request_id: The claimed request.
        lease_token: Token written by the claim; a reclaim replaces it.
        worker_id: Identifier of the claiming worker.
    """

    request_id: str
    lease_token: str
    worker_id: str


def _decode_column(row: Any, column: str) -> Any:
    try:
        return json.loads(row[column])
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(
            f"Stored {column} is not valid JSON",
            details={"request_id": row["id"], "column": column},
        ) from e


@dataclass
class CollectionRequest:
    """A queued unit of work.

    Attributes:
        id: Unique request ID, assigned at enqueue time.
        job_kind: Distinguishes scheduled from manual triggers.
        payload: Enqueue payload (``{"jobKind", "timestamp"}``).
        state: Current lifecycle state.
        priority: Lower values are served first.
        attempts: Failed attempts so far.
        stalled_count: Reclaims after an expired lease.
        max_attempts: Attempts allowed before dead-lettering.
        backoff: Retry delay policy.
        available_at: Unix time the request becomes claimable.
        created_at: Unix time of enqueue.
        updated_at: Unix time of the last transition.
        lease_until: Unix time the current claim expires.
        worker_id: Worker holding the claim.
        last_error: Normalized error of the last failed attempt.
        finished_at: Unix time of completion or dead-lettering.
    """

    id: str
    job_kind: str
    payload: dict[str, Any]
    state: RequestState
    priority: int
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy
    available_at: float
    created_at: float
    updated_at: float
    lease_until: float | None = None
    worker_id: str | None = None
    last_error: dict[str, Any] | None = field(default=None)
    finished_at: float | None = None
    stalled_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in (RequestState.COMPLETED, RequestState.FAILED)

    @property
    def requested_at(self) -> datetime | None:
        """
        The timestamp carried in the payload, if any.

        Raises:
            InvalidArgumentError: If the payload timestamp is malformed.
        """
        value = self.payload.get("timestamp")
        if value is None:
            return None
        if not isinstance(value, str):
            raise InvalidArgumentError(
                "Payload timestamp must be an ISO-8601 string",
                details={"request_id": self.id, "timestamp": repr(value)},
            )
        try:
            return datetime.fromisoformat(value)
        except ValueError as e:
            raise InvalidArgumentError(
                f"Malformed payload timestamp: {value}",
                details={"request_id": self.id},
            ) from e

    @classmethod
    def from_row(cls, row: Any) -> CollectionRequest:
        """
        Build a request from a ``queue_requests`` row.

        Raises:
            InvalidArgumentError: If the stored payload or last error is not
                valid JSON.
        """
        payload = _decode_column(row, "payload")
        last_error = _decode_column(row, "last_error") if row["last_error"] else None
        return cls(
            id=row["id"],
            job_kind=row["job_kind"],
            payload=payload,
            state=RequestState(row["state"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff=BackoffPolicy(base_delay_ms=row["backoff_delay_ms"]),
            available_at=row["available_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            lease_until=row["lease_until"],
            worker_id=row["worker_id"],
            last_error=last_error,
            finished_at=row["finished_at"],
            stalled_count=row["stalled_count"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""

        def _iso(value: float | None) -> str | None:
            return from_timestamp(value).isoformat() if value is not None else None

        return {
            "id": self.id,
            "job_kind": self.job_kind,
            "payload": self.payload,
            "state": self.state.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "stalled_count": self.stalled_count,
            "max_attempts": self.max_attempts,
            "backoff_delay_ms": self.backoff.base_delay_ms,
            "available_at": _iso(self.available_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "lease_until": _iso(self.lease_until),
            "worker_id": self.worker_id,
            "last_error": self.last_error,
            "finished_at": _iso(self.finished_at),
        }
