"""
Producer of collection requests.

Both the scheduler and the manual-trigger API endpoint enqueue through
CollectionProducer, so every request carries the same payload shape
(``{"jobKind", "timestamp"}``) and the configured priority with no delay.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from resource_status.jobqueue import EnqueueOptions, WorkQueue
from resource_status.logging import get_logger

logger = get_logger(__name__)

JOB_KIND_SCHEDULED = "collect-resource-usage"
JOB_KIND_MANUAL = "manual-collect-resource-usage"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CollectionProducer:
    """
    Enqueues collection requests.

    Args:
        queue: Work queue to enqueue into.
        priority: Priority of every request (lower runs first).
        clock: Returns the current aware datetime; used for payload timestamps.
    """

    def __init__(
        self,
        queue: WorkQueue,
        *,
        priority: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.queue = queue
        self.priority = priority
        self._clock = clock

    async def enqueue(self, job_kind: str, timestamp: datetime | None = None) -> str:
        """
        Enqueue one collection request.

        Args:
            job_kind: JOB_KIND_SCHEDULED or JOB_KIND_MANUAL.
            timestamp: Time recorded on the resulting sample (default: now).

        Returns:
            The request ID.
        """
        if timestamp is None:
            timestamp = self._clock()
        elif timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        payload = {
            "jobKind": job_kind,
            "timestamp": timestamp.astimezone(UTC).isoformat(),
        }
        request_id = await self.queue.enqueue(
            job_kind,
            payload,
            EnqueueOptions(priority=self.priority, delay_ms=0),
        )
        logger.debug(
            "Collection request produced",
            extra={"request_id": request_id, "job_kind": job_kind},
        )
        return request_id

    async def enqueue_scheduled(self, fire_time: datetime | None = None) -> str:
        """Enqueue a scheduled collection (the scheduler's trigger callback)."""
        return await self.enqueue(JOB_KIND_SCHEDULED, fire_time)

    async def enqueue_manual(self) -> str:
        """Enqueue an on-demand collection."""
        return await self.enqueue(JOB_KIND_MANUAL)
