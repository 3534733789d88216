"""
Collection worker.

This module implements the CollectionWorker class that consumes collection
requests one at a time:

    claimed → collecting → persisting → acked | nacked

Collecting reads the metrics source in the default executor. Persisting
normalizes the reading and inserts one sample whose ``created_at`` is the
payload timestamp (or now). Any failure along the way nacks the request
with a normalized ErrorRecord, so the queue's retry and dead-letter policy
applies; nothing raised by a request escapes the worker.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import socket
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from resource_status.errors import ErrorRecord, LeaseLostError, ResourceStatusError
from resource_status.jobqueue import AckHandle, CollectionRequest, WorkQueue
from resource_status.logging import get_logger
from resource_status.metrics import RawMetrics, build_sample, collect_raw_metrics
from resource_status.store import SampleStore

logger = get_logger(__name__)

STOP_TIMEOUT_SECONDS = 30.0

CompletedListener = Callable[[str], Any]
FailedListener = Callable[[str, ErrorRecord], Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class WorkerPhase(str, Enum):
    """Phase of the request currently being processed."""

    IDLE = "idle"
    CLAIMED = "claimed"
    COLLECTING = "collecting"
    PERSISTING = "persisting"
    ACKED = "acked"
    NACKED = "nacked"


@dataclass
class WorkerStats:
    """
    Counters for a worker.

    Attributes:
        processed: Requests taken through the state machine.
        completed: Requests acked.
        failed: Requests nacked.
        last_request_id: Most recently claimed request.
        phase: Current phase.
    """

    processed: int = 0
    completed: int = 0
    failed: int = 0
    last_request_id: str | None = None
    phase: WorkerPhase = WorkerPhase.IDLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "last_request_id": self.last_request_id,
            "phase": self.phase.value,
        }


class CollectionWorker:
    """
    Single-concurrency consumer of collection requests.

    Example:
        >>> worker = CollectionWorker(queue, store)
        >>> worker.on_failed(lambda request_id, error: print(error.message))
        >>> await worker.start()
        >>> ...
        >>> await worker.stop()
    """

    def __init__(
        self,
        queue: WorkQueue,
        store: SampleStore,
        *,
        source: Callable[[], RawMetrics] = collect_raw_metrics,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the worker.

        Args:
            queue: Queue to consume from.
            store: Store samples are written to.
            source: Blocking callable returning a RawMetrics reading.
            worker_id: Identifier recorded on claims (default: host-random).
            clock: Returns the current aware datetime.
        """
        self.queue = queue
        self.store = store
        self.worker_id = worker_id or default_worker_id()
        self._source = source
        self._clock = clock
        self._stats = WorkerStats()
        self._completed_listeners: list[CompletedListener] = []
        self._failed_listeners: list[FailedListener] = []
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stats(self) -> WorkerStats:
        """Return a copy of the worker counters."""
        return WorkerStats(**vars(self._stats))

    def on_completed(self, listener: CompletedListener) -> None:
        """Register a listener called with the request ID after each ack."""
        self._completed_listeners.append(listener)

    def on_failed(self, listener: FailedListener) -> None:
        """Register a listener called with the request ID and error after each nack."""
        self._failed_listeners.append(listener)

    def _set_phase(self, phase: WorkerPhase, request_id: str) -> None:
        self._stats.phase = phase
        logger.debug(
            "Worker phase changed",
            extra={
                "worker_id": self.worker_id,
                "request_id": request_id,
                "phase": phase.value,
            },
        )

    async def _emit(self, listeners: list[Callable[..., Any]], *args: Any) -> None:
        for listener in listeners:
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Worker event listener failed",
                    extra={"worker_id": self.worker_id, "error": str(e)},
                )

    # =========================================================================
    # Request state machine
    # =========================================================================

    async def process(self, request: CollectionRequest, handle: AckHandle) -> bool:
        """
        Take one claimed request through collect, persist and ack/nack.

        Returns:
            True if the request was persisted and acked, False otherwise.
        """
        self._stats.processed += 1
        self._stats.last_request_id = request.id
        self._set_phase(WorkerPhase.CLAIMED, request.id)

        try:
            self._set_phase(WorkerPhase.COLLECTING, request.id)
            raw = await asyncio.get_running_loop().run_in_executor(None, self._source)

            self._set_phase(WorkerPhase.PERSISTING, request.id)
            created_at = request.requested_at or self._clock()
            sample = build_sample(raw, created_at)
            await self.store.insert(sample)
        except Exception as e:
            await self._fail(request, handle, ErrorRecord.from_exception(e))
            return False

        return await self._complete(request, handle, sample.id)

    async def _complete(
        self, request: CollectionRequest, handle: AckHandle, sample_id: int | None
    ) -> bool:
        try:
            await self.queue.ack(handle)
        except LeaseLostError:
            logger.warning(
                "Lease lost before ack; request may be collected again",
                extra={"request_id": request.id, "sample_id": sample_id},
            )
            return False
        except ResourceStatusError as e:
            logger.error(
                "Failed to ack request",
                extra={"request_id": request.id, "error": e.to_dict()},
            )
            return False

        self._set_phase(WorkerPhase.ACKED, request.id)
        self._stats.completed += 1
        logger.info(
            "Collection request completed",
            extra={
                "worker_id": self.worker_id,
                "request_id": request.id,
                "job_kind": request.job_kind,
                "sample_id": sample_id,
            },
        )
        await self._emit(self._completed_listeners, request.id)
        return True

    async def _fail(
        self, request: CollectionRequest, handle: AckHandle, error: ErrorRecord
    ) -> None:
        self._stats.failed += 1
        logger.error(
            "Collection request failed",
            extra={
                "worker_id": self.worker_id,
                "request_id": request.id,
                "attempt": request.attempts + 1,
                "error": error.to_dict(),
            },
        )
        try:
            await self.queue.nack(handle, error)
        except ResourceStatusError as e:
            logger.error(
                "Failed to nack request",
                extra={"request_id": request.id, "error": e.to_dict()},
            )
        self._set_phase(WorkerPhase.NACKED, request.id)
        await self._emit(self._failed_listeners, request.id, error)

    async def process_next(self, timeout: float | None = None) -> bool | None:
        """
        Claim and process one request.

        Returns:
            None if nothing was claimed before ``timeout``, otherwise the
            result of process().
        """
        claimed = await self.queue.dequeue(self.worker_id, timeout=timeout)
        if claimed is None:
            return None
        try:
            return await self.process(*claimed)
        finally:
            self._stats.phase = WorkerPhase.IDLE

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Process requests until stop() is called."""
        logger.info("Worker started", extra={"worker_id": self.worker_id})
        while not self._stop_event.is_set():
            try:
                await self.process_next(timeout=self.queue.poll_interval)
            except ResourceStatusError as e:
                logger.error(
                    "Worker failed to claim a request",
                    extra={"worker_id": self.worker_id, "error": e.to_dict()},
                )
                await self._pause()
            except Exception as e:
                logger.exception(
                    "Worker loop error",
                    extra={
                        "worker_id": self.worker_id,
                        "error": ErrorRecord.from_exception(e).to_dict(),
                    },
                )
                await self._pause()
        logger.info(
            "Worker stopped",
            extra={"worker_id": self.worker_id, **self._stats.to_dict()},
        )

    async def _pause(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                self._stop_event.wait(), timeout=self.queue.poll_interval
            )

    async def start(self) -> None:
        """Run the worker loop as a background task."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self, timeout: float = STOP_TIMEOUT_SECONDS) -> None:
        """
        Stop after the in-flight request finishes.

        If it does not finish within ``timeout`` the task is cancelled; the
        abandoned claim is redelivered once its lease expires.
        """
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Worker did not stop gracefully, cancelling",
                extra={"worker_id": self.worker_id},
            )
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
