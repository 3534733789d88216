"""
Tests for the collection worker.

This test module validates:
- The collect, persist, ack path for a claimed request
- Nack on source, payload and store failures
- Dead-lettering after repeated failures
- Completed/failed listeners
- Background run loop start/stop, surviving bad rows and unexpected errors
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio

from resource_status.errors import ErrorRecord, MetricsSourceError
from resource_status.jobqueue import RequestState, WorkQueue
from resource_status.metrics import DiskUsage, RawMetrics
from resource_status.producer import JOB_KIND_MANUAL, CollectionProducer
from resource_status.store import SampleStore
from resource_status.worker import CollectionWorker, WorkerPhase

from conftest import FakeClock

MB = 1024 * 1024
REQUESTED_AT = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)


def healthy_source() -> RawMetrics:
    return RawMetrics(
        cpu_load=12.5,
        memory_used_bytes=2048 * MB,
        memory_total_bytes=8192 * MB,
        disks=[
            DiskUsage(mount="/boot", total_bytes=512 * MB, used_bytes=100 * MB),
            DiskUsage(mount="/", total_bytes=60000 * MB, used_bytes=15000 * MB),
        ],
    )


def failing_source() -> RawMetrics:
    raise MetricsSourceError("psutil unavailable")


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def queue(temp_dir: Path, fake_clock: FakeClock) -> AsyncIterator[WorkQueue]:
    async with WorkQueue(
        temp_dir / "queue.db",
        lease_seconds=60.0,
        poll_interval=0.01,
        clock=fake_clock,
    ) as queue:
        yield queue


@pytest_asyncio.fixture
async def store(temp_dir: Path) -> AsyncIterator[SampleStore]:
    async with SampleStore(temp_dir / "samples.db") as store:
        yield store


@pytest.fixture
def producer(queue: WorkQueue) -> CollectionProducer:
    return CollectionProducer(queue, clock=lambda: REQUESTED_AT)


# =============================================================================
# Tests for the request state machine
# =============================================================================


class TestProcess:
    """Tests for processing one request."""

    @pytest.mark.asyncio
    async def test_success_persists_and_acks(
        self, queue: WorkQueue, store: SampleStore, producer: CollectionProducer
    ) -> None:
        request_id = await producer.enqueue_manual()
        worker = CollectionWorker(queue, store, source=healthy_source, worker_id="w1")
        completed: list[str] = []
        worker.on_completed(completed.append)

        assert await worker.process_next(timeout=0) is True

        assert await store.count() == 1
        sample = await store.latest()
        assert sample.cpu_usage == 12.5
        assert sample.memory_used_mb == 2048
        assert sample.memory_total_mb == 8192
        assert sample.disk_used_mb == 15000
        assert sample.disk_total_mb == 60000
        assert sample.created_at == REQUESTED_AT

        request = await queue.get(request_id)
        assert request.state == RequestState.COMPLETED
        assert completed == [request_id]

        stats = worker.stats()
        assert stats.processed == 1
        assert stats.completed == 1
        assert stats.failed == 0
        assert stats.last_request_id == request_id
        assert stats.phase == WorkerPhase.IDLE

    @pytest.mark.asyncio
    async def test_missing_timestamp_uses_worker_clock(
        self, queue: WorkQueue, store: SampleStore
    ) -> None:
        now = datetime(2024, 2, 1, 12, 0, tzinfo=UTC)
        await queue.enqueue(JOB_KIND_MANUAL, {"jobKind": JOB_KIND_MANUAL})
        worker = CollectionWorker(queue, store, source=healthy_source, clock=lambda: now)

        assert await worker.process_next(timeout=0) is True
        assert (await store.latest()).created_at == now

    @pytest.mark.asyncio
    async def test_source_failure_nacks(
        self, queue: WorkQueue, store: SampleStore, producer: CollectionProducer
    ) -> None:
        request_id = await producer.enqueue_manual()
        worker = CollectionWorker(queue, store, source=failing_source)
        failures: list[tuple[str, ErrorRecord]] = []
        worker.on_failed(lambda rid, error: failures.append((rid, error)))

        assert await worker.process_next(timeout=0) is False

        assert await store.count() == 0
        request = await queue.get(request_id)
        assert request.state == RequestState.DELAYED
        assert request.attempts == 1
        assert request.last_error["name"] == "MetricsSourceError"
        assert failures[0][0] == request_id
        assert failures[0][1].message == "psutil unavailable"
        assert worker.stats().failed == 1

    @pytest.mark.asyncio
    async def test_no_disks_nacks(self, queue: WorkQueue, store: SampleStore) -> None:
        def no_disks() -> RawMetrics:
            return RawMetrics(cpu_load=1.0, memory_used_bytes=MB, memory_total_bytes=MB)

        request_id = await queue.enqueue(JOB_KIND_MANUAL, {"jobKind": JOB_KIND_MANUAL})
        worker = CollectionWorker(queue, store, source=no_disks)

        assert await worker.process_next(timeout=0) is False
        assert (await queue.get(request_id)).last_error["name"] == "MetricsSourceError"

    @pytest.mark.asyncio
    async def test_malformed_timestamp_nacks(
        self, queue: WorkQueue, store: SampleStore
    ) -> None:
        request_id = await queue.enqueue(
            JOB_KIND_MANUAL, {"jobKind": JOB_KIND_MANUAL, "timestamp": "yesterday"}
        )
        worker = CollectionWorker(queue, store, source=healthy_source)

        assert await worker.process_next(timeout=0) is False

        request = await queue.get(request_id)
        assert request.last_error["name"] == "InvalidArgumentError"
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(
        self,
        queue: WorkQueue,
        store: SampleStore,
        producer: CollectionProducer,
        fake_clock: FakeClock,
    ) -> None:
        request_id = await producer.enqueue_manual()
        worker = CollectionWorker(queue, store, source=failing_source)

        for _ in range(queue.max_attempts):
            assert await worker.process_next(timeout=0) is False
            fake_clock.advance(60)

        request = await queue.get(request_id)
        assert request.state == RequestState.FAILED
        assert request.attempts == queue.max_attempts
        assert await worker.process_next(timeout=0) is None
        assert [r.id for r in await queue.list_dead()] == [request_id]

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_failure(
        self,
        queue: WorkQueue,
        store: SampleStore,
        producer: CollectionProducer,
        fake_clock: FakeClock,
    ) -> None:
        calls = 0

        def flaky_source() -> RawMetrics:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise MetricsSourceError("transient")
            return healthy_source()

        request_id = await producer.enqueue_manual()
        worker = CollectionWorker(queue, store, source=flaky_source)

        assert await worker.process_next(timeout=0) is False
        fake_clock.advance(60)
        assert await worker.process_next(timeout=0) is True

        request = await queue.get(request_id)
        assert request.state == RequestState.COMPLETED
        assert request.attempts == 1
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_lost_lease_is_not_acked(
        self,
        queue: WorkQueue,
        store: SampleStore,
        producer: CollectionProducer,
        fake_clock: FakeClock,
    ) -> None:
        await producer.enqueue_manual()
        request, handle = await queue.try_dequeue("slow-worker")
        fake_clock.advance(61)
        assert await queue.try_dequeue("other-worker") is not None

        worker = CollectionWorker(queue, store, source=healthy_source)
        completed: list[str] = []
        worker.on_completed(completed.append)

        assert await worker.process(request, handle) is False
        assert completed == []
        assert worker.stats().completed == 0
        assert (await queue.get(request.id)).worker_id == "other-worker"

    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, queue: WorkQueue, store: SampleStore) -> None:
        worker = CollectionWorker(queue, store, source=healthy_source)
        assert await worker.process_next(timeout=0.01) is None
        assert worker.stats().processed == 0


class TestListeners:
    """Tests for completion and failure listeners."""

    @pytest.mark.asyncio
    async def test_async_listener_awaited(
        self, queue: WorkQueue, store: SampleStore, producer: CollectionProducer
    ) -> None:
        seen: list[str] = []

        async def listener(request_id: str) -> None:
            await asyncio.sleep(0)
            seen.append(request_id)

        request_id = await producer.enqueue_manual()
        worker = CollectionWorker(queue, store, source=healthy_source)
        worker.on_completed(listener)

        await worker.process_next(timeout=0)

        assert seen == [request_id]

    @pytest.mark.asyncio
    async def test_listener_error_does_not_fail_request(
        self, queue: WorkQueue, store: SampleStore, producer: CollectionProducer
    ) -> None:
        def broken(request_id: str) -> None:
            raise RuntimeError("listener broke")

        request_id = await producer.enqueue_manual()
        worker = CollectionWorker(queue, store, source=healthy_source)
        worker.on_completed(broken)

        assert await worker.process_next(timeout=0) is True
        assert (await queue.get(request_id)).state == RequestState.COMPLETED


# =============================================================================
# Tests for lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for the background run loop."""

    @pytest.mark.asyncio
    async def test_start_processes_until_stopped(
        self, queue: WorkQueue, store: SampleStore, producer: CollectionProducer
    ) -> None:
        done = asyncio.Event()
        worker = CollectionWorker(queue, store, source=healthy_source)
        worker.on_completed(lambda request_id: done.set())

        await worker.start()
        assert worker.is_running
        await producer.enqueue_manual()
        await asyncio.wait_for(done.wait(), timeout=5.0)
        await worker.stop(timeout=5.0)

        assert not worker.is_running
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, queue: WorkQueue, store: SampleStore) -> None:
        worker = CollectionWorker(queue, store)
        await worker.stop()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_corrupt_row_does_not_stop_loop(
        self,
        queue: WorkQueue,
        store: SampleStore,
        producer: CollectionProducer,
        temp_dir: Path,
    ) -> None:
        bad_id = await producer.enqueue_manual()
        conn = sqlite3.connect(temp_dir / "queue.db")
        try:
            conn.execute(
                "UPDATE queue_requests SET payload = ? WHERE id = ?", ("{not json", bad_id)
            )
            conn.commit()
        finally:
            conn.close()
        good_id = await producer.enqueue_manual()

        completed: list[str] = []
        done = asyncio.Event()

        def on_completed(request_id: str) -> None:
            completed.append(request_id)
            done.set()

        worker = CollectionWorker(queue, store, source=healthy_source)
        worker.on_completed(on_completed)

        await worker.start()
        await asyncio.wait_for(done.wait(), timeout=5.0)
        assert worker.is_running
        await worker.stop(timeout=5.0)

        assert completed == [good_id]
        assert (await queue.get(bad_id)).state == RequestState.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_loop(
        self,
        queue: WorkQueue,
        store: SampleStore,
        producer: CollectionProducer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        real_dequeue = queue.dequeue
        calls = 0

        async def flaky_dequeue(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("disk vanished")
            return await real_dequeue(*args, **kwargs)

        monkeypatch.setattr(queue, "dequeue", flaky_dequeue)
        done = asyncio.Event()
        worker = CollectionWorker(queue, store, source=healthy_source)
        worker.on_completed(lambda request_id: done.set())

        await worker.start()
        await producer.enqueue_manual()
        await asyncio.wait_for(done.wait(), timeout=5.0)
        assert worker.is_running
        await worker.stop(timeout=5.0)

        assert calls >= 2
        assert await store.count() == 1
