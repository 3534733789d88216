"""
Tests for the collection request producer.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from resource_status.jobqueue import RequestState, WorkQueue
from resource_status.producer import (
    JOB_KIND_MANUAL,
    JOB_KIND_SCHEDULED,
    CollectionProducer,
)

NOW = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def queue(temp_dir: Path) -> AsyncIterator[WorkQueue]:
    async with WorkQueue(temp_dir / "queue.db") as queue:
        yield queue


@pytest.fixture
def producer(queue: WorkQueue) -> CollectionProducer:
    return CollectionProducer(queue, clock=lambda: NOW)


class TestCollectionProducer:
    """Tests for CollectionProducer."""

    @pytest.mark.asyncio
    async def test_manual_request(self, queue: WorkQueue, producer: CollectionProducer) -> None:
        request_id = await producer.enqueue_manual()

        request = await queue.get(request_id)

        assert request.job_kind == JOB_KIND_MANUAL
        assert request.payload == {
            "jobKind": JOB_KIND_MANUAL,
            "timestamp": "2024-01-01T06:00:00+00:00",
        }
        assert request.priority == 1
        assert request.state == RequestState.WAITING

    @pytest.mark.asyncio
    async def test_scheduled_request_uses_fire_time_in_utc(
        self, queue: WorkQueue, producer: CollectionProducer
    ) -> None:
        fire_time = datetime(2024, 1, 2, 6, 0, tzinfo=ZoneInfo("Asia/Jakarta"))

        request = await queue.get(await producer.enqueue_scheduled(fire_time))

        assert request.job_kind == JOB_KIND_SCHEDULED
        assert request.payload["timestamp"] == "2024-01-01T23:00:00+00:00"
        assert request.requested_at == fire_time

    @pytest.mark.asyncio
    async def test_naive_timestamp_taken_as_utc(
        self, queue: WorkQueue, producer: CollectionProducer
    ) -> None:
        request_id = await producer.enqueue(JOB_KIND_SCHEDULED, datetime(2024, 3, 1, 12, 0))

        request = await queue.get(request_id)

        assert request.payload["timestamp"] == "2024-03-01T12:00:00+00:00"

    @pytest.mark.asyncio
    async def test_configured_priority(self, queue: WorkQueue) -> None:
        producer = CollectionProducer(queue, priority=7)
        request = await queue.get(await producer.enqueue_manual())
        assert request.priority == 7
