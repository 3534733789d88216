"""
Tests for the sample store.

This test module validates:
- SQLite schema creation and initialization
- Appending samples
- Latest, paginated, range and count queries with deterministic ordering
"""

from __future__ import annotations

import tempfile
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from resource_status.errors import FailedPreconditionError, InvalidArgumentError
from resource_status.store import ResourceSample, SampleStore

BASE_TIME = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)

# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Iterator[Path]:
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "samples.db"


@pytest_asyncio.fixture
async def store(temp_db_path: Path) -> SampleStore:
    """Create an initialized SampleStore instance."""
    store = SampleStore(temp_db_path)
    await store.initialize()
    return store


def make_sample(created_at: datetime, cpu: float = 10.0) -> ResourceSample:
    return ResourceSample(
        cpu_usage=cpu,
        memory_used_mb=512,
        memory_total_mb=1024,
        disk_used_mb=100,
        disk_total_mb=1000,
        created_at=created_at,
    )


# =============================================================================
# Tests for Initialization
# =============================================================================


class TestSampleStoreInit:
    """Tests for SampleStore initialization."""

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, temp_db_path: Path) -> None:
        store = SampleStore(temp_db_path)
        assert not temp_db_path.exists()

        await store.initialize()

        assert temp_db_path.exists()

    @pytest.mark.asyncio
    async def test_initialize_creates_parent_dirs(self, temp_db_path: Path) -> None:
        db_path = temp_db_path.parent / "nested" / "path" / "samples.db"
        await SampleStore(db_path).initialize()
        assert db_path.exists()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, temp_db_path: Path) -> None:
        store = SampleStore(temp_db_path)
        await store.initialize()
        await store.initialize()
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_initialize_failure(self, temp_db_path: Path) -> None:
        blocker = temp_db_path.parent / "file"
        blocker.write_text("not a directory")
        store = SampleStore(blocker / "samples.db")

        with pytest.raises(FailedPreconditionError):
            await store.initialize()

    @pytest.mark.asyncio
    async def test_context_manager(self, temp_db_path: Path) -> None:
        async with SampleStore(temp_db_path) as store:
            await store.insert(make_sample(BASE_TIME))
            assert await store.count() == 1


# =============================================================================
# Tests for Insert and Latest
# =============================================================================


class TestInsert:
    """Tests for insert and latest."""

    @pytest.mark.asyncio
    async def test_insert_sets_id(self, store: SampleStore) -> None:
        sample = make_sample(BASE_TIME)
        sample_id = await store.insert(sample)

        assert sample_id == 1
        assert sample.id == 1

    @pytest.mark.asyncio
    async def test_insert_rejects_negative_sizes(self, store: SampleStore) -> None:
        sample = make_sample(BASE_TIME)
        sample.disk_used_mb = -1

        with pytest.raises(InvalidArgumentError) as exc_info:
            await store.insert(sample)
        assert exc_info.value.details == {"disk_used_mb": -1}
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_latest_empty(self, store: SampleStore) -> None:
        assert await store.latest() is None

    @pytest.mark.asyncio
    async def test_latest_returns_newest(self, store: SampleStore) -> None:
        await store.insert(make_sample(BASE_TIME + timedelta(hours=1), cpu=2.0))
        await store.insert(make_sample(BASE_TIME, cpu=1.0))

        latest = await store.latest()

        assert latest is not None
        assert latest.cpu_usage == 2.0
        assert latest.created_at == BASE_TIME + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_naive_datetime_treated_as_utc(self, store: SampleStore) -> None:
        await store.insert(make_sample(datetime(2024, 1, 1, 6, 0)))
        latest = await store.latest()
        assert latest is not None
        assert latest.created_at == BASE_TIME


# =============================================================================
# Tests for Query and Count
# =============================================================================


class TestQuery:
    """Tests for query and count."""

    @pytest_asyncio.fixture
    async def populated(self, store: SampleStore) -> SampleStore:
        for day in range(5):
            await store.insert(make_sample(BASE_TIME + timedelta(days=day), cpu=float(day)))
        return store

    @pytest.mark.asyncio
    async def test_query_newest_first(self, populated: SampleStore) -> None:
        rows = await populated.query()
        assert [r.cpu_usage for r in rows] == [4.0, 3.0, 2.0, 1.0, 0.0]

    @pytest.mark.asyncio
    async def test_query_pagination(self, populated: SampleStore) -> None:
        page = await populated.query(limit=2, offset=2)
        assert [r.cpu_usage for r in page] == [2.0, 1.0]

    @pytest.mark.asyncio
    async def test_query_inclusive_range(self, populated: SampleStore) -> None:
        rows = await populated.query(
            start=BASE_TIME + timedelta(days=1), end=BASE_TIME + timedelta(days=3)
        )
        assert [r.cpu_usage for r in rows] == [3.0, 2.0, 1.0]
        assert await populated.count(
            start=BASE_TIME + timedelta(days=1), end=BASE_TIME + timedelta(days=3)
        ) == 3

    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self, store: SampleStore) -> None:
        await store.insert(make_sample(BASE_TIME, cpu=1.0))
        await store.insert(make_sample(BASE_TIME, cpu=2.0))

        rows = await store.query()

        assert [r.cpu_usage for r in rows] == [2.0, 1.0]
        assert rows[0].id > rows[1].id

    @pytest.mark.asyncio
    async def test_offset_without_limit(self, populated: SampleStore) -> None:
        rows = await populated.query(offset=3)
        assert [r.cpu_usage for r in rows] == [1.0, 0.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 1001])
    async def test_invalid_limit(self, store: SampleStore, limit: int) -> None:
        with pytest.raises(InvalidArgumentError):
            await store.query(limit=limit)

    @pytest.mark.asyncio
    async def test_negative_offset(self, store: SampleStore) -> None:
        with pytest.raises(InvalidArgumentError):
            await store.query(offset=-1)

    @pytest.mark.asyncio
    async def test_to_dict_row_shape(self, store: SampleStore) -> None:
        await store.insert(make_sample(BASE_TIME))
        latest = await store.latest()

        assert latest is not None
        assert latest.to_dict() == {
            "id": 1,
            "cpu_usage": 10.0,
            "memory_used_mb": 512,
            "memory_total_mb": 1024,
            "disk_used_mb": 100,
            "disk_total_mb": 1000,
            "created_at": "2024-01-01T06:00:00+00:00",
        }
