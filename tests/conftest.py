import asyncio
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from queryoffload.api.deps import get_offload
from queryoffload.core.config import Settings, settings
from queryoffload.core.exceptions import QueueFullError
from queryoffload.core.offload.executor import table_name_for_job
from queryoffload.core.offload.notifications import NotificationBus
from queryoffload.core.offload.service import JobStatus, QueryOffload
from queryoffload.core.offload.validator import validate_select_query
from queryoffload.main import app

# Force to use a test db for tests
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", settings.DATABASE_URL + "_test")


# Database-backed tests are skipped when the test database cannot be reached
@pytest.fixture(scope="session")
def database_available():
    async def ping():
        engine = create_async_engine(TEST_DATABASE_URL)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        finally:
            await engine.dispose()

    try:
        asyncio.run(ping())
    except Exception as error:
        pytest.skip(f"Test database unavailable at {TEST_DATABASE_URL}: {error}")


@pytest.fixture
def test_settings(database_available):
    # A private queue name per test keeps queue depth independent between tests
    return Settings(
        _env_file=None,
        DATABASE_URL=TEST_DATABASE_URL,
        QUEUE_NAME=f"test_{uuid.uuid4().hex[:12]}",
        CONCURRENCY=2,
        MAX_QUEUE_SIZE=10,
        QUEUE_POLL_INTERVAL_SECONDS=0.05,
        TABLE_TTL_HOURS=1,
        CLEANUP_INTERVAL_MS=3_600_000,
    )


@pytest_asyncio.fixture
async def engine(database_available):
    engine = create_async_engine(TEST_DATABASE_URL)
    yield engine
    await engine.dispose()


# Running engine handle with workers and sweeper
@pytest_asyncio.fixture
async def offload(test_settings):
    handle = QueryOffload(test_settings)
    await handle.initialize()
    yield handle
    await handle.shutdown()


@pytest.fixture
def table_exists(engine):
    async def check(table_name: str) -> bool:
        async with engine.connect() as conn:
            result = await conn.execute(
                text("SELECT to_regclass(CAST(:name AS text)) IS NOT NULL"),
                {"name": table_name},
            )
            return result.scalar_one()

    return check


@pytest.fixture
def metadata_row_count(engine):
    async def count(job_id: str) -> int:
        async with engine.connect() as conn:
            result = await conn.execute(
                text("SELECT count(*) FROM job_metadata WHERE job_id = :job_id"),
                {"job_id": job_id},
            )
            return result.scalar_one()

    return count


# =========================
# HTTP layer without a database
# =========================
class FakeOffload:
    """In-memory stand-in for QueryOffload used by the HTTP tests."""

    initialized = True

    def __init__(self, max_queue_size: int = 3):
        self.max_queue_size = max_queue_size
        self.bus = NotificationBus()
        self.waiting = {}
        self.failed = {}
        self.tables = {}

    async def create_query_job(self, query, params=None):
        if len(self.waiting) >= self.max_queue_size:
            raise QueueFullError(self.max_queue_size)
        validate_select_query(query)
        job_id = str(uuid.uuid4())
        self.waiting[job_id] = (query, list(params or []))
        return job_id

    async def get_table_name_for_job(self, job_id):
        return self.tables.get(job_id)

    async def get_job_status(self, job_id):
        if job_id in self.tables:
            return JobStatus(job_id=job_id, status="completed", table_name=self.tables[job_id])
        if job_id in self.failed:
            return JobStatus(job_id=job_id, status="failed", error=self.failed[job_id])
        if job_id in self.waiting:
            return JobStatus(job_id=job_id, status="waiting")
        return JobStatus(job_id=job_id, status="unknown")

    async def queue_depth(self):
        return len(self.waiting)

    def watch(self, job_id):
        return self.bus.watch(job_id)

    def unwatch(self, job_id, future):
        self.bus.unwatch(job_id, future)

    def complete(self, job_id):
        self.waiting.pop(job_id, None)
        self.tables[job_id] = table_name_for_job(job_id)
        return self.tables[job_id]


@pytest.fixture
def fake_offload():
    return FakeOffload()


@pytest_asyncio.fixture(scope="function")
async def client(fake_offload):
    app.dependency_overrides[get_offload] = lambda: fake_offload

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# Client with no running handle on app.state
@pytest_asyncio.fixture(scope="function")
async def bare_client():
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
