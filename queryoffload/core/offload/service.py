import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from queryoffload.core import models
from queryoffload.core.config import Settings
from queryoffload.core.database import create_engine_for
from queryoffload.core.exceptions import (
    AlreadyInitializedError,
    MetadataLookupError,
    NotInitializedError,
)
from queryoffload.core.offload.admission import AdmissionGate
from queryoffload.core.offload.executor import JobExecutor
from queryoffload.core.offload.notifications import (
    JobEvent,
    JobListener,
    NotificationBus,
)
from queryoffload.core.offload.queue import JobQueue
from queryoffload.core.offload.sweeper import CleanupSweeper
from queryoffload.core.offload.workers import WorkerPool

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    NEW = "new"
    RUNNING = "running"
    CLOSED = "closed"


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    status: str  # waiting | active | completed | failed | unknown
    table_name: Optional[str] = None
    error: Optional[str] = None


class QueryOffload:
    """
    Handle owning every resource of the offload engine: engines, queue,
    worker pool, sweeper task and notification bus.

    Build one per process from a Settings object, ``initialize`` it once and
    ``shutdown`` it at exit. A closed handle cannot be initialized again.

    Example:
        async with QueryOffload(settings) as offload:
            job_id = await offload.create_query_job("SELECT 1 AS x")
            event = await offload.wait_for_job(job_id, timeout=30)
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.state = ServiceState.NEW
        self.bus = NotificationBus()

        self.engine = None
        self.queue_engine = None
        self.queue: Optional[JobQueue] = None
        self.gate: Optional[AdmissionGate] = None
        self.executor: Optional[JobExecutor] = None
        self.workers: Optional[WorkerPool] = None
        self.sweeper: Optional[CleanupSweeper] = None

    @property
    def initialized(self) -> bool:
        return self.state is ServiceState.RUNNING

    # =========================
    # Lifecycle
    # =========================
    async def initialize(self) -> None:
        if self.state is not ServiceState.NEW:
            raise AlreadyInitializedError()
        self.state = ServiceState.RUNNING

        settings = self.settings
        self.engine = create_engine_for(settings)
        if settings.QUEUE_DATABASE_URL:
            self.queue_engine = create_engine_for(
                settings, url=settings.queue_database_url, pool_size=settings.CONCURRENCY + 1
            )
        else:
            self.queue_engine = self.engine

        self.queue = JobQueue(
            self.queue_engine,
            settings.QUEUE_NAME,
            remove_on_complete=settings.QUEUE_REMOVE_ON_COMPLETE,
            remove_on_fail=settings.QUEUE_REMOVE_ON_FAIL,
        )
        self.gate = AdmissionGate(self.queue, settings.MAX_QUEUE_SIZE)
        self.executor = JobExecutor(
            self.engine,
            self.bus,
            table_prefix=settings.RESULT_TABLE_PREFIX,
            statement_timeout=settings.STATEMENT_TIMEOUT_SECONDS,
            insert_batch_size=settings.INSERT_BATCH_SIZE,
        )
        self.workers = WorkerPool(
            self.queue,
            self.executor,
            concurrency=settings.CONCURRENCY,
            poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
        )
        self.sweeper = CleanupSweeper(
            self.engine,
            ttl_hours=settings.TABLE_TTL_HOURS,
            interval_seconds=settings.cleanup_interval_seconds,
        )

        try:
            await self.queue.setup()
            async with self.engine.begin() as conn:
                await conn.run_sync(models.JobMetadata.__table__.create, checkfirst=True)
        except Exception:
            await self.shutdown()
            raise

        self.workers.start()
        self.sweeper.start()
        logger.info(
            f"QueryOffload running: concurrency={settings.CONCURRENCY}, "
            f"max_queue_size={settings.MAX_QUEUE_SIZE}, ttl={settings.TABLE_TTL_HOURS}h"
        )

    async def shutdown(self) -> None:
        """Stop the sweeper, then the workers, then close the pools. Safe to call twice."""
        if self.state is ServiceState.CLOSED:
            return
        self.state = ServiceState.CLOSED

        if self.sweeper is not None:
            await self.sweeper.stop()
        if self.workers is not None:
            await self.workers.stop()
        if self.queue_engine is not None and self.queue_engine is not self.engine:
            await self.queue_engine.dispose()
        if self.engine is not None:
            await self.engine.dispose()
        self.bus.close()
        logger.info("QueryOffload shut down")

    async def __aenter__(self) -> "QueryOffload":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # =========================
    # Submission / lookup
    # =========================
    async def create_query_job(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> str:
        """
        Admit a read-only query for asynchronous materialization.

        Raises:
            QueueFullError, ValidationError, EnqueueError, NotInitializedError
        """
        self._ensure_running()
        return await self.gate.submit(query, params)

    async def get_table_name_for_job(self, job_id: str) -> Optional[str]:
        """Return the result table of a completed job, or None if there is none."""
        self._ensure_running()
        query = select(models.JobMetadata.table_name).where(
            models.JobMetadata.job_id == job_id
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(query)
                return result.scalar_one_or_none()
        except SQLAlchemyError as error:
            raise MetadataLookupError(str(error)) from error

    async def get_job_status(self, job_id: str) -> JobStatus:
        table_name = await self.get_table_name_for_job(job_id)
        if table_name is not None:
            return JobStatus(job_id=job_id, status="completed", table_name=table_name)

        entry = await self.queue.entry_status(job_id)
        if entry is None:
            return JobStatus(job_id=job_id, status="unknown")

        status, error = entry
        return JobStatus(job_id=job_id, status=status, error=error)

    async def queue_depth(self) -> int:
        self._ensure_running()
        return await self.queue.waiting_count()

    # =========================
    # Notifications
    # =========================
    def watch(self, job_id: str) -> asyncio.Future:
        """Future resolved with the job's terminal event. No replay of past events."""
        return self.bus.watch(job_id)

    def unwatch(self, job_id: str, future: asyncio.Future) -> None:
        self.bus.unwatch(job_id, future)

    def add_listener(self, job_id: str, listener: JobListener) -> bool:
        return self.bus.add_listener(job_id, listener)

    def remove_listener(self, job_id: str, listener: JobListener) -> None:
        self.bus.remove_listener(job_id, listener)

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> JobEvent:
        return await self.bus.wait_for(job_id, timeout)

    def _ensure_running(self) -> None:
        if self.state is not ServiceState.RUNNING:
            raise NotInitializedError()
