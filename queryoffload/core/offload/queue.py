import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from queryoffload.core import models
from queryoffload.core.database import create_session_factory
from queryoffload.core.exceptions import EnqueueError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# JOB QUEUE
# Purpose: durable FIFO holding area between admission and the worker pool,
# kept in a Postgres table. Claiming uses FOR UPDATE SKIP LOCKED so many
# submitters and many consumers can share it.
# -----------------------------------------------------------------------------


class EntryStatus:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Job:
    """A unit of query work as it travels through the queue."""

    id: str
    query: str
    params: List[Any] = field(default_factory=list)


class JobQueue:
    def __init__(
        self,
        engine: AsyncEngine,
        name: str,
        remove_on_complete: bool = True,
        remove_on_fail: bool = False,
    ):
        self.engine = engine
        self.name = name
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self._sessions = create_session_factory(engine)

    async def setup(self) -> None:
        """Create the transport table if it does not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(models.QueueEntry.__table__.create, checkfirst=True)

    async def waiting_count(self) -> int:
        """Number of entries not yet picked up by a worker."""
        query = select(func.count()).where(
            models.QueueEntry.queue == self.name,
            models.QueueEntry.status == EntryStatus.WAITING,
        )
        async with self._sessions() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def enqueue(self, job: Job) -> None:
        entry = models.QueueEntry(
            id=job.id,
            queue=self.name,
            query=job.query,
            params=list(job.params),
            status=EntryStatus.WAITING,
        )
        try:
            async with self._sessions() as session:
                session.add(entry)
                await session.commit()
        except (SQLAlchemyError, TypeError, ValueError) as error:
            # TypeError/ValueError: params that cannot be stored as JSON
            raise EnqueueError(str(error)) from error

    async def claim(self) -> Optional[Job]:
        """
        Take the oldest waiting entry and mark it active.

        Returns:
            The claimed Job, or None when nothing is waiting.
        """
        query = (
            select(models.QueueEntry)
            .where(
                models.QueueEntry.queue == self.name,
                models.QueueEntry.status == EntryStatus.WAITING,
            )
            .order_by(models.QueueEntry.enqueued_at, models.QueueEntry.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        async with self._sessions() as session:
            async with session.begin():
                entry = (await session.execute(query)).scalar_one_or_none()
                if entry is None:
                    return None

                entry.status = EntryStatus.ACTIVE
                entry.started_at = func.now()
                return Job(id=entry.id, query=entry.query, params=list(entry.params or []))

    async def mark_completed(self, job_id: str) -> None:
        if self.remove_on_complete:
            await self._delete(job_id)
        else:
            await self._finish(job_id, EntryStatus.COMPLETED, None)

    async def mark_failed(self, job_id: str, error: str) -> None:
        if self.remove_on_fail:
            await self._delete(job_id)
        else:
            await self._finish(job_id, EntryStatus.FAILED, error)

    async def entry_status(self, job_id: str) -> Optional[Tuple[str, Optional[str]]]:
        """Return ``(status, error)`` for a job still present in the queue."""
        query = select(models.QueueEntry.status, models.QueueEntry.error).where(
            models.QueueEntry.id == job_id,
            models.QueueEntry.queue == self.name,
        )
        async with self._sessions() as session:
            row = (await session.execute(query)).first()
        if row is None:
            return None
        return row.status, row.error

    async def _delete(self, job_id: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                delete(models.QueueEntry).where(models.QueueEntry.id == job_id)
            )
            await session.commit()

    async def _finish(self, job_id: str, status: str, error: Optional[str]) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(models.QueueEntry)
                .where(models.QueueEntry.id == job_id)
                .values(status=status, error=error, finished_at=func.now())
            )
            await session.commit()
