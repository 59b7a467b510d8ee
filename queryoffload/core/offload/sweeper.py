import asyncio
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import MetaData, Table, func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from queryoffload.core import models
from queryoffload.core.exceptions import CleanupError

logger = logging.getLogger(__name__)

metadata_table = models.JobMetadata.__table__


# -----------------------------------------------------------------------------
# CLEANUP SWEEPER
# Purpose: drop result tables older than the TTL and their metadata rows.
# Runs as its own task with its own connection; eventually consistent with
# workers (a table registered just before a sweep is simply not old enough).
# -----------------------------------------------------------------------------


class CleanupSweeper:
    def __init__(self, engine: AsyncEngine, ttl_hours: float, interval_seconds: float):
        self.engine = engine
        self.ttl_hours = ttl_hours
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="result-table-sweeper")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def sweep_once(self) -> int:
        """
        Remove every expired result table and its metadata row.

        A failing row is logged and skipped.

        Returns:
            Number of jobs whose table and metadata were removed.
        """
        removed = 0
        async with self.engine.connect() as conn:
            async with conn.begin():
                await conn.run_sync(metadata_table.create, checkfirst=True)
                expired = await self._expired(conn)

            for job_id, table_name in expired:
                try:
                    async with conn.begin():
                        result_table = Table(table_name, MetaData())
                        await conn.run_sync(result_table.drop, checkfirst=True)
                        await conn.execute(
                            metadata_table.delete().where(
                                metadata_table.c.job_id == job_id
                            )
                        )
                    removed += 1
                except Exception as error:
                    logger.error(CleanupError(table_name, str(error)).message)

        if expired:
            logger.info(f"Cleanup sweep removed {removed}/{len(expired)} expired result tables")
        return removed

    async def _expired(self, conn) -> List[Tuple[str, str]]:
        cutoff = func.now() - timedelta(hours=self.ttl_hours)
        result = await conn.execute(
            select(models.JobMetadata.job_id, models.JobMetadata.table_name)
            .where(models.JobMetadata.created_at < cutoff)
            .order_by(models.JobMetadata.created_at)
        )
        return [(row.job_id, row.table_name) for row in result]

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error during table cleanup")
