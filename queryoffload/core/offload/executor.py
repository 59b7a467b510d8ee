import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Column, MetaData, Table
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from queryoffload.core import models
from queryoffload.core.exceptions import CleanupError, ExecutionError
from queryoffload.core.offload.notifications import (
    JobCompleted,
    JobEvent,
    JobFailed,
    NotificationBus,
)
from queryoffload.core.offload.queue import Job
from queryoffload.core.offload.type_mapper import (
    StorageType,
    bind_params,
    coerce_value,
    column_type,
    fetched_as_text,
    map_type,
)

logger = logging.getLogger(__name__)

metadata_table = models.JobMetadata.__table__

DEFAULT_TABLE_PREFIX = "query_results_"


# -----------------------------------------------------------------------------
# EXECUTOR
# Purpose: turn one queued job into one result table:
# probe -> create table -> register metadata -> fetch -> insert -> notify.
# Steps run strictly in that order on a single pooled connection.
# -----------------------------------------------------------------------------


class JobStep:
    CONNECT = "connect"
    PROBE = "probe"
    CREATE_TABLE = "create_table"
    REGISTER = "register"
    FETCH = "fetch"
    INSERT = "insert"
    CLEANUP = "cleanup"


class JobLogger:
    """Step log for a single job run."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.start_time = datetime.now()
        self.step = JobStep.CONNECT
        self.logs: List[Dict[str, Any]] = []

    def log(self, step: str, message: str, level: str = "info"):
        self.step = step
        self.logs.append(
            {
                "timestamp": datetime.now().isoformat(),
                "step": step,
                "message": message,
                "level": level,
                "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
            }
        )

        if level == "error":
            logger.error(f"[Job {self.job_id}] {step}: {message}")
        elif level == "warning":
            logger.warning(f"[Job {self.job_id}] {step}: {message}")
        else:
            logger.debug(f"[Job {self.job_id}] {step}: {message}")

    def get_logs(self) -> List[Dict[str, Any]]:
        return self.logs

    def get_summary(self) -> Dict[str, Any]:
        end_time = datetime.now()
        return {
            "job_id": self.job_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "last_step": self.step,
            "total_logs": len(self.logs),
        }


@dataclass
class ProbedColumn:
    name: str
    type_oid: int

    @property
    def storage_type(self) -> StorageType:
        return map_type(self.type_oid)

    @property
    def fetch_as_text(self) -> bool:
        return fetched_as_text(self.type_oid)


@dataclass
class _JobRun:
    job: Job
    job_log: JobLogger
    table_name: str = ""
    table: Optional[Table] = None
    failed_step: Optional[str] = None
    columns: List[ProbedColumn] = field(default_factory=list)
    params: List[Any] = field(default_factory=list)


def table_name_for_job(job_id: str, prefix: str = DEFAULT_TABLE_PREFIX) -> str:
    """
    Derive the result table name for a job.

    Job ids are UUIDs; the canonical form is used so distinct ids always give
    distinct names (hyphens sit at fixed positions).

    Raises:
        ValueError: if ``job_id`` is not a UUID.
    """
    canonical = str(uuid.UUID(job_id))
    return prefix + canonical.replace("-", "_")


def build_fetch_sql(query: str, columns: Sequence[ProbedColumn]) -> str:
    """
    SQL for the real execution of ``query``.

    Columns whose values must be read in the server's text form are cast in an
    outer select; the derived-table alias list addresses them by position, so
    duplicate or unnamed output columns are fine. Returns ``query`` unchanged
    when nothing needs a cast.
    """
    if not any(column.fetch_as_text for column in columns):
        return query

    aliases = [f"c{index}" for index in range(len(columns))]
    select_list = ", ".join(
        f"q.{alias}::text" if column.fetch_as_text else f"q.{alias}"
        for alias, column in zip(aliases, columns)
    )
    return f"SELECT {select_list} FROM (\n{query}\n) AS q({', '.join(aliases)})"


def build_result_table(
    table_name: str, columns: Sequence[Tuple[str, StorageType]]
) -> Table:
    """
    Build the Table for a result set from ordered (name, storage type) pairs.

    Column keys are positional (``c0``, ``c1``...) so arbitrary output names
    such as ``?column?`` never leak into bind parameter names.
    """
    return Table(
        table_name,
        MetaData(),
        *[
            Column(name, column_type(storage_type), key=f"c{index}")
            for index, (name, storage_type) in enumerate(columns)
        ],
    )


class JobExecutor:
    def __init__(
        self,
        engine: AsyncEngine,
        bus: NotificationBus,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
        statement_timeout: Optional[float] = None,
        insert_batch_size: int = 1000,
    ):
        self.engine = engine
        self.bus = bus
        self.table_prefix = table_prefix
        self.statement_timeout = statement_timeout
        self.insert_batch_size = insert_batch_size

    async def process(self, job: Job) -> JobEvent:
        """
        Materialize ``job`` and publish exactly one terminal event for it.

        Never raises for job failures; the failure travels inside JobFailed.
        """
        run = _JobRun(job=job, job_log=JobLogger(job.id))

        try:
            async with self.engine.connect() as conn:
                try:
                    await self._materialize(conn, run)
                except Exception:
                    run.failed_step = run.job_log.step
                    if run.table is not None:
                        await self._discard(conn, run)
                    raise
        except Exception as error:
            step = run.failed_step or run.job_log.step
            run.job_log.log(step, f"Job failed: {error}", "error")
            trail = " -> ".join(entry["step"] for entry in run.job_log.get_logs())
            logger.warning(f"[Job {job.id}] step trail: {trail}")
            event: JobEvent = JobFailed(
                job_id=job.id, error=ExecutionError(job.id, step, str(error))
            )
        else:
            summary = run.job_log.get_summary()
            logger.info(
                f"[Job {job.id}] completed into {run.table_name} "
                f"in {summary['duration_seconds']:.3f}s"
            )
            event = JobCompleted(job_id=job.id, table_name=run.table_name)

        self.bus.publish(event)
        return event

    async def _materialize(self, conn: AsyncConnection, run: _JobRun) -> None:
        job, job_log = run.job, run.job_log
        raw = await conn.get_raw_connection()
        driver = raw.driver_connection

        # STEP 1: metadata probe
        job_log.log(JobStep.PROBE, "Probing output columns")
        run.columns = await self._probe(driver, run)

        # STEP 2 + 3: name and create the result table
        run.table_name = table_name_for_job(job.id, self.table_prefix)
        job_log.log(
            JobStep.CREATE_TABLE,
            f"Creating {run.table_name} with {len(run.columns)} columns",
        )
        table = build_result_table(
            run.table_name, [(c.name, c.storage_type) for c in run.columns]
        )
        async with conn.begin():
            await conn.run_sync(table.create)
        run.table = table

        # STEP 4: metadata registration
        job_log.log(JobStep.REGISTER, "Registering result table")
        async with conn.begin():
            await conn.run_sync(metadata_table.create, checkfirst=True)
            await conn.execute(
                metadata_table.insert().values(job_id=job.id, table_name=run.table_name)
            )

        # STEP 5: real execution and copy
        job_log.log(JobStep.FETCH, "Executing query")
        records = await driver.fetch(
            build_fetch_sql(job.query, run.columns),
            *run.params,
            timeout=self.statement_timeout,
        )

        job_log.log(JobStep.INSERT, f"Copying {len(records)} rows")
        await self._copy_rows(conn, run, records)

    async def _probe(self, driver, run: _JobRun) -> List[ProbedColumn]:
        """
        Run the query with zero rows requested and read its output columns.

        Also binds the job's params against the parameter types the server
        inferred, for reuse by the real execution.
        """
        probe_sql = f"SELECT * FROM (\n{run.job.query}\n) AS probe LIMIT 0"
        statement = await driver.prepare(probe_sql, timeout=self.statement_timeout)
        run.params = bind_params(
            [parameter.oid for parameter in statement.get_parameters()], run.job.params
        )
        await statement.fetch(*run.params, timeout=self.statement_timeout)
        return [
            ProbedColumn(name=attribute.name, type_oid=attribute.type.oid)
            for attribute in statement.get_attributes()
        ]

    async def _copy_rows(
        self, conn: AsyncConnection, run: _JobRun, records: Sequence[Any]
    ) -> int:
        if not records or not run.columns:
            return 0

        keys = [column.key for column in run.table.columns]
        types = [column.storage_type for column in run.columns]
        rows = [
            {
                key: coerce_value(storage_type, value)
                for key, storage_type, value in zip(keys, types, record)
            }
            for record in records
        ]

        async with conn.begin():
            for start in range(0, len(rows), self.insert_batch_size):
                await conn.execute(
                    run.table.insert(), rows[start : start + self.insert_batch_size]
                )
        return len(rows)

    async def _discard(self, conn: AsyncConnection, run: _JobRun) -> None:
        """Best-effort removal of a partially materialized job."""
        try:
            if conn.in_transaction():
                await conn.rollback()
            async with conn.begin():
                await conn.run_sync(run.table.drop, checkfirst=True)
                await conn.execute(
                    metadata_table.delete().where(metadata_table.c.job_id == run.job.id)
                )
            run.job_log.log(JobStep.CLEANUP, f"Dropped {run.table_name}", "warning")
        except Exception as error:
            failure = CleanupError(run.table_name, str(error))
            run.job_log.log(JobStep.CLEANUP, failure.message, "error")
