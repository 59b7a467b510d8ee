from sqlalchemy import TIMESTAMP, Column, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from queryoffload.core.database import Base


# =========================
# Job metadata (one row per materialized result table)
# =========================
class JobMetadata(Base):
    __tablename__ = "job_metadata"

    job_id = Column(Text, primary_key=True)
    table_name = Column(Text, nullable=False)

    # TTL clock for the cleanup sweeper
    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Queue entry (transport record for a job awaiting a worker)
# =========================
class QueueEntry(Base):
    """
    Durable queue row. Workers claim entries with
    SELECT ... FOR UPDATE SKIP LOCKED, so any number of consumers
    (in any number of processes) can share one queue.
    """

    __tablename__ = "query_queue"

    id = Column(String(36), primary_key=True)
    queue = Column(Text, nullable=False)

    query = Column(Text, nullable=False)
    params = Column(JSONB, nullable=False, server_default="[]")

    status = Column(Text, nullable=False, server_default="waiting")  # waiting | active | completed | failed
    error = Column(Text, nullable=True)

    enqueued_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    finished_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_query_queue_waiting", "queue", "status", "enqueued_at"),
    )
