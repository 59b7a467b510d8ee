import logging
import uuid
from typing import Any, Optional, Sequence

from queryoffload.core.exceptions import QueueFullError
from queryoffload.core.offload.queue import Job, JobQueue
from queryoffload.core.offload.validator import validate_select_query

logger = logging.getLogger(__name__)


class AdmissionGate:
    """
    Capacity check + validation in front of the queue.

    The depth check and the enqueue are not atomic: concurrent submitters can
    overshoot ``max_queue_size`` by the number of racing calls.
    """

    def __init__(self, queue: JobQueue, max_queue_size: int):
        self.queue = queue
        self.max_queue_size = max_queue_size

    async def submit(self, query: str, params: Optional[Sequence[Any]] = None) -> str:
        """
        Admit a query and return its new job id.

        Raises:
            QueueFullError: the queue already holds max_queue_size waiting entries.
            ValidationError: the query failed the read-only gate.
            EnqueueError: the transport refused the entry.
        """
        waiting = await self.queue.waiting_count()
        if waiting >= self.max_queue_size:
            raise QueueFullError(self.max_queue_size)

        validate_select_query(query)

        job = Job(id=str(uuid.uuid4()), query=query, params=list(params or []))
        await self.queue.enqueue(job)

        logger.info(f"Job {job.id} admitted ({waiting + 1} waiting)")
        return job.id
