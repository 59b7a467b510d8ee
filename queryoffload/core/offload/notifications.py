import asyncio
import logging
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


# =========================
# Terminal events
# =========================
@dataclass(frozen=True)
class JobCompleted:
    job_id: str
    table_name: str

    status = "completed"


@dataclass(frozen=True)
class JobFailed:
    job_id: str
    error: Exception

    status = "failed"

    @property
    def message(self) -> str:
        return str(self.error)


JobEvent = Union[JobCompleted, JobFailed]
JobListener = Callable[[JobEvent], None]


class NotificationBus:
    """
    One-shot, per-job event channel.

    Interest is registered per job id, either as a future (``watch``) or a
    callback (``add_listener``). Publishing resolves and forgets every
    registration for that job; nothing is replayed to registrations made
    after the event fired.

    Job ids published recently are remembered (up to ``finished_capacity``) so
    a listener added too late is refused instead of kept forever. Listeners
    for jobs that never publish stay registered until ``remove_listener``.
    """

    def __init__(self, finished_capacity: int = 10000):
        self._waiters: Dict[str, List[asyncio.Future]] = defaultdict(list)
        self._listeners: Dict[str, List[JobListener]] = defaultdict(list)
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self.finished_capacity = finished_capacity

    def watch(self, job_id: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[job_id].append(future)
        return future

    def add_listener(self, job_id: str, listener: JobListener) -> bool:
        """Register ``listener``; False if the job already published its event."""
        if job_id in self._finished:
            logger.debug(f"Job {job_id} already finished; listener not registered")
            return False
        self._listeners[job_id].append(listener)
        return True

    def remove_listener(self, job_id: str, listener: JobListener) -> None:
        listeners = self._listeners.get(job_id)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del self._listeners[job_id]

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> JobEvent:
        """
        Wait for the terminal event of ``job_id``.

        Raises:
            asyncio.TimeoutError: if no event arrives within ``timeout``.
        """
        future = self.watch(job_id)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.unwatch(job_id, future)

    def publish(self, event: JobEvent) -> None:
        self._remember(event.job_id)

        for future in self._waiters.pop(event.job_id, []):
            if not future.done():
                future.set_result(event)

        for listener in self._listeners.pop(event.job_id, []):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener for job {event.job_id} raised")

    def _remember(self, job_id: str) -> None:
        self._finished[job_id] = None
        self._finished.move_to_end(job_id)
        while len(self._finished) > self.finished_capacity:
            self._finished.popitem(last=False)

    def pending(self) -> int:
        return sum(len(waiters) for waiters in self._waiters.values()) + sum(
            len(listeners) for listeners in self._listeners.values()
        )

    def close(self) -> None:
        """Cancel every outstanding waiter and drop all listeners."""
        for waiters in self._waiters.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._waiters.clear()
        self._listeners.clear()
        self._finished.clear()

    def unwatch(self, job_id: str, future: asyncio.Future) -> None:
        """Drop a registration made with ``watch`` (cancelling it if still pending)."""
        if not future.done():
            future.cancel()
        waiters = self._waiters.get(job_id)
        if waiters and future in waiters:
            waiters.remove(future)
            if not waiters:
                del self._waiters[job_id]
