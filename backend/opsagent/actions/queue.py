"""In-process job queue used to retry actions after a delay."""

import asyncio
import logging
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..utils import new_id, utc_now

logger = logging.getLogger(__name__)

PRIORITY_QUEUE = "agent-actions-priority"
DEFAULT_QUEUE = "agent-actions"


def route_queue(priority: int) -> str:
    return PRIORITY_QUEUE if priority >= 4 else DEFAULT_QUEUE


@dataclass
class QueueJob:
    task_id: str
    org_id: str
    priority: int = 3
    correlation_id: Optional[str] = None
    attempt: int = 1
    delay_s: float = 0.0
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("job"))
    enqueued_at: datetime = field(default_factory=utc_now)

    @property
    def queue(self) -> str:
        return route_queue(self.priority)


JobRunner = Callable[[QueueJob], Awaitable[Any]]


class InMemoryJobQueue:
    """Runs each job on its own asyncio task after its delay.

    Enough for a single process; there is no persistence, so pending jobs are
    lost on shutdown.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._counters: dict[str, Counter[str]] = defaultdict(Counter)

    def enqueue(self, job: QueueJob, runner: JobRunner) -> QueueJob:
        self._counters[job.queue]["enqueued"] += 1
        task = asyncio.get_running_loop().create_task(self._run(job, runner))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        logger.info(
            "job enqueued queue=%s task=%s attempt=%s delay=%.2fs",
            job.queue,
            job.task_id,
            job.attempt,
            job.delay_s,
        )
        return job

    async def _run(self, job: QueueJob, runner: JobRunner) -> None:
        counters = self._counters[job.queue]
        if job.delay_s > 0:
            await asyncio.sleep(job.delay_s)
        counters["active"] += 1
        try:
            await runner(job)
            counters["completed"] += 1
        except Exception:
            counters["failed"] += 1
            logger.exception("job failed queue=%s task=%s", job.queue, job.task_id)
        finally:
            counters["active"] -= 1

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every job, including ones enqueued while draining, has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def stats(self) -> dict[str, dict[str, int]]:
        return {name: dict(counter) for name, counter in self._counters.items()}
