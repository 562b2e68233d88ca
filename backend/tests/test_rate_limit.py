"""Fixed-window rate limiter and job queue routing."""

import asyncio

import pytest

from opsagent.actions.queue import DEFAULT_QUEUE, PRIORITY_QUEUE, InMemoryJobQueue, QueueJob, route_queue
from opsagent.rate_limit import FixedWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_window_counts_and_resets():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(2, 60, clock=clock)

    assert limiter.hit("org-1").allowed is True
    second = limiter.hit("org-1")
    assert second.allowed is True and second.remaining == 0
    assert limiter.hit("org-1").allowed is False
    assert limiter.hit("org-2").allowed is True
    assert limiter.peek("org-1") == 2

    clock.now += 60
    assert limiter.peek("org-1") == 0
    assert limiter.hit("org-1").allowed is True


def test_denied_hits_do_not_consume():
    limiter = FixedWindowRateLimiter(1, 60, clock=FakeClock())
    limiter.hit("k")
    limiter.hit("k")
    assert limiter.peek("k") == 1
    limiter.reset("k")
    assert limiter.peek("k") == 0


def test_invalid_configuration():
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(0, 60)


def test_queue_routing_and_stats():
    assert route_queue(5) == PRIORITY_QUEUE
    assert route_queue(4) == PRIORITY_QUEUE
    assert route_queue(3) == DEFAULT_QUEUE
    ran = []

    async def runner(job):
        ran.append(job.task_id)
        if job.task_id == "bad":
            raise RuntimeError("boom")

    async def run():
        queue = InMemoryJobQueue()
        queue.enqueue(QueueJob(task_id="a", org_id="org-1", priority=5), runner)
        queue.enqueue(QueueJob(task_id="bad", org_id="org-1", delay_s=0.01), runner)
        await queue.drain()
        return queue

    queue = asyncio.run(run())

    assert sorted(ran) == ["a", "bad"]
    stats = queue.stats()
    assert stats[PRIORITY_QUEUE]["completed"] == 1
    assert stats[DEFAULT_QUEUE]["failed"] == 1
    assert queue.pending == 0
