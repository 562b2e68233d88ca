"""Action executor idempotency, retries, locking and escalation."""

import asyncio

import pytest

from opsagent.actions.executor import ActionExecutor
from opsagent.actions.queue import InMemoryJobQueue
from opsagent.db import session_factory
from opsagent.domain import (
    ActionHandlerResult,
    ActionKind,
    AssignPipelineAction,
    AssignPipelineParams,
    ExecutionContext,
    SendNotificationAction,
    SendNotificationParams,
)
from opsagent.errors import ConfigurationError, ExecutionError
from opsagent.events.bus import EventBus
from opsagent.store import AgentStore


class Recorder:
    def __init__(self):
        self.calls = []

    def handler(self, kind, outcome=None):
        async def _handle(action, ctx):
            self.calls.append((kind, ctx.action_index, action))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome or ActionHandlerResult.ok(kind=kind)

        return _handle


def _handlers(recorder, **overrides):
    return {kind: overrides.get(kind.value) or recorder.handler(kind.value) for kind in ActionKind}


def _notify():
    return SendNotificationAction(params=SendNotificationParams(title="t", message="m", recipient_role="admin"))


def _ctx(index=0, **kwargs):
    return ExecutionContext(decision_id="dec_1", action_index=index, org_id="org-1", correlation_id="cor-1", **kwargs)


def test_missing_handler_is_a_configuration_error():
    recorder = Recorder()
    handlers = _handlers(recorder)
    handlers.pop(ActionKind.cancel_event)

    with pytest.raises(ConfigurationError) as exc:
        ActionExecutor(handlers)
    assert exc.value.details["missing"] == ["cancel_event"]


def test_same_action_runs_once_even_after_restart():
    recorder = Recorder()
    store = AgentStore(session_factory)

    async def run():
        executor = ActionExecutor(_handlers(recorder), store=store)
        first = await executor.execute(_notify(), _ctx())
        second = await executor.execute(_notify(), _ctx())
        restarted = ActionExecutor(_handlers(recorder), store=store)
        third = await restarted.execute(_notify(), _ctx())
        return first, second, third

    first, second, third = asyncio.run(run())

    assert len(recorder.calls) == 1
    assert first.success is True and first.from_cache is False
    assert second.from_cache is True
    assert third.from_cache is True and third.data == {"kind": "send_notification"}


def test_concurrent_duplicates_share_one_execution():
    recorder = Recorder()

    async def run():
        executor = ActionExecutor(_handlers(recorder))
        return await asyncio.gather(*(executor.execute(_notify(), _ctx()) for _ in range(5)))

    results = asyncio.run(run())

    assert len(recorder.calls) == 1
    assert sum(1 for r in results if not r.from_cache) == 1


def test_actions_on_the_same_entity_are_serialized():
    active = []
    peak = []

    async def slow_assign(action, ctx):
        active.append(ctx.action_index)
        peak.append(len(active))
        await asyncio.sleep(0.01)
        active.remove(ctx.action_index)
        return ActionHandlerResult.ok()

    action = AssignPipelineAction(params=AssignPipelineParams(intake_id="int_1"))

    async def run():
        executor = ActionExecutor(_handlers(Recorder(), assign_pipeline=slow_assign))
        await asyncio.gather(*(executor.execute(action, _ctx(i)) for i in range(3)))

    asyncio.run(run())

    assert max(peak) == 1


def test_retryable_failure_retries_then_escalates():
    recorder = Recorder()
    bus = EventBus()
    failures = []
    bus.subscribe("action.failed", failures.append)
    flaky = recorder.handler("send_notification", ExecutionError("provider down"))

    async def run():
        queue = InMemoryJobQueue()
        executor = ActionExecutor(
            _handlers(recorder, send_notification=flaky),
            bus=bus,
            queue=queue,
            max_attempts=2,
            retry_base_s=0,
        )
        first = await executor.execute(_notify(), _ctx(priority=5))
        await queue.drain()
        return executor, first

    executor, first = asyncio.run(run())

    assert first.success is False
    assert first.retry_scheduled is True
    kinds = [(kind, index) for kind, index, _ in recorder.calls]
    assert kinds == [("send_notification", 0), ("send_notification", 0), ("escalate", "0:escalation")]
    escalation = recorder.calls[-1][2]
    assert "after 2 attempt(s)" in escalation.params.reason
    assert escalation.params.urgency.value == "critical"
    assert [e.payload["action_index"] for e in failures] == [0]
    recorded = executor.cached_result("dec_1:0")
    assert recorded.attempts == 2 and recorded.success is False


def test_crash_is_not_retried_and_failed_escalation_does_not_cascade():
    recorder = Recorder()
    crashing = recorder.handler("send_notification", RuntimeError("bug"))
    broken_escalate = recorder.handler("escalate", RuntimeError("also broken"))

    async def run():
        executor = ActionExecutor(
            _handlers(recorder, send_notification=crashing, escalate=broken_escalate), max_attempts=3
        )
        return await executor.execute(_notify(), _ctx())

    result = asyncio.run(run())

    assert result.error_code == "HANDLER_CRASHED"
    assert [c[0] for c in recorder.calls] == ["send_notification", "escalate"]


def test_dry_run_skips_handlers():
    recorder = Recorder()

    async def run():
        executor = ActionExecutor(_handlers(recorder))
        return await executor.execute(_notify(), _ctx(dry_run=True))

    result = asyncio.run(run())

    assert recorder.calls == []
    assert result.data["dry_run"] is True


def test_forget_failure_allows_manual_retry():
    recorder = Recorder()
    outcomes = [ActionHandlerResult(success=False, error="nope", error_code="X"), ActionHandlerResult.ok()]

    async def sometimes(action, ctx):
        recorder.calls.append(("send_notification", ctx.action_index, action))
        return outcomes.pop(0)

    async def run():
        executor = ActionExecutor(_handlers(Recorder(), send_notification=sometimes), store=AgentStore(session_factory))
        first = await executor.execute(_notify(), _ctx())
        assert executor.forget_failure("dec_1:0") is True
        second = await executor.execute(_notify(), _ctx())
        assert executor.forget_failure("dec_1:0") is False
        return first, second

    first, second = asyncio.run(run())

    assert first.success is False
    assert second.success is True
    assert len(recorder.calls) == 2


def test_locks_are_released_and_result_cache_is_bounded():
    recorder = Recorder()
    store = AgentStore(session_factory)
    action = AssignPipelineAction(params=AssignPipelineParams(intake_id="int_1"))

    async def run():
        executor = ActionExecutor(_handlers(recorder), store=store, result_cache_size=1)
        await asyncio.gather(*(executor.execute(action, _ctx(i)) for i in range(3)))
        await executor.execute(_notify(), _ctx(3))
        evicted = await executor.execute(action, _ctx(0))
        return executor, evicted

    executor, evicted = asyncio.run(run())

    stats = executor.get_stats()
    assert stats["locks"] == 0
    assert stats["recorded"] == 1
    assert evicted.from_cache is True
    assert len(recorder.calls) == 4
