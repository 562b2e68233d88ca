"""Background job events as agent inputs."""

import asyncio

from opsagent.events.bus import EventBus
from opsagent.inputs.worker import JobEventType, WorkerEventHandler


def _event(event_type, **job):
    return {
        "event_type": event_type,
        "queue_name": "billing-sync",
        "job": {"id": "j1", "name": "sync-invoices", **job},
    }


def test_exhausted_failure_is_critical():
    bus = EventBus()
    seen = []
    bus.subscribe("worker.received", seen.append)
    handler = WorkerEventHandler(bus, "org-1")

    result = asyncio.run(
        handler.handle_input(
            _event("failed", attempts_made=3, max_attempts=3, failed_reason="timeout", data={"intake_id": "int_1"})
        )
    )

    assert result.success is True
    assert len(seen) == 1
    agent_input = result.input
    assert agent_input.type == "job.failed"
    assert agent_input.priority == 5
    assert agent_input.metadata["retry_requested"] is False
    assert agent_input.metadata["intake_id"] == "int_1"
    assert agent_input.correlation_id == "job:billing-sync:j1"


def test_failure_with_attempts_left_is_high_and_requests_retry():
    handler = WorkerEventHandler(EventBus(), "org-1")

    result = asyncio.run(handler.handle_input(_event("failed", attempts_made=1, max_attempts=3)))

    assert result.input.priority == 4
    assert result.input.metadata["retry_requested"] is True


def test_started_events_are_skipped_unless_configured():
    default = WorkerEventHandler(EventBus(), "org-1")
    verbose = WorkerEventHandler(EventBus(), "org-1", reacts_to=set(JobEventType))

    skipped = asyncio.run(default.handle_input(_event("started")))
    handled = asyncio.run(verbose.handle_input(_event("started")))

    assert skipped.skipped_reason == "job event started not handled"
    assert handled.input.type == "job.started"


def test_malformed_event_is_a_validation_error():
    handler = WorkerEventHandler(EventBus(), "org-1")

    result = asyncio.run(handler.handle_input({"event_type": "exploded", "queue_name": "q"}))

    assert result.success is False
    assert result.error_code == "VALIDATION_ERROR"
    assert "event_type" in result.field_errors
    assert "job" in result.field_errors
