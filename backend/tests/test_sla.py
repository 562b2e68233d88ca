"""Intake SLA warnings and breaches."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from opsagent.agent import AgentConfig, OrchestrationAgent
from opsagent.db import session_factory
from opsagent.events.bus import EventBus
from opsagent.llm.mock_client import MockLLMClient
from opsagent.models import IntakeStatus
from opsagent.sla import SLAMonitor, SLAState
from opsagent.store import AgentStore

OPENED = datetime(2030, 3, 4, 12, 0)


class Clock:
    def __init__(self):
        self.now = OPENED.replace(tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _intake(store, title, hours=10, **fields):
    return store.create_intake(
        "org-1",
        title,
        created_at=OPENED,
        sla_due_at=OPENED.replace(tzinfo=timezone.utc) + timedelta(hours=hours),
        **fields,
    )


def _names(bus):
    return [e.event_name for e in bus.history()]


def test_warning_then_breach_are_each_emitted_once():
    store = AgentStore(session_factory)
    bus = EventBus()
    clock = Clock()
    monitor = SLAMonitor(bus, store, "org-1", clock=clock)
    intake = _intake(store, "Onboarding", correlation_id="cor-sla")
    store.create_intake("org-1", "No SLA")
    _intake(store, "Closed", status=IntakeStatus.closed)

    async def run():
        clock.now += timedelta(hours=7)
        early = await monitor.check_all()
        clock.now += timedelta(hours=1, minutes=30)
        warned = await monitor.check_all()
        again = await monitor.check_all()
        clock.now += timedelta(hours=2)
        breached = await monitor.check_all()
        after = await monitor.check_all()
        return early, warned, again, breached, after

    early, warned, again, breached, after = asyncio.run(run())

    assert early.to_dict() == {"checked": 1, "warning": 0, "breached": 0, "emitted": 0}
    assert warned.results[0].state == SLAState.warning
    assert warned.results[0].percentage_used == 0.85
    assert warned.emitted == 1
    assert again.warning == 1 and again.emitted == 0
    assert breached.breached == 1 and breached.emitted == 1
    assert after.checked == 0
    assert _names(bus) == ["intake.sla_warning", "intake.sla_breached"]
    event = bus.history()[-1]
    assert event.correlation_id == "cor-sla"
    assert event.payload["input"]["type"] == "intake.sla_breached"
    assert event.payload["input"]["priority"] == 5
    assert event.payload["input"]["metadata"]["intake_id"] == intake.id
    saved = store.get_intake("org-1", intake.id)
    assert saved.sla_warned_at is not None and saved.sla_breached_at is not None


def test_overdue_intake_goes_straight_to_breach():
    store = AgentStore(session_factory)
    bus = EventBus()
    clock = Clock()
    clock.now += timedelta(hours=12)
    intake = _intake(store, "Forgotten")

    check = asyncio.run(SLAMonitor(bus, store, "org-1", clock=clock).check_intake(intake.id))

    assert check.state == SLAState.breached and check.emitted is True
    assert _names(bus) == ["intake.sla_breached"]
    assert store.get_intake("org-1", intake.id).sla_warned_at is None


def test_thresholds_must_be_ordered():
    with pytest.raises(ValueError):
        SLAMonitor(EventBus(), AgentStore(session_factory), "org-1", warning_threshold=1.0, breach_threshold=0.8)


def test_agent_decides_on_breached_intakes():
    store = AgentStore(session_factory)
    store.ensure_organization("org-1", quiet_hours_start=0, quiet_hours_end=0)
    store.add_team_member("org-1", "Oli", "oli@acme.test", "operator")
    bus = EventBus()
    clock = Clock()
    clock.now += timedelta(hours=11)
    agent = OrchestrationAgent(
        AgentConfig(org_id="org-1", expiry_sweep_interval_s=0),
        bus=bus,
        store=store,
        llm=MockLLMClient(),
        clock=clock,
    )
    intake = _intake(store, "Contract review")

    async def run():
        await agent.start()
        summary = await agent.sla.check_all()
        await agent.drain()
        await agent.stop()
        return summary

    summary = asyncio.run(run())

    assert summary.breached == 1
    history = agent.get_history()
    assert len(history) == 1
    assert history[0]["input"]["type"] == "intake.sla_breached"
    assert history[0]["input"]["metadata"]["intake_id"] == intake.id
