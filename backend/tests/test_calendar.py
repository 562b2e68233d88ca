"""Calendar scheduling and conflict detection."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from opsagent.actions.calendar import CalendarManager, ConflictType, windows_overlap
from opsagent.db import session_factory
from opsagent.domain import (
    CancelEventAction,
    CancelEventParams,
    CreateEventAction,
    CreateEventParams,
    ExecutionContext,
    UpdateEventAction,
    UpdateEventParams,
)
from opsagent.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from opsagent.store import AgentStore

BASE = datetime(2030, 3, 4, 10, 0, tzinfo=timezone.utc)
CTX = ExecutionContext(decision_id="dec_1", action_index=0, org_id="org-1", correlation_id="cor-1")


def _create(start_min, end_min, attendees=("ana@acme.test",), override=False):
    return CreateEventAction(
        params=CreateEventParams(
            title="Consult",
            start=BASE + timedelta(minutes=start_min),
            end=BASE + timedelta(minutes=end_min),
            attendees=list(attendees),
            override_conflicts=override,
        )
    )


def _manager(changes=None):
    store = AgentStore(session_factory)
    store.ensure_organization("org-1")
    return CalendarManager(store, on_change=changes.append if changes is not None else None)


def test_windows_overlap_is_half_open():
    end = BASE + timedelta(hours=1)
    assert windows_overlap(BASE, end, BASE + timedelta(minutes=30), end + timedelta(minutes=30)) is True
    assert windows_overlap(BASE, end, end, end + timedelta(hours=1)) is False


def test_back_to_back_events_do_not_conflict_but_overlaps_do():
    changes = []
    manager = _manager(changes)

    async def run():
        first = await manager.create(_create(0, 60), CTX)
        adjacent = await manager.create(_create(60, 120), CTX)
        other_person = await manager.create(_create(30, 90, attendees=("bo@acme.test",)), CTX)
        with pytest.raises(ConflictError) as partial:
            await manager.create(_create(30, 90), CTX)
        with pytest.raises(ConflictError) as full:
            await manager.create(_create(15, 45), CTX)
        forced = await manager.create(_create(15, 45, override=True), CTX)
        return first, adjacent, other_person, partial.value, full.value, forced

    first, adjacent, other_person, partial, full, forced = asyncio.run(run())

    assert first.success and adjacent.success and other_person.success
    assert partial.conflict.type == ConflictType.partial_overlap
    assert len(partial.conflict.conflicts) == 2
    assert full.conflict.type == ConflictType.full_overlap
    assert full.details["conflicts"][0]["event_id"] == first.data["event_id"]
    assert forced.data["conflicts_overridden"] == 1
    assert [c.operation.value for c in changes] == ["create"] * 4


def test_reschedule_excludes_itself_and_checks_others():
    manager = _manager()

    async def run():
        first = await manager.create(_create(0, 60), CTX)
        second = await manager.create(_create(120, 180), CTX)
        moved = await manager.update(
            UpdateEventAction(
                params=UpdateEventParams(event_id=first.data["event_id"], end=BASE + timedelta(minutes=90))
            ),
            CTX,
        )
        with pytest.raises(ConflictError):
            await manager.update(
                UpdateEventAction(
                    params=UpdateEventParams(event_id=first.data["event_id"], end=BASE + timedelta(minutes=150))
                ),
                CTX,
            )
        with pytest.raises(ValidationError):
            await manager.update(
                UpdateEventAction(
                    params=UpdateEventParams(event_id=second.data["event_id"], end=BASE + timedelta(minutes=60))
                ),
                CTX,
            )
        return moved

    moved = asyncio.run(run())

    assert moved.data["end"] == (BASE + timedelta(minutes=90)).isoformat()


def test_cancel_twice_is_an_invalid_state():
    changes = []
    manager = _manager(changes)

    async def run():
        created = await manager.create(_create(0, 60), CTX)
        event_id = created.data["event_id"]
        cancelled = await manager.cancel(CancelEventAction(params=CancelEventParams(event_id=event_id)), CTX)
        with pytest.raises(InvalidStateError):
            await manager.cancel(CancelEventAction(params=CancelEventParams(event_id=event_id)), CTX)
        with pytest.raises(NotFoundError):
            await manager.cancel(CancelEventAction(params=CancelEventParams(event_id="evt_missing")), CTX)
        rebooked = await manager.create(_create(0, 60), CTX)
        return cancelled, rebooked

    cancelled, rebooked = asyncio.run(run())

    assert cancelled.data["status"] == "cancelled"
    assert rebooked.success is True
    assert changes[1].after["status"] == "cancelled"


def test_invalid_window_is_rejected_by_params():
    with pytest.raises(ValueError):
        CreateEventParams(title="x", start=BASE, end=BASE)
