"""Notification routing, quiet hours, rate limits and escalation."""

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from opsagent.actions.notifications import NotificationDispatcher, format_for_channel, in_quiet_hours
from opsagent.db import session_factory
from opsagent.domain import (
    Channel,
    EscalateAction,
    EscalateParams,
    ExecutionContext,
    SendNotificationAction,
    SendNotificationParams,
    Urgency,
)
from opsagent.errors import NotFoundError
from opsagent.models import IntakeStatus, NotificationStatus
from opsagent.rate_limit import FixedWindowRateLimiter
from opsagent.store import AgentStore

CTX = ExecutionContext(decision_id="dec_1", action_index=0, org_id="org-1", correlation_id="cor-1")


def _setup(hour=12, limit=10, timezone_name="UTC"):
    store = AgentStore(session_factory)
    store.ensure_organization("org-1", timezone=timezone_name, quiet_hours_start=22, quiet_hours_end=7)
    admin = store.add_team_member("org-1", "Ada", "ada@acme.test", "admin", phone="+15550100")
    operator = store.add_team_member("org-1", "Oli", "oli@acme.test", "operator")
    now = datetime(2030, 3, 4, hour, 0, tzinfo=timezone.utc)
    changes = []
    dispatcher = NotificationDispatcher(
        store,
        limiter=FixedWindowRateLimiter(limit, 60),
        clock=lambda: now,
        on_change=changes.append,
    )
    return store, dispatcher, admin, operator, changes


def _notify(urgency=Urgency.medium, **params):
    params.setdefault("recipient_role", "operator")
    return SendNotificationAction(
        params=SendNotificationParams(title="New lead", message="Call back today", urgency=urgency, **params)
    )


def test_quiet_hours_window_wraps_midnight():
    assert in_quiet_hours(23, 22, 7) is True
    assert in_quiet_hours(3, 22, 7) is True
    assert in_quiet_hours(7, 22, 7) is False
    assert in_quiet_hours(13, 12, 14) is True
    assert in_quiet_hours(13, 5, 5) is False


def test_channels_follow_urgency_role_and_phone():
    store, dispatcher, admin, operator, _ = _setup()

    assert dispatcher.select_channels(Urgency.critical, operator) == [Channel.in_app, Channel.email]
    assert dispatcher.select_channels(Urgency.critical, admin) == list(Channel)
    assert dispatcher.select_channels(Urgency.low, admin) == [Channel.in_app]
    assert dispatcher.select_channels(Urgency.high, operator, [Channel.push]) == [Channel.in_app]


def test_medium_notification_is_held_during_quiet_hours_but_high_goes_out():
    store, dispatcher, admin, operator, _ = _setup(hour=23)

    async def run():
        quiet = await dispatcher.send(_notify(), CTX)
        loud = await dispatcher.send(_notify(Urgency.high), CTX)
        return quiet, loud

    quiet, loud = asyncio.run(run())

    assert quiet.data["quiet_hours"] is True
    assert quiet.data["suppressed"] == [{"recipient_id": operator.id, "reason": "quiet_hours"}]
    assert loud.data["delivered"] == [{"recipient_id": operator.id, "channels": ["in_app", "email"]}]
    statuses = [n.status for n in store.list_notifications("org-1", operator.id)]
    assert statuses == [NotificationStatus.suppressed, NotificationStatus.sent, NotificationStatus.sent]


def test_quiet_hours_use_org_timezone():
    try:
        ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not available")
    # 23:00 UTC is 18:00 in New York.
    _, dispatcher, _, operator, _ = _setup(hour=23, timezone_name="America/New_York")

    result = asyncio.run(dispatcher.send(_notify(), CTX))

    assert result.data["quiet_hours"] is False
    assert result.data["delivered"][0]["recipient_id"] == operator.id


def test_rate_limit_per_recipient_with_critical_bypass():
    _, dispatcher, _, operator, _ = _setup(limit=2)

    async def run():
        results = [await dispatcher.send(_notify(), CTX) for _ in range(3)]
        results.append(await dispatcher.send(_notify(Urgency.critical), CTX))
        return results

    results = asyncio.run(run())

    assert [len(r.data["delivered"]) for r in results] == [1, 1, 0, 1]
    assert results[2].data["suppressed"] == [{"recipient_id": operator.id, "reason": "rate_limited"}]


def test_unknown_role_falls_back_to_admin_and_unknown_recipient_fails():
    _, dispatcher, admin, _, _ = _setup()

    result = asyncio.run(dispatcher.send(_notify(recipient_role="sales"), CTX))

    assert result.data["delivered"][0]["recipient_id"] == admin.id
    with pytest.raises(NotFoundError):
        asyncio.run(dispatcher.send(_notify(recipient_id="tm_missing", recipient_role=None), CTX))


def test_escalation_marks_intake_and_notifies_admins():
    store, dispatcher, admin, _, changes = _setup()
    intake = store.create_intake("org-1", "Broken portal", correlation_id="cor-1")
    action = EscalateAction(params=EscalateParams(reason="Customer threatened to cancel", intake_id=intake.id))

    async def run():
        first = await dispatcher.escalate(action, CTX)
        second = await dispatcher.escalate(action, CTX)
        return first, second

    first, second = asyncio.run(run())

    assert first.data["intake_escalated"] is True
    assert second.data["intake_escalated"] is False
    assert store.get_intake("org-1", intake.id).status == IntakeStatus.escalated
    assert len(changes) == 1 and changes[0].after["status"] == "escalated"
    assert first.data["delivered"][0]["recipient_id"] == admin.id
    assert [a.action for a in store.list_activity("org-1", intake.id)] == ["escalated", "escalated"]


def test_format_for_channel_limits():
    long = "x" * 300
    assert len(format_for_channel(Channel.sms, "Title", long)) == 160
    assert len(format_for_channel(Channel.push, "Title", long)) == 100
    assert format_for_channel(Channel.email, "Title", long) == long
