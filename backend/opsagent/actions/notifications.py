"""Team notifications and escalations.

Channels come from the urgency table, narrowed by the recipient role's
routing preferences. Quiet hours (in the org's timezone, overnight windows
allowed) hold back low and medium urgency sends; a per-recipient fixed
window caps volume, except for critical sends.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import settings
from ..domain import (
    ActionHandlerResult,
    Channel,
    EscalateAction,
    ExecutionContext,
    OrgSettingsSnapshot,
    SendNotificationAction,
    SendNotificationParams,
    Urgency,
)
from ..errors import NotFoundError
from ..models import IntakeStatus, NotificationStatus, TeamMember
from ..rate_limit import FixedWindowRateLimiter
from ..utils import truncate, utc_now
from .base import ChangeCallback, StoreBackedHandler

logger = logging.getLogger(__name__)

URGENCY_CHANNELS: dict[Urgency, tuple[Channel, ...]] = {
    Urgency.critical: (Channel.in_app, Channel.email, Channel.sms, Channel.push),
    Urgency.high: (Channel.in_app, Channel.email, Channel.push),
    Urgency.medium: (Channel.in_app, Channel.email),
    Urgency.low: (Channel.in_app,),
}

ROLE_ROUTING: dict[str, frozenset[Channel]] = {
    "admin": frozenset(Channel),
    "operator": frozenset({Channel.in_app, Channel.email, Channel.sms}),
    "pm": frozenset({Channel.in_app, Channel.email, Channel.push}),
    "sales": frozenset({Channel.in_app, Channel.email, Channel.push}),
    "support": frozenset({Channel.in_app, Channel.email, Channel.sms, Channel.push}),
}

FALLBACK_ROLE = "admin"
SMS_LIMIT = 160
PUSH_LIMIT = 100
QUIET_HOURS_BYPASS = frozenset({Urgency.high, Urgency.critical})


def in_quiet_hours(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    if start is None or end is None or start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def format_for_channel(channel: Channel, title: str, message: str) -> str:
    if channel == Channel.sms:
        return truncate(f"{title}: {message}", SMS_LIMIT)
    if channel == Channel.push:
        return truncate(message, PUSH_LIMIT)
    return message


class NotificationDispatcher(StoreBackedHandler):
    def __init__(
        self,
        store,
        *,
        limiter: FixedWindowRateLimiter | None = None,
        clock: Callable[[], datetime] = utc_now,
        on_change: ChangeCallback | None = None,
    ) -> None:
        super().__init__(store, on_change=on_change)
        self.limiter = limiter or FixedWindowRateLimiter(
            settings.notification_rate_limit, settings.notification_rate_window_s
        )
        self._clock = clock

    def select_channels(
        self,
        urgency: Urgency,
        member: TeamMember,
        requested: Optional[list[Channel]] = None,
    ) -> list[Channel]:
        base = list(requested) if requested else list(URGENCY_CHANNELS[urgency])
        allowed = ROLE_ROUTING.get(member.role, ROLE_ROUTING["operator"])
        if member.channels:
            allowed = allowed & {c for c in Channel if c.value in member.channels}
        if not member.phone:
            allowed = allowed - {Channel.sms}
        picked = [c for c in base if c in allowed]
        return picked or [Channel.in_app]

    def is_quiet(self, org: OrgSettingsSnapshot) -> bool:
        start = org.quiet_hours_start if org.quiet_hours_start is not None else settings.quiet_hours_start
        end = org.quiet_hours_end if org.quiet_hours_end is not None else settings.quiet_hours_end
        try:
            tz = ZoneInfo(org.timezone or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown org timezone org=%s tz=%s", org.org_id, org.timezone)
            tz = ZoneInfo("UTC")
        return in_quiet_hours(self._clock().astimezone(tz).hour, start, end)

    def resolve_recipients(self, org_id: str, params: SendNotificationParams) -> list[TeamMember]:
        if params.recipient_id:
            member = self.store.get_member(org_id, params.recipient_id)
            if member is None or not member.active:
                raise NotFoundError(
                    f"Recipient {params.recipient_id} not found", details={"recipient_id": params.recipient_id}
                )
            return [member]
        role = (params.recipient_role or FALLBACK_ROLE).lower()
        members = self.store.list_team(org_id, role=role)
        if not members and role != FALLBACK_ROLE:
            logger.info("no members for role=%s org=%s; routing to %s", role, org_id, FALLBACK_ROLE)
            members = self.store.list_team(org_id, role=FALLBACK_ROLE)
        if not members:
            raise NotFoundError(f"No active team members with role {role}", details={"role": role})
        return members

    async def send(self, action: SendNotificationAction, ctx: ExecutionContext) -> ActionHandlerResult:
        return ActionHandlerResult.ok(**self.dispatch(action.params, ctx))

    def dispatch(self, params: SendNotificationParams, ctx: ExecutionContext) -> dict[str, Any]:
        org = self.store.get_org_settings(ctx.org_id)
        recipients = self.resolve_recipients(ctx.org_id, params)
        quiet = params.urgency not in QUIET_HOURS_BYPASS and self.is_quiet(org)

        delivered: list[dict[str, Any]] = []
        suppressed: list[dict[str, str]] = []
        for member in recipients:
            if quiet:
                self._record(ctx, params, member, Channel.in_app, NotificationStatus.suppressed)
                suppressed.append({"recipient_id": member.id, "reason": "quiet_hours"})
                continue
            if params.urgency != Urgency.critical:
                decision = self.limiter.hit(f"{ctx.org_id}:{member.id}")
                if not decision.allowed:
                    suppressed.append({"recipient_id": member.id, "reason": "rate_limited"})
                    continue
            channels = self.select_channels(params.urgency, member, params.channels)
            for channel in channels:
                self._record(ctx, params, member, channel, NotificationStatus.sent)
            delivered.append({"recipient_id": member.id, "channels": [c.value for c in channels]})

        logger.info(
            "notification dispatched org=%s urgency=%s delivered=%s suppressed=%s",
            ctx.org_id,
            params.urgency.value,
            len(delivered),
            len(suppressed),
        )
        return {"delivered": delivered, "suppressed": suppressed, "quiet_hours": quiet}

    async def escalate(self, action: EscalateAction, ctx: ExecutionContext) -> ActionHandlerResult:
        params = action.params
        notification = SendNotificationParams(
            title=truncate(f"Escalation: {params.reason}", 200),
            message=params.reason,
            recipient_role=params.role,
            urgency=params.urgency,
            intake_id=params.intake_id,
        )
        data = self.dispatch(notification, ctx)
        data["intake_escalated"] = False
        if params.intake_id:
            intake = self.store.get_intake(ctx.org_id, params.intake_id)
            if intake is None:
                logger.warning("escalation for unknown intake org=%s intake=%s", ctx.org_id, params.intake_id)
            elif intake.status != IntakeStatus.escalated:
                change = self.store.update_intake(ctx.org_id, intake.id, status=IntakeStatus.escalated)
                await self.report_change(change)
                data["intake_escalated"] = True
            self.store.log_activity(
                ctx.org_id,
                "intake",
                params.intake_id,
                "escalated",
                correlation_id=ctx.correlation_id,
                details={"reason": params.reason, "role": params.role, "decision_id": ctx.decision_id},
            )
        return ActionHandlerResult.ok(**data)

    def _record(
        self,
        ctx: ExecutionContext,
        params: SendNotificationParams,
        member: TeamMember,
        channel: Channel,
        status: NotificationStatus,
    ) -> None:
        self.store.add_notification(
            ctx.org_id,
            recipient_id=member.id,
            channel=channel.value,
            title=params.title,
            message=format_for_channel(channel, params.title, params.message),
            urgency=params.urgency.value,
            status=status,
            intake_id=params.intake_id,
            correlation_id=ctx.correlation_id,
        )
