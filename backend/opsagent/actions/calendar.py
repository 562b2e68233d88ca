"""Calendar scheduling with double-booking detection.

Windows are half-open: ``[start, end)`` and ``[other_start, other_end)``
overlap iff ``start < other_end and other_start < end``. Back-to-back events
never conflict.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..domain import (
    ActionHandlerResult,
    CancelEventAction,
    CreateEventAction,
    ExecutionContext,
    UpdateEventAction,
)
from ..errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..models import CalendarEvent, CalendarEventStatus
from ..store import from_db_time
from ..utils import as_utc
from .base import StoreBackedHandler

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    none = "none"
    partial_overlap = "partial_overlap"
    full_overlap = "full_overlap"


@dataclass
class ConflictResult:
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    type: ConflictType = ConflictType.none

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "conflicts": self.conflicts}


def windows_overlap(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and other_start < end


class CalendarManager(StoreBackedHandler):
    def check_conflicts(
        self,
        org_id: str,
        attendees: list[str],
        start: datetime,
        end: datetime,
        *,
        exclude_event_id: str | None = None,
    ) -> ConflictResult:
        start, end = as_utc(start), as_utc(end)
        rows = self.store.find_overlapping_events(org_id, attendees, start, end, exclude_event_id=exclude_event_id)
        result = ConflictResult()
        wanted = {a.lower() for a in attendees}
        for row in rows:
            other_start, other_end = from_db_time(row.start_at), from_db_time(row.end_at)
            if not windows_overlap(start, end, other_start, other_end):
                continue
            covers = other_start <= start and other_end >= end
            result.conflicts.append(
                {
                    "event_id": row.id,
                    "title": row.title,
                    "start": other_start.isoformat(),
                    "end": other_end.isoformat(),
                    "attendees": sorted(wanted.intersection(a.lower() for a in row.attendees or [])),
                    "overlap": ConflictType.full_overlap.value if covers else ConflictType.partial_overlap.value,
                }
            )
            if covers:
                result.type = ConflictType.full_overlap
            elif result.type == ConflictType.none:
                result.type = ConflictType.partial_overlap
        return result

    async def create(self, action: CreateEventAction, ctx: ExecutionContext) -> ActionHandlerResult:
        params = action.params
        conflicts = self.check_conflicts(ctx.org_id, params.attendees, params.start, params.end)
        self._guard(conflicts, params.override_conflicts)
        event, change = self.store.create_event(
            ctx.org_id,
            title=params.title,
            description=params.description,
            location=params.location,
            start_at=params.start,
            end_at=params.end,
            attendees=params.attendees,
            intake_id=params.intake_id,
        )
        self._log(ctx, event, "created", conflicts=conflicts.to_dict() if conflicts.has_conflicts else None)
        await self.report_change(change)
        return ActionHandlerResult.ok(
            event_id=event.id,
            start=as_utc(params.start).isoformat(),
            end=as_utc(params.end).isoformat(),
            conflicts_overridden=len(conflicts.conflicts),
        )

    async def update(self, action: UpdateEventAction, ctx: ExecutionContext) -> ActionHandlerResult:
        params = action.params
        event = self._get_scheduled(ctx.org_id, params.event_id)
        start = as_utc(params.start) if params.start else from_db_time(event.start_at)
        end = as_utc(params.end) if params.end else from_db_time(event.end_at)
        if end <= start:
            raise ValidationError("Event end must be after start", field_errors={"end": "must be after start"})
        attendees = params.attendees if params.attendees is not None else list(event.attendees or [])

        conflicts = self.check_conflicts(ctx.org_id, attendees, start, end, exclude_event_id=event.id)
        self._guard(conflicts, params.override_conflicts)

        changes: dict[str, Any] = {"start_at": start, "end_at": end, "attendees": attendees}
        for name in ("title", "description", "location"):
            value = getattr(params, name)
            if value is not None:
                changes[name] = value
        updated, change = self.store.update_event(ctx.org_id, event.id, **changes)
        self._log(ctx, updated, "updated", changed=sorted(changes))
        await self.report_change(change)
        return ActionHandlerResult.ok(event_id=updated.id, start=start.isoformat(), end=end.isoformat())

    async def cancel(self, action: CancelEventAction, ctx: ExecutionContext) -> ActionHandlerResult:
        params = action.params
        event = self._get_scheduled(ctx.org_id, params.event_id)
        cancelled, change = self.store.update_event(
            ctx.org_id, event.id, status=CalendarEventStatus.cancelled, cancel_reason=params.reason or None
        )
        self._log(ctx, cancelled, "cancelled", reason=params.reason)
        await self.report_change(change)
        return ActionHandlerResult.ok(event_id=cancelled.id, status=CalendarEventStatus.cancelled.value)

    def _get_scheduled(self, org_id: str, event_id: str) -> CalendarEvent:
        event = self.store.get_event(org_id, event_id)
        if event is None:
            raise NotFoundError(f"Calendar event {event_id} not found", details={"event_id": event_id})
        if event.status == CalendarEventStatus.cancelled:
            raise InvalidStateError(f"Calendar event {event_id} is already cancelled", details={"event_id": event_id})
        return event

    def _guard(self, conflicts: ConflictResult, override: bool) -> None:
        if not conflicts.has_conflicts:
            return
        if override:
            logger.info("calendar conflicts overridden count=%s", len(conflicts.conflicts))
            return
        raise ConflictError(
            f"Scheduling conflict ({conflicts.type.value}) with {len(conflicts.conflicts)} event(s)",
            conflict=conflicts,
            details=conflicts.to_dict(),
        )

    def _log(self, ctx: ExecutionContext, event: CalendarEvent, verb: str, **details: Any) -> None:
        self.store.log_activity(
            ctx.org_id,
            "calendar_event",
            event.id,
            verb,
            correlation_id=ctx.correlation_id,
            details={"decision_id": ctx.decision_id, **{k: v for k, v in details.items() if v is not None}},
        )
        logger.info("calendar event %s org=%s event=%s", verb, ctx.org_id, event.id)
