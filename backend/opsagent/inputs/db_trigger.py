"""Database change notifications as agent inputs.

Write sites report an explicit ``ChangeEvent`` with before/after snapshots.
Noise fields are ignored; only a change to a significant field (or any
delete) is published, under the event name the static tables assign.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from ..domain import AgentInput, ChangeEvent, ChangeOperation, InputSource
from ..utils import new_id
from .base import BaseInputHandler, ProcessingResult

DEFAULT_IGNORED_FIELDS = frozenset(
    {
        "updated_at",
        "created_at",
        "version",
        "last_modified",
        "modified_at",
        "last_accessed",
        "view_count",
        "checksum",
        "etag",
    }
)

SIGNIFICANT_FIELDS: dict[str, tuple[str, ...]] = {
    "intake": ("status", "priority", "assigned_to", "pipeline_id", "stage_id", "category", "urgency"),
    "calendar_event": ("start_at", "end_at", "title", "status", "attendees"),
    "pipeline": ("name", "is_default"),
    "team_member": ("role", "active"),
}

# (entity, field) -> event name; earlier fields in SIGNIFICANT_FIELDS win when several change.
FIELD_EVENTS: dict[tuple[str, str], str] = {
    ("intake", "status"): "intake.status_changed",
    ("intake", "assigned_to"): "intake.assigned",
    ("intake", "priority"): "intake.priority_changed",
    ("intake", "pipeline_id"): "pipeline.stage_changed",
    ("intake", "stage_id"): "pipeline.stage_changed",
    ("calendar_event", "start_at"): "calendar.event_rescheduled",
    ("calendar_event", "end_at"): "calendar.event_rescheduled",
    ("calendar_event", "status"): "calendar.event_status_changed",
    ("calendar_event", "title"): "calendar.event_updated",
    ("calendar_event", "attendees"): "calendar.event_updated",
    ("team_member", "role"): "team.member_updated",
    ("team_member", "active"): "team.member_updated",
}

OPERATION_EVENTS: dict[tuple[str, ChangeOperation], Optional[str]] = {
    ("intake", ChangeOperation.create): "intake.created",
    ("intake", ChangeOperation.update): "intake.updated",
    ("intake", ChangeOperation.delete): None,
    ("calendar_event", ChangeOperation.create): "calendar.event_created",
    ("calendar_event", ChangeOperation.update): "calendar.event_updated",
    ("calendar_event", ChangeOperation.delete): "calendar.event_cancelled",
    ("pipeline", ChangeOperation.update): "pipeline.updated",
}


@dataclass
class FieldChange:
    field: str
    old: Any
    new: Any
    significant: bool


@dataclass
class ChangeDetection:
    changes: list[FieldChange] = field(default_factory=list)
    significant_fields: list[str] = field(default_factory=list)
    has_significant_changes: bool = False
    summary: str = ""


def _format_value(value: Any, limit: int = 50) -> str:
    text = "null" if value is None else str(value)
    return text if len(text) <= limit else text[:limit] + "..."


class DBTriggerHandler(BaseInputHandler):
    source = InputSource.db_trigger
    event_name = "db_trigger.received"

    def __init__(
        self,
        bus,
        org_id: str,
        *,
        ignored_fields: set[str] | None = None,
        significant_fields: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        super().__init__(bus, org_id)
        self.ignored_fields = set(DEFAULT_IGNORED_FIELDS) | set(ignored_fields or ())
        self.significant_fields = {**SIGNIFICANT_FIELDS, **(significant_fields or {})}

    def detect_changes(self, change: ChangeEvent) -> ChangeDetection:
        significant_for_entity = self.significant_fields.get(change.entity, ())
        before = change.before or {}
        after = change.after or {}
        result = ChangeDetection()

        if change.operation == ChangeOperation.create:
            pairs = [(k, None, v) for k, v in after.items()]
        elif change.operation == ChangeOperation.delete:
            pairs = [(k, v, None) for k, v in before.items()]
        else:
            keys = list(dict.fromkeys([*before.keys(), *after.keys()]))
            pairs = [(k, before.get(k), after.get(k)) for k in keys if before.get(k) != after.get(k)]

        for name, old, new in pairs:
            if name in self.ignored_fields:
                continue
            significant = change.operation == ChangeOperation.delete or name in significant_for_entity
            result.changes.append(FieldChange(field=name, old=old, new=new, significant=significant))
            if significant:
                result.significant_fields.append(name)

        result.has_significant_changes = bool(result.significant_fields) or change.operation == ChangeOperation.delete
        result.summary = self._summary(change, result)
        return result

    def event_for(self, change: ChangeEvent, detection: ChangeDetection) -> Optional[str]:
        if change.operation == ChangeOperation.update:
            ordered = [f for f in self.significant_fields.get(change.entity, ()) if f in detection.significant_fields]
            for name in ordered:
                mapped = FIELD_EVENTS.get((change.entity, name))
                if mapped:
                    return mapped
        return OPERATION_EVENTS.get((change.entity, change.operation))

    def event_name_for(self, agent_input: AgentInput) -> str:
        return agent_input.type

    async def _process(self, change: ChangeEvent) -> AgentInput | ProcessingResult:
        detection = self.detect_changes(change)
        if not detection.has_significant_changes:
            return ProcessingResult.skipped("no significant field changed")
        event_name = self.event_for(change, detection)
        if event_name is None:
            return ProcessingResult.skipped(f"no event mapped for {change.entity}.{change.operation.value}")

        return AgentInput(
            source=self.source,
            type=event_name,
            raw_content=detection.summary,
            org_id=change.org_id or self.org_id,
            correlation_id=change.correlation_id or new_id("cor"),
            metadata={
                "entity": change.entity,
                "entity_id": change.entity_id,
                "operation": change.operation.value,
                "triggered_by": change.triggered_by,
                "changed_fields": [c.field for c in detection.changes],
                "significant_fields": detection.significant_fields,
                "before": change.before,
                "after": change.after,
                f"{change.entity}_id": change.entity_id,
            },
            priority=3,
        )

    def _summary(self, change: ChangeEvent, detection: ChangeDetection) -> str:
        head = f"{change.entity} {change.entity_id} {change.operation.value}d"
        if change.operation != ChangeOperation.update:
            return head
        parts = [f"{c.field}: {_format_value(c.old)} -> {_format_value(c.new)}" for c in detection.changes]
        summary = f"{head}: {'; '.join(parts)}" if parts else head
        if detection.significant_fields:
            summary += f" [significant: {', '.join(detection.significant_fields)}]"
        return summary
