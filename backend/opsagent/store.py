"""Persistence boundary used by the orchestration core.

``AgentStore`` wraps SQLModel sessions and exposes the narrow CRUD surface the
agent needs: org settings, pipelines, team, intakes, calendar events,
notifications, workflows, the activity log, decision records, and recorded
action results. Write methods that touch intakes or calendar events return a
``ChangeEvent`` so the caller can report the change explicitly.
"""

from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Optional

from sqlmodel import Session, select

from .domain import (
    ActionHandlerResult,
    ChangeEvent,
    ChangeOperation,
    DecisionRecord,
    ExecutionContext,
    HistoricalDecision,
    IntakeSummary,
    OrgSettingsSnapshot,
    PipelineSummary,
    StageSummary,
    TeamMemberSummary,
)
from .models import (
    ActionExecution,
    ActivityLog,
    CalendarEvent,
    CalendarEventStatus,
    DecisionRow,
    Intake,
    IntakeStatus,
    Notification,
    Organization,
    Pipeline,
    PipelineStage,
    TeamMember,
    Workflow,
)
from .utils import as_utc


def to_db_time(value: datetime) -> datetime:
    """Convert any datetime to the naive UTC form stored in rows."""

    return as_utc(value).replace(tzinfo=None)


def from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def snapshot(row: Any) -> dict[str, Any]:
    return row.model_dump(mode="json")


class AgentStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # Organizations

    def ensure_organization(self, org_id: str, **fields: Any) -> Organization:
        with self._session_factory() as session:
            org = session.get(Organization, org_id)
            if org is None:
                org = Organization(id=org_id, name=fields.pop("name", org_id), **fields)
                session.add(org)
                session.commit()
                session.refresh(org)
            return org

    def get_org_settings(self, org_id: str) -> OrgSettingsSnapshot:
        org = self.ensure_organization(org_id)
        return OrgSettingsSnapshot(
            org_id=org.id,
            name=org.name,
            timezone=org.timezone or "UTC",
            enabled_actions=tuple(org.enabled_actions or ()),
            auto_execute_threshold=org.auto_execute_threshold,
            quiet_hours_start=org.quiet_hours_start,
            quiet_hours_end=org.quiet_hours_end,
        )

    # Pipelines

    def create_pipeline(self, org_id: str, name: str, stages: list[str], *, is_default: bool = False) -> Pipeline:
        with self._session_factory() as session:
            pipeline = Pipeline(org_id=org_id, name=name, is_default=is_default)
            session.add(pipeline)
            session.commit()
            session.refresh(pipeline)
            for position, stage_name in enumerate(stages):
                session.add(PipelineStage(pipeline_id=pipeline.id, name=stage_name, position=position))
            session.commit()
            return pipeline

    def get_pipeline(self, org_id: str, pipeline_id: str) -> Optional[Pipeline]:
        with self._session_factory() as session:
            pipeline = session.get(Pipeline, pipeline_id)
            if pipeline is None or pipeline.org_id != org_id:
                return None
            return pipeline

    def get_default_pipeline(self, org_id: str) -> Optional[Pipeline]:
        """Flagged default first, then one named like a general intake pipeline, then the oldest."""

        with self._session_factory() as session:
            pipelines = session.exec(
                select(Pipeline).where(Pipeline.org_id == org_id).order_by(Pipeline.created_at)
            ).all()
        if not pipelines:
            return None
        for pipeline in pipelines:
            if pipeline.is_default:
                return pipeline
        for pipeline in pipelines:
            lowered = pipeline.name.lower()
            if "general" in lowered or "intake" in lowered:
                return pipeline
        return pipelines[0]

    def list_stages(self, pipeline_id: str) -> list[PipelineStage]:
        with self._session_factory() as session:
            return list(
                session.exec(
                    select(PipelineStage)
                    .where(PipelineStage.pipeline_id == pipeline_id)
                    .order_by(PipelineStage.position)
                ).all()
            )

    def list_pipelines(self, org_id: str) -> list[PipelineSummary]:
        with self._session_factory() as session:
            pipelines = session.exec(select(Pipeline).where(Pipeline.org_id == org_id)).all()
        summaries = []
        for pipeline in pipelines:
            stages = tuple(StageSummary(id=s.id, name=s.name, order=s.position) for s in self.list_stages(pipeline.id))
            summaries.append(
                PipelineSummary(id=pipeline.id, name=pipeline.name, is_default=pipeline.is_default, stages=stages)
            )
        return summaries

    # Team

    def add_team_member(self, org_id: str, name: str, email: str, role: str = "operator", **fields: Any) -> TeamMember:
        with self._session_factory() as session:
            member = TeamMember(org_id=org_id, name=name, email=email, role=role, **fields)
            session.add(member)
            session.commit()
            session.refresh(member)
            return member

    def get_member(self, org_id: str, member_id: str) -> Optional[TeamMember]:
        with self._session_factory() as session:
            member = session.get(TeamMember, member_id)
            if member is None or member.org_id != org_id:
                return None
            return member

    def list_team(self, org_id: str, role: str | None = None) -> list[TeamMember]:
        with self._session_factory() as session:
            query = select(TeamMember).where(TeamMember.org_id == org_id, TeamMember.active == True)  # noqa: E712
            if role:
                query = query.where(TeamMember.role == role.lower())
            return list(session.exec(query).all())

    def open_assignment_counts(self, org_id: str) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.exec(
                select(Intake).where(Intake.org_id == org_id, Intake.status != IntakeStatus.closed)
            ).all()
        return dict(Counter(row.assigned_to for row in rows if row.assigned_to))

    def team_summaries(self, org_id: str) -> list[TeamMemberSummary]:
        counts = self.open_assignment_counts(org_id)
        return [
            TeamMemberSummary(
                id=m.id, name=m.name, email=m.email, role=m.role, open_assignments=counts.get(m.id, 0)
            )
            for m in self.list_team(org_id)
        ]

    # Intakes

    def create_intake(self, org_id: str, title: str, **fields: Any) -> Intake:
        if fields.get("sla_due_at") is not None:
            fields["sla_due_at"] = to_db_time(fields["sla_due_at"])
        with self._session_factory() as session:
            intake = Intake(org_id=org_id, title=title, **fields)
            session.add(intake)
            session.commit()
            session.refresh(intake)
            return intake

    def get_intake(self, org_id: str, intake_id: str) -> Optional[Intake]:
        with self._session_factory() as session:
            intake = session.get(Intake, intake_id)
            if intake is None or intake.org_id != org_id:
                return None
            return intake

    def update_intake(self, org_id: str, intake_id: str, *, triggered_by: str = "agent", **changes: Any) -> ChangeEvent:
        with self._session_factory() as session:
            intake = session.get(Intake, intake_id)
            if intake is None or intake.org_id != org_id:
                raise LookupError(intake_id)
            before = snapshot(intake)
            for key, value in changes.items():
                setattr(intake, key, value)
            intake.updated_at = to_db_time(datetime.now(timezone.utc))
            session.add(intake)
            session.commit()
            session.refresh(intake)
            return ChangeEvent(
                entity="intake",
                operation=ChangeOperation.update,
                entity_id=intake.id,
                org_id=org_id,
                before=before,
                after=snapshot(intake),
                triggered_by=triggered_by,
                correlation_id=intake.correlation_id,
            )

    def list_sla_intakes(self, org_id: str) -> list[Intake]:
        """Open intakes that carry a due time and have not breached yet."""

        with self._session_factory() as session:
            return list(
                session.exec(
                    select(Intake)
                    .where(
                        Intake.org_id == org_id,
                        Intake.status != IntakeStatus.closed,
                        Intake.sla_due_at.is_not(None),
                        Intake.sla_breached_at.is_(None),
                    )
                    .order_by(Intake.sla_due_at)
                ).all()
            )

    def mark_intake_sla(
        self,
        org_id: str,
        intake_id: str,
        *,
        warned_at: datetime | None = None,
        breached_at: datetime | None = None,
    ) -> None:
        with self._session_factory() as session:
            intake = session.get(Intake, intake_id)
            if intake is None or intake.org_id != org_id:
                raise LookupError(intake_id)
            if warned_at is not None:
                intake.sla_warned_at = to_db_time(warned_at)
            if breached_at is not None:
                intake.sla_breached_at = to_db_time(breached_at)
            session.add(intake)
            session.commit()

    def list_open_intakes(self, org_id: str, limit: int = 20) -> list[IntakeSummary]:
        with self._session_factory() as session:
            rows = session.exec(
                select(Intake)
                .where(Intake.org_id == org_id, Intake.status != IntakeStatus.closed)
                .order_by(Intake.created_at.desc())
                .limit(limit)
            ).all()
        return [
            IntakeSummary(
                id=r.id,
                title=r.title,
                status=r.status.value if isinstance(r.status, IntakeStatus) else str(r.status),
                pipeline_id=r.pipeline_id,
                stage_id=r.stage_id,
                assigned_to=r.assigned_to,
                contact_email=r.contact_email,
            )
            for r in rows
        ]

    # Calendar

    def get_event(self, org_id: str, event_id: str) -> Optional[CalendarEvent]:
        with self._session_factory() as session:
            event = session.get(CalendarEvent, event_id)
            if event is None or event.org_id != org_id:
                return None
            return event

    def find_overlapping_events(
        self,
        org_id: str,
        attendees: list[str],
        start: datetime,
        end: datetime,
        *,
        exclude_event_id: str | None = None,
    ) -> list[CalendarEvent]:
        """Scheduled events sharing an attendee whose window overlaps [start, end)."""

        wanted = {a.lower() for a in attendees}
        start_db, end_db = to_db_time(start), to_db_time(end)
        with self._session_factory() as session:
            rows = session.exec(
                select(CalendarEvent).where(
                    CalendarEvent.org_id == org_id,
                    CalendarEvent.status == CalendarEventStatus.scheduled,
                    CalendarEvent.start_at < end_db,
                    CalendarEvent.end_at > start_db,
                )
            ).all()
        hits = []
        for row in rows:
            if exclude_event_id and row.id == exclude_event_id:
                continue
            if wanted and not wanted.intersection(a.lower() for a in row.attendees or []):
                continue
            hits.append(row)
        return hits

    def create_event(self, org_id: str, *, triggered_by: str = "agent", **fields: Any) -> tuple[CalendarEvent, ChangeEvent]:
        fields["start_at"] = to_db_time(fields["start_at"])
        fields["end_at"] = to_db_time(fields["end_at"])
        with self._session_factory() as session:
            event = CalendarEvent(org_id=org_id, **fields)
            session.add(event)
            session.commit()
            session.refresh(event)
            change = ChangeEvent(
                entity="calendar_event",
                operation=ChangeOperation.create,
                entity_id=event.id,
                org_id=org_id,
                after=snapshot(event),
                triggered_by=triggered_by,
            )
            return event, change

    def update_event(
        self, org_id: str, event_id: str, *, triggered_by: str = "agent", **changes: Any
    ) -> tuple[CalendarEvent, ChangeEvent]:
        for key in ("start_at", "end_at"):
            if changes.get(key) is not None:
                changes[key] = to_db_time(changes[key])
        with self._session_factory() as session:
            event = session.get(CalendarEvent, event_id)
            if event is None or event.org_id != org_id:
                raise LookupError(event_id)
            before = snapshot(event)
            for key, value in changes.items():
                setattr(event, key, value)
            event.updated_at = to_db_time(datetime.now(timezone.utc))
            session.add(event)
            session.commit()
            session.refresh(event)
            change = ChangeEvent(
                entity="calendar_event",
                operation=ChangeOperation.update,
                entity_id=event.id,
                org_id=org_id,
                before=before,
                after=snapshot(event),
                triggered_by=triggered_by,
            )
            return event, change

    # Notifications and workflows

    def add_notification(self, org_id: str, **fields: Any) -> Notification:
        with self._session_factory() as session:
            row = Notification(org_id=org_id, **fields)
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def list_notifications(self, org_id: str, recipient_id: str | None = None) -> list[Notification]:
        with self._session_factory() as session:
            query = select(Notification).where(Notification.org_id == org_id)
            if recipient_id:
                query = query.where(Notification.recipient_id == recipient_id)
            return list(session.exec(query.order_by(Notification.id)).all())

    def add_workflow(self, org_id: str, name: str, url: str) -> Workflow:
        with self._session_factory() as session:
            row = Workflow(org_id=org_id, name=name, url=url)
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def get_workflow(self, org_id: str, workflow_id: str) -> Optional[Workflow]:
        with self._session_factory() as session:
            row = session.get(Workflow, workflow_id)
            if row is None or row.org_id != org_id:
                return None
            return row

    # Activity log

    def log_activity(
        self,
        org_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        *,
        actor: str = "agent",
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._session_factory() as session:
            session.add(
                ActivityLog(
                    org_id=org_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    actor=actor,
                    correlation_id=correlation_id,
                    details=details or {},
                )
            )
            session.commit()

    def list_activity(self, org_id: str, entity_id: str | None = None) -> list[ActivityLog]:
        with self._session_factory() as session:
            query = select(ActivityLog).where(ActivityLog.org_id == org_id)
            if entity_id:
                query = query.where(ActivityLog.entity_id == entity_id)
            return list(session.exec(query.order_by(ActivityLog.id)).all())

    # Decisions

    def save_decision(self, record: DecisionRecord) -> None:
        decision = record.decision
        with self._session_factory() as session:
            row = session.get(DecisionRow, decision.id)
            if row is None:
                row = DecisionRow(
                    id=decision.id,
                    org_id=decision.org_id,
                    input_id=decision.input_id,
                    correlation_id=decision.correlation_id,
                    state=record.state.value,
                    created_at=to_db_time(record.created_at),
                )
            row.state = record.state.value
            row.category = decision.intent.category
            row.confidence = decision.confidence
            row.requires_confirmation = decision.requires_confirmation
            row.is_fallback = decision.is_fallback
            row.record = record.to_dict()
            row.updated_at = to_db_time(record.updated_at)
            session.add(row)
            session.commit()

    def get_decision(self, org_id: str, decision_id: str) -> Optional[DecisionRecord]:
        with self._session_factory() as session:
            row = session.get(DecisionRow, decision_id)
        if row is None or row.org_id != org_id or not row.record:
            return None
        return DecisionRecord.from_dict(row.record)

    def list_decisions(self, org_id: str, *, state: str | None = None, limit: int = 50) -> list[DecisionRow]:
        with self._session_factory() as session:
            query = select(DecisionRow).where(DecisionRow.org_id == org_id)
            if state:
                query = query.where(DecisionRow.state == state)
            return list(session.exec(query.order_by(DecisionRow.created_at.desc()).limit(limit)).all())

    def recent_decisions(
        self,
        org_id: str,
        *,
        correlation_ids: list[str] | None = None,
        contact_email: str | None = None,
        limit: int = 5,
    ) -> list[HistoricalDecision]:
        """Latest decisions for the same thread or contact, newest first."""

        rows = self.list_decisions(org_id, limit=200)
        wanted = set(correlation_ids or [])
        picked: list[HistoricalDecision] = []
        for row in rows:
            contact = ((row.record.get("input") or {}).get("contact_info") or {}).get("email")
            same_thread = row.correlation_id in wanted
            same_contact = bool(contact_email) and contact == contact_email
            if not (same_thread or same_contact):
                continue
            actions = (row.record.get("decision") or {}).get("actions") or []
            picked.append(
                HistoricalDecision(
                    decision_id=row.id,
                    category=row.category,
                    state=row.state,
                    action_kinds=tuple(a.get("kind", "") for a in actions),
                    created_at=from_db_time(row.created_at),
                )
            )
            if len(picked) >= limit:
                break
        return picked

    # Action executions

    def get_action_result(self, key: str) -> Optional[ActionHandlerResult]:
        with self._session_factory() as session:
            row = session.get(ActionExecution, key)
            if row is None:
                return None
            return ActionHandlerResult.from_dict(row.result)

    def save_action_result(self, ctx: ExecutionContext, kind: str, result: ActionHandlerResult) -> None:
        with self._session_factory() as session:
            row = session.get(ActionExecution, ctx.idempotency_key)
            if row is None:
                row = ActionExecution(
                    key=ctx.idempotency_key,
                    org_id=ctx.org_id,
                    decision_id=ctx.decision_id,
                    action_index=str(ctx.action_index),
                    kind=kind,
                    success=result.success,
                )
            row.success = result.success
            row.result = result.to_dict()
            session.add(row)
            session.commit()

    def delete_action_result(self, key: str) -> None:
        with self._session_factory() as session:
            row = session.get(ActionExecution, key)
            if row is not None:
                session.delete(row)
                session.commit()
