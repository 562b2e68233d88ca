from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlmodel import Field, JSON, SQLModel

from .utils import new_id


def _now() -> datetime:
    # SQLite drops tzinfo; rows always hold naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IntakeStatus(str, Enum):
    new = "new"
    assigned = "assigned"
    escalated = "escalated"
    closed = "closed"


class CalendarEventStatus(str, Enum):
    scheduled = "scheduled"
    cancelled = "cancelled"


class NotificationStatus(str, Enum):
    sent = "sent"
    suppressed = "suppressed"


class Organization(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = ""
    timezone: str = Field(default="UTC")
    plan: str = Field(default="standard")
    enabled_actions: list[str] = Field(default_factory=list, sa_type=JSON)
    auto_execute_threshold: Optional[float] = None
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None


class Pipeline(SQLModel, table=True):
    id: str = Field(default_factory=lambda: new_id("pl"), primary_key=True)
    org_id: str = Field(index=True)
    name: str
    is_default: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_now)


class PipelineStage(SQLModel, table=True):
    id: str = Field(default_factory=lambda: new_id("stg"), primary_key=True)
    pipeline_id: str = Field(index=True)
    name: str
    position: int = Field(default=0)


class TeamMember(SQLModel, table=True):
    id: str = Field(default_factory=lambda: new_id("tm"), primary_key=True)
    org_id: str = Field(index=True)
    name: str
    email: str
    role: str = Field(default="operator")
    phone: Optional[str] = None
    active: bool = Field(default=True)
    channels: list[str] = Field(default_factory=list, sa_type=JSON)


class Intake(SQLModel, table=True):
    id: str = Field(default_factory=lambda: new_id("int"), primary_key=True)
    org_id: str = Field(index=True)
    title: str
    description: str = ""
    status: IntakeStatus = Field(default=IntakeStatus.new)
    priority: int = Field(default=3)
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    assigned_to: Optional[str] = Field(default=None, index=True)
    contact_email: Optional[str] = None
    correlation_id: Optional[str] = Field(default=None, index=True)
    sla_due_at: Optional[datetime] = None
    sla_warned_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class CalendarEvent(SQLModel, table=True):
    id: str = Field(default_factory=lambda: new_id("evt"), primary_key=True)
    org_id: str = Field(index=True)
    title: str
    description: str = ""
    location: Optional[str] = None
    start_at: datetime
    end_at: datetime
    attendees: list[str] = Field(default_factory=list, sa_type=JSON)
    status: CalendarEventStatus = Field(default=CalendarEventStatus.scheduled)
    intake_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_by: str = Field(default="agent")
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: str = Field(index=True)
    recipient_id: str = Field(index=True)
    channel: str
    title: str
    message: str
    urgency: str = Field(default="medium")
    status: NotificationStatus = Field(default=NotificationStatus.sent)
    intake_id: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Workflow(SQLModel, table=True):
    id: str = Field(default_factory=lambda: new_id("wf"), primary_key=True)
    org_id: str = Field(index=True)
    name: str
    url: str
    active: bool = Field(default=True)


class ActivityLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: str = Field(index=True)
    entity_type: str
    entity_id: str = Field(index=True)
    action: str
    actor: str = Field(default="agent")
    correlation_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    created_at: datetime = Field(default_factory=_now)


class DecisionRow(SQLModel, table=True):
    id: str = Field(primary_key=True)
    org_id: str = Field(index=True)
    input_id: str
    correlation_id: str = Field(index=True)
    state: str = Field(index=True)
    category: str = ""
    confidence: float = 0.0
    requires_confirmation: bool = False
    is_fallback: bool = False
    record: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ActionExecution(SQLModel, table=True):
    key: str = Field(primary_key=True)
    org_id: str = Field(index=True)
    decision_id: str = Field(index=True)
    action_index: str
    kind: str
    success: bool
    result: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    created_at: datetime = Field(default_factory=_now)
