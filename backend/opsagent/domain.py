"""Core data contracts for the orchestration pipeline.

Inputs, decision context, decisions, actions, and audit records are defined
here so every layer (ingress, decision engine, executor, agent) speaks the
same types. Actions are pydantic models forming a closed union over
``ActionKind``; everything else is a plain dataclass.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .errors import InvalidStateError
from .utils import new_id, utc_now


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value) if isinstance(value, str) else utc_now()


class InputSource(str, Enum):
    webhook = "webhook"
    email = "email"
    worker = "worker"
    db_trigger = "db_trigger"
    manual = "manual"


class Urgency(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class Channel(str, Enum):
    in_app = "in_app"
    email = "email"
    sms = "sms"
    push = "push"


def urgency_from_priority(priority: int) -> Urgency:
    if priority >= 5:
        return Urgency.critical
    if priority == 4:
        return Urgency.high
    if priority == 3:
        return Urgency.medium
    return Urgency.low


@dataclass(frozen=True)
class ContactInfo:
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class AgentInput:
    """Canonical normalized trigger; immutable once published."""

    source: InputSource
    type: str
    raw_content: str
    org_id: str
    correlation_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    contact_info: Optional[ContactInfo] = None
    priority: int = 3
    id: str = field(default_factory=lambda: new_id("inp"))
    timestamp: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        contact = None
        if self.contact_info is not None:
            contact = {
                "email": self.contact_info.email,
                "name": self.contact_info.name,
                "phone": self.contact_info.phone,
            }
        return {
            "id": self.id,
            "source": self.source.value,
            "type": self.type,
            "raw_content": self.raw_content,
            "org_id": self.org_id,
            "correlation_id": self.correlation_id,
            "metadata": dict(self.metadata),
            "contact_info": contact,
            "priority": self.priority,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AgentInput":
        contact = payload.get("contact_info")
        timestamp = payload.get("timestamp")
        return cls(
            id=payload["id"],
            source=InputSource(payload["source"]),
            type=payload["type"],
            raw_content=payload.get("raw_content", ""),
            org_id=payload["org_id"],
            correlation_id=payload["correlation_id"],
            metadata=dict(payload.get("metadata") or {}),
            contact_info=ContactInfo(**contact) if contact else None,
            priority=int(payload.get("priority", 3)),
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else (timestamp or utc_now()),
        )


# Decision context snapshot


@dataclass(frozen=True)
class OrgSettingsSnapshot:
    org_id: str
    name: str = ""
    timezone: str = "UTC"
    enabled_actions: tuple[str, ...] = ()
    auto_execute_threshold: Optional[float] = None
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None


@dataclass(frozen=True)
class StageSummary:
    id: str
    name: str
    order: int


@dataclass(frozen=True)
class PipelineSummary:
    id: str
    name: str
    is_default: bool = False
    stages: tuple[StageSummary, ...] = ()


@dataclass(frozen=True)
class TeamMemberSummary:
    id: str
    name: str
    email: str
    role: str
    open_assignments: int = 0


@dataclass(frozen=True)
class IntakeSummary:
    id: str
    title: str
    status: str
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    assigned_to: Optional[str] = None
    contact_email: Optional[str] = None


@dataclass(frozen=True)
class HistoricalDecision:
    decision_id: str
    category: str
    state: str
    action_kinds: tuple[str, ...]
    created_at: datetime


@dataclass(frozen=True)
class DecisionContext:
    """Read-only snapshot assembled for one decision."""

    input: AgentInput
    org: OrgSettingsSnapshot
    pipelines: tuple[PipelineSummary, ...] = ()
    team: tuple[TeamMemberSummary, ...] = ()
    intakes: tuple[IntakeSummary, ...] = ()
    recent_decisions: tuple[HistoricalDecision, ...] = ()
    available_actions: tuple[str, ...] = ()
    built_at: datetime = field(default_factory=utc_now)


# Intent and actions


class IntentClassification(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str = Field(min_length=1, max_length=80)
    urgency: Urgency
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ActionKind(str, Enum):
    assign_pipeline = "assign_pipeline"
    create_event = "create_event"
    update_event = "update_event"
    cancel_event = "cancel_event"
    send_notification = "send_notification"
    trigger_automation = "trigger_automation"
    escalate = "escalate"


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AssignPipelineParams(_Params):
    intake_id: str
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    assignee_id: Optional[str] = None
    reason: str = ""


class CreateEventParams(_Params):
    title: str = Field(min_length=1, max_length=200)
    start: datetime
    end: datetime
    attendees: list[str] = Field(default_factory=list)
    description: str = ""
    location: Optional[str] = None
    intake_id: Optional[str] = None
    override_conflicts: bool = False

    @model_validator(mode="after")
    def _check_window(self) -> "CreateEventParams":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class UpdateEventParams(_Params):
    event_id: str
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    attendees: Optional[list[str]] = None
    description: Optional[str] = None
    location: Optional[str] = None
    override_conflicts: bool = False


class CancelEventParams(_Params):
    event_id: str
    reason: str = ""


class SendNotificationParams(_Params):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1)
    recipient_id: Optional[str] = None
    recipient_role: Optional[str] = None
    urgency: Urgency = Urgency.medium
    channels: Optional[list[Channel]] = None
    intake_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_recipient(self) -> "SendNotificationParams":
        if not self.recipient_id and not self.recipient_role:
            raise ValueError("recipient_id or recipient_role is required")
        return self


class TriggerAutomationParams(_Params):
    workflow_id: Optional[str] = None
    url: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    destructive: bool = False

    @model_validator(mode="after")
    def _check_target(self) -> "TriggerAutomationParams":
        if not self.workflow_id and not self.url:
            raise ValueError("workflow_id or url is required")
        return self


class EscalateParams(_Params):
    reason: str = Field(min_length=1)
    intake_id: Optional[str] = None
    role: str = "admin"
    urgency: Urgency = Urgency.high


class _Action(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @property
    def is_destructive(self) -> bool:
        return False

    def entity_keys(self) -> list[str]:
        """Downstream entities this action mutates; used for serialization locks."""

        return []


class AssignPipelineAction(_Action):
    kind: Literal["assign_pipeline"] = "assign_pipeline"
    params: AssignPipelineParams

    def entity_keys(self) -> list[str]:
        return [f"intake:{self.params.intake_id}"]


class CreateEventAction(_Action):
    kind: Literal["create_event"] = "create_event"
    params: CreateEventParams

    def entity_keys(self) -> list[str]:
        return sorted({f"calendar:{a.lower()}" for a in self.params.attendees}) or ["calendar:*"]


class UpdateEventAction(_Action):
    kind: Literal["update_event"] = "update_event"
    params: UpdateEventParams

    @property
    def is_destructive(self) -> bool:
        return True

    def entity_keys(self) -> list[str]:
        keys = {f"event:{self.params.event_id}"}
        keys.update(f"calendar:{a.lower()}" for a in self.params.attendees or [])
        return sorted(keys)


class CancelEventAction(_Action):
    kind: Literal["cancel_event"] = "cancel_event"
    params: CancelEventParams

    @property
    def is_destructive(self) -> bool:
        return True

    def entity_keys(self) -> list[str]:
        return [f"event:{self.params.event_id}"]


class SendNotificationAction(_Action):
    kind: Literal["send_notification"] = "send_notification"
    params: SendNotificationParams

    def entity_keys(self) -> list[str]:
        target = self.params.recipient_id or f"role:{self.params.recipient_role}"
        return [f"recipient:{target}"]


class TriggerAutomationAction(_Action):
    kind: Literal["trigger_automation"] = "trigger_automation"
    params: TriggerAutomationParams

    @property
    def is_destructive(self) -> bool:
        return self.params.destructive

    def entity_keys(self) -> list[str]:
        return [f"workflow:{self.params.workflow_id or self.params.url}"]


class EscalateAction(_Action):
    kind: Literal["escalate"] = "escalate"
    params: EscalateParams

    def entity_keys(self) -> list[str]:
        return [f"intake:{self.params.intake_id}"] if self.params.intake_id else []


AgentAction = Annotated[
    Union[
        AssignPipelineAction,
        CreateEventAction,
        UpdateEventAction,
        CancelEventAction,
        SendNotificationAction,
        TriggerAutomationAction,
        EscalateAction,
    ],
    Field(discriminator="kind"),
]

action_adapter: TypeAdapter = TypeAdapter(AgentAction)


def parse_action(data: dict[str, Any]) -> AgentAction:
    return action_adapter.validate_python(data)


@dataclass
class AgentDecisionResult:
    input_id: str
    org_id: str
    correlation_id: str
    intent: IntentClassification
    actions: list[AgentAction]
    confidence: float
    requires_confirmation: bool
    raw_response: Optional[str] = None
    is_fallback: bool = False
    provider: Optional[str] = None
    usage: dict[str, int] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("dec"))
    created_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "input_id": self.input_id,
            "org_id": self.org_id,
            "correlation_id": self.correlation_id,
            "intent": self.intent.model_dump(mode="json"),
            "actions": [a.model_dump(mode="json") for a in self.actions],
            "confidence": self.confidence,
            "requires_confirmation": self.requires_confirmation,
            "is_fallback": self.is_fallback,
            "provider": self.provider,
            "usage": dict(self.usage),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AgentDecisionResult":
        return cls(
            id=payload["id"],
            input_id=payload["input_id"],
            org_id=payload["org_id"],
            correlation_id=payload["correlation_id"],
            intent=IntentClassification.model_validate(payload["intent"]),
            actions=[parse_action(a) for a in payload.get("actions") or []],
            confidence=float(payload.get("confidence", 0.0)),
            requires_confirmation=bool(payload.get("requires_confirmation", True)),
            is_fallback=bool(payload.get("is_fallback", False)),
            provider=payload.get("provider"),
            usage=dict(payload.get("usage") or {}),
            created_at=_parse_time(payload.get("created_at")),
        )


# Lifecycle


class DecisionState(str, Enum):
    pending_classification = "PENDING_CLASSIFICATION"
    classified = "CLASSIFIED"
    auto_approved = "AUTO_APPROVED"
    awaiting_confirmation = "AWAITING_CONFIRMATION"
    executing = "EXECUTING"
    completed = "COMPLETED"
    failed = "FAILED"
    rejected = "REJECTED"
    expired = "EXPIRED"


ALLOWED_TRANSITIONS: dict[DecisionState, frozenset[DecisionState]] = {
    DecisionState.pending_classification: frozenset({DecisionState.classified}),
    DecisionState.classified: frozenset({DecisionState.auto_approved, DecisionState.awaiting_confirmation}),
    DecisionState.auto_approved: frozenset({DecisionState.executing}),
    DecisionState.awaiting_confirmation: frozenset(
        {DecisionState.executing, DecisionState.rejected, DecisionState.expired}
    ),
    DecisionState.executing: frozenset({DecisionState.completed, DecisionState.failed}),
    DecisionState.completed: frozenset(),
    DecisionState.failed: frozenset(),
    DecisionState.rejected: frozenset(),
    DecisionState.expired: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


@dataclass
class ActionHandlerResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    attempts: int = 1
    from_cache: bool = False
    retry_scheduled: bool = False

    @classmethod
    def ok(cls, **data: Any) -> "ActionHandlerResult":
        return cls(success=True, data=data)

    @classmethod
    def from_error(cls, exc: Exception) -> "ActionHandlerResult":
        code = getattr(exc, "code", type(exc).__name__)
        details = getattr(exc, "details", None) or {}
        return cls(
            success=False,
            data=dict(details),
            error=str(exc)[:500],
            error_code=code,
            retryable=bool(getattr(exc, "retryable", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "attempts": self.attempts,
            "from_cache": self.from_cache,
            "retry_scheduled": self.retry_scheduled,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ActionHandlerResult":
        return cls(
            success=bool(payload.get("success")),
            data=dict(payload.get("data") or {}),
            error=payload.get("error"),
            error_code=payload.get("error_code"),
            retryable=bool(payload.get("retryable", False)),
            attempts=int(payload.get("attempts", 1)),
        )


@dataclass
class DecisionRecord:
    """Audit record following a decision through its lifecycle."""

    decision: AgentDecisionResult
    input: AgentInput
    state: DecisionState = DecisionState.pending_classification
    state_history: list[dict[str, str]] = field(default_factory=list)
    action_results: dict[int, ActionHandlerResult] = field(default_factory=dict)
    resolved_by: Optional[str] = None
    resolution_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def decision_id(self) -> str:
        return self.decision.id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: DecisionState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateError(
                f"Decision {self.decision_id} cannot move from {self.state.value} to {target.value}",
                details={"from": self.state.value, "to": target.value},
            )
        now = utc_now()
        self.state_history.append({"from": self.state.value, "to": target.value, "at": now.isoformat()})
        self.state = target
        self.updated_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.to_payload(),
            "input": self.input.to_payload(),
            "state": self.state.value,
            "state_history": list(self.state_history),
            "action_results": {str(k): v.to_dict() for k, v in self.action_results.items()},
            "resolved_by": self.resolved_by,
            "resolution_reason": self.resolution_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DecisionRecord":
        return cls(
            decision=AgentDecisionResult.from_payload(payload["decision"]),
            input=AgentInput.from_payload(payload["input"]),
            state=DecisionState(payload["state"]),
            state_history=list(payload.get("state_history") or []),
            action_results={
                int(k): ActionHandlerResult.from_dict(v) for k, v in (payload.get("action_results") or {}).items()
            },
            resolved_by=payload.get("resolved_by"),
            resolution_reason=payload.get("resolution_reason"),
            created_at=_parse_time(payload.get("created_at")),
            updated_at=_parse_time(payload.get("updated_at")),
        )


@dataclass
class PendingDecision:
    record: DecisionRecord
    context: DecisionContext
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at


@dataclass(frozen=True)
class ExecutionContext:
    """Identity of one action execution, threaded through handlers."""

    decision_id: str
    action_index: int | str
    org_id: str
    correlation_id: str
    priority: int = 3
    dry_run: bool = False

    @property
    def idempotency_key(self) -> str:
        return f"{self.decision_id}:{self.action_index}"


class ChangeOperation(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """Structured before/after snapshot reported by a write site."""

    entity: str
    operation: ChangeOperation
    entity_id: str
    org_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    triggered_by: str = "system"
    correlation_id: Optional[str] = None
