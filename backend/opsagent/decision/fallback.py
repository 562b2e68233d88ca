"""Rule-based fallback decision used when model calls fail.

The result never executes on its own: it always asks for confirmation and
carries a single escalate action so a human sees the input.
"""

from ..domain import (
    AgentDecisionResult,
    AgentInput,
    EscalateAction,
    EscalateParams,
    IntentClassification,
    Urgency,
    urgency_from_priority,
)
from ..utils import truncate

ESCALATION_ROLE = "admin"


def build_fallback_decision(agent_input: AgentInput, reason: str) -> AgentDecisionResult:
    urgency = urgency_from_priority(agent_input.priority)
    escalation_urgency = Urgency.critical if urgency == Urgency.critical else Urgency.high
    subject = agent_input.metadata.get("subject") or agent_input.type
    intent = IntentClassification(
        category="unclassified",
        urgency=urgency,
        confidence=0.0,
        reasoning=truncate(f"Automatic classification unavailable: {reason}", 500),
    )
    action = EscalateAction(
        params=EscalateParams(
            reason=truncate(f"Needs manual review ({agent_input.source.value}: {subject}). {reason}", 500),
            intake_id=agent_input.metadata.get("intake_id"),
            role=ESCALATION_ROLE,
            urgency=escalation_urgency,
        )
    )
    return AgentDecisionResult(
        input_id=agent_input.id,
        org_id=agent_input.org_id,
        correlation_id=agent_input.correlation_id,
        intent=intent,
        actions=[action],
        confidence=0.0,
        requires_confirmation=True,
        is_fallback=True,
    )
