"""Provider-agnostic prompt assembly for intent classification.

The user message is a plain sectioned document (``## Input``, ``## Team``...)
so any provider, including the offline mock, can read it.
"""

from typing import Any

from ..domain import ActionKind, DecisionContext, Urgency
from ..llm.base import ChatMessage
from ..utils import truncate

MAX_CONTENT_CHARS = 6000
PROMPT_HIDDEN_METADATA = frozenset({"dedupe_key"})

SYSTEM_PROMPT = (
    "You are the operations agent for a service business. Classify each incoming item "
    "and propose zero or more concrete actions from the allowed list.\n"
    "Rules:\n"
    "- Only use action kinds listed under Available actions.\n"
    "- Only reference ids (intakes, pipelines, stages, team members) present in the context.\n"
    "- Prefer escalate when you are unsure what to do.\n"
    "- confidence is your probability (0 to 1) that the classification and actions are correct.\n"
    "Return only JSON with keys intent {category, urgency, confidence, reasoning} and "
    "actions [{kind, params}]."
)

ACTION_PARAM_HINTS: dict[ActionKind, str] = {
    ActionKind.assign_pipeline: "intake_id, pipeline_id?, stage_id?, assignee_id?, reason?",
    ActionKind.create_event: "title, start (ISO-8601), end (ISO-8601), attendees[], description?, location?, intake_id?",
    ActionKind.update_event: "event_id, title?, start?, end?, attendees?, description?, location?",
    ActionKind.cancel_event: "event_id, reason?",
    ActionKind.send_notification: "title, message, recipient_id? or recipient_role?, urgency?, channels?, intake_id?",
    ActionKind.trigger_automation: "workflow_id or url, payload{}, destructive?",
    ActionKind.escalate: "reason, intake_id?, role?, urgency?",
}


def response_schema(available: list[str] | tuple[str, ...]) -> dict[str, Any]:
    kinds = list(available) or [k.value for k in ActionKind]
    return {
        "type": "json_schema",
        "name": "agent_decision",
        "strict": False,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "intent": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "category": {"type": "string"},
                        "urgency": {"type": "string", "enum": [u.value for u in Urgency]},
                        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        "reasoning": {"type": "string"},
                    },
                    "required": ["category", "urgency", "confidence", "reasoning"],
                },
                "actions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "kind": {"type": "string", "enum": kinds},
                            "params": {"type": "object"},
                        },
                        "required": ["kind", "params"],
                    },
                },
            },
            "required": ["intent", "actions"],
        },
    }


def build_messages(ctx: DecisionContext) -> list[ChatMessage]:
    return [
        ChatMessage(role="system", content=SYSTEM_PROMPT),
        ChatMessage(role="user", content=build_user_prompt(ctx)),
    ]


def build_user_prompt(ctx: DecisionContext) -> str:
    inp = ctx.input
    contact = inp.contact_info
    metadata = {
        k: v for k, v in inp.metadata.items() if isinstance(v, (str, int, float, bool)) and k not in PROMPT_HIDDEN_METADATA
    }
    lines = [
        "## Input",
        f"source: {inp.source.value}",
        f"type: {inp.type}",
        f"priority: {inp.priority}",
        f"correlation_id: {inp.correlation_id}",
        f"received_at: {inp.timestamp.isoformat()}",
    ]
    if contact is not None:
        lines.append(f"contact: {contact.name or ''} <{contact.email or ''}> {contact.phone or ''}".rstrip())
    for key, value in sorted(metadata.items()):
        lines.append(f"{key}: {value}")
    lines.append("content:")
    lines.append(truncate(inp.raw_content, MAX_CONTENT_CHARS))

    lines += ["", "## Organization", f"name: {ctx.org.name}", f"timezone: {ctx.org.timezone}"]

    lines += ["", "## Pipelines"]
    for p in ctx.pipelines:
        stages = ", ".join(f"{s.id}={s.name}" for s in p.stages)
        lines.append(f"- id={p.id} name={p.name} default={'yes' if p.is_default else 'no'} stages=[{stages}]")
    if not ctx.pipelines:
        lines.append("- (none)")

    lines += ["", "## Team"]
    for m in ctx.team:
        lines.append(f"- id={m.id} name={m.name} role={m.role} open_assignments={m.open_assignments}")
    if not ctx.team:
        lines.append("- (none)")

    lines += ["", "## Open intakes"]
    for i in ctx.intakes:
        lines.append(
            f"- id={i.id} title={truncate(i.title, 80)} status={i.status} assigned_to={i.assigned_to or '-'}"
        )
    if not ctx.intakes:
        lines.append("- (none)")

    lines += ["", "## Recent decisions"]
    for d in ctx.recent_decisions:
        lines.append(f"- {d.created_at.isoformat()} category={d.category} state={d.state} actions={','.join(d.action_kinds)}")
    if not ctx.recent_decisions:
        lines.append("- (none)")

    lines += ["", "## Available actions", f"available_actions: {', '.join(ctx.available_actions)}"]
    for kind in ctx.available_actions:
        hint = ACTION_PARAM_HINTS.get(ActionKind(kind))
        if hint:
            lines.append(f"- {kind}: {hint}")
    return "\n".join(lines)


def build_retry_messages(
    messages: list[ChatMessage], previous: str, error: Exception | None, attempt: int
) -> list[ChatMessage]:
    reason = "unknown validation error"
    if error is not None:
        reason = f"{type(error).__name__}: {str(error)[:180]}"
    correction = (
        "Previous response failed validation and must be corrected.\n"
        f"Retry attempt: {attempt + 1}\n"
        f"Failure reason: {reason}\n"
        "Return only valid JSON conforming to the required schema. Do not include markdown fences."
    )
    return [
        *messages,
        ChatMessage(role="assistant", content=truncate(previous, 2000) or "(empty)"),
        ChatMessage(role="user", content=correction),
    ]
