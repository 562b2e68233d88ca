"""Decision engine retries, validation and the confirmation gate."""

import asyncio
import json

from opsagent.decision.engine import DecisionEngine
from opsagent.domain import (
    ActionKind,
    AgentInput,
    CancelEventAction,
    CancelEventParams,
    DecisionContext,
    InputSource,
    IntentClassification,
    OrgSettingsSnapshot,
    Urgency,
)
from opsagent.errors import LLMAuthenticationError, LLMRateLimitError, LLMTimeoutError
from opsagent.llm.base import LLMClient, LLMResponse

ALL_ACTIONS = tuple(k.value for k in ActionKind)

VALID = json.dumps(
    {
        "intent": {"category": "billing", "urgency": "HIGH", "confidence": 0.92, "reasoning": "invoice question"},
        "actions": [
            {"type": "send_notification", "params": {"title": "Invoice", "message": "Check it", "recipient_role": "admin"}},
            {"kind": "trigger_automation", "params": {"url": "https://hooks.example.com/x"}},
        ],
    }
)


class ScriptedLLM(LLMClient):
    provider = "scripted"

    def __init__(self, script):
        super().__init__(model="scripted")
        self.script = list(script)
        self.calls = []

    async def _complete(self, messages, *, max_tokens, temperature, response_schema):
        self.calls.append(messages)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return LLMResponse(content=item, provider=self.provider, model=self.model)


def _context(available=ALL_ACTIONS, threshold=None, priority=3):
    agent_input = AgentInput(
        source=InputSource.email,
        type="new_inquiry",
        raw_content="Where is my invoice?",
        org_id="org-1",
        correlation_id="cor-1",
        metadata={"subject": "Invoice", "intake_id": "int_1"},
        priority=priority,
    )
    return DecisionContext(
        input=agent_input,
        org=OrgSettingsSnapshot(org_id="org-1", auto_execute_threshold=threshold),
        available_actions=tuple(available),
    )


def _engine(llm, delays=None, **kwargs):
    async def fake_sleep(delay):
        if delays is not None:
            delays.append(delay)

    return DecisionEngine(llm, None, max_retries=3, retry_base_s=0.5, sleep=fake_sleep, **kwargs)


def test_valid_response_is_normalized_and_filtered_to_enabled_actions():
    llm = ScriptedLLM([VALID])
    ctx = _context(available=[k for k in ALL_ACTIONS if k != "trigger_automation"])

    decision = asyncio.run(_engine(llm).decide(ctx.input, ctx))

    assert decision.is_fallback is False
    assert decision.intent.urgency == Urgency.high
    assert [a.kind for a in decision.actions] == ["send_notification"]
    assert decision.requires_confirmation is False
    assert decision.provider == "scripted"


def test_three_timeouts_fall_back_to_escalation():
    delays = []
    llm = ScriptedLLM([LLMTimeoutError("slow", provider="scripted")] * 3)
    ctx = _context(priority=5)
    engine = _engine(llm, delays)

    decision = asyncio.run(engine.decide(ctx.input, ctx))

    assert len(llm.calls) == 3
    assert delays == [0.5, 1.0]
    assert decision.is_fallback is True
    assert decision.requires_confirmation is True
    assert decision.confidence == 0.0
    assert [a.kind for a in decision.actions] == ["escalate"]
    assert decision.actions[0].params.urgency == Urgency.critical
    assert decision.actions[0].params.intake_id == "int_1"
    assert engine.fallback_count == 1


def test_non_retryable_error_falls_back_immediately():
    llm = ScriptedLLM([LLMAuthenticationError("bad key", provider="scripted"), VALID])
    ctx = _context()

    decision = asyncio.run(_engine(llm).decide(ctx.input, ctx))

    assert len(llm.calls) == 1
    assert decision.is_fallback is True


def test_rate_limit_waits_for_retry_after():
    delays = []
    llm = ScriptedLLM([LLMRateLimitError("slow down", provider="scripted", retry_after=3), VALID])
    ctx = _context()

    decision = asyncio.run(_engine(llm, delays).decide(ctx.input, ctx))

    assert delays == [3]
    assert decision.is_fallback is False


def test_invalid_json_gets_one_corrective_reprompt():
    llm = ScriptedLLM(["{not-json", "```json\n" + VALID + "\n```"])
    ctx = _context()

    decision = asyncio.run(_engine(llm).decide(ctx.input, ctx))

    assert decision.is_fallback is False
    assert len(llm.calls) == 2
    assert "Previous response failed validation" in llm.calls[1][-1].content


def test_two_invalid_responses_fall_back():
    bad = json.dumps({"intent": {"category": "x", "urgency": "medium", "confidence": 7}, "actions": []})
    llm = ScriptedLLM([bad, bad])
    ctx = _context()

    decision = asyncio.run(_engine(llm).decide(ctx.input, ctx))

    assert len(llm.calls) == 2
    assert decision.is_fallback is True


def test_confirmation_gate():
    engine = _engine(ScriptedLLM([]))
    cancel = CancelEventAction(params=CancelEventParams(event_id="evt_1"))

    def intent(confidence, urgency=Urgency.medium):
        return IntentClassification(category="x", urgency=urgency, confidence=confidence)

    assert engine.requires_confirmation(intent(0.9), []) is False
    assert engine.requires_confirmation(intent(0.8), []) is True
    assert engine.requires_confirmation(intent(0.9, Urgency.critical), []) is True
    assert engine.requires_confirmation(intent(0.97, Urgency.critical), []) is False
    assert engine.requires_confirmation(intent(0.99), [cancel]) is True
    assert engine.requires_confirmation(intent(0.9), [], org_threshold=0.95) is True
