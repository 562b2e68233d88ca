"""LLM client contract, provider failover and the offline mock."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from opsagent.domain import ActionKind, AgentInput, DecisionContext, InputSource, OrgSettingsSnapshot
from opsagent.decision.prompt import build_messages, response_schema
from opsagent.errors import (
    AllProvidersFailedError,
    ConfigurationError,
    ContentFilterError,
    LLMRateLimitError,
    LLMTimeoutError,
    ModelOverloadedError,
    is_retryable_llm_error,
)
from opsagent.llm.anthropic_client import AnthropicClient
from opsagent.llm.base import ChatMessage, LLMClient, LLMResponse, map_status_error
from opsagent.llm.mock_client import MockLLMClient
from opsagent.llm.openai_client import OpenAIClient
from opsagent.llm.registry import FailoverLLMClient, LLMClientRegistry


class StaticLLM(LLMClient):
    def __init__(self, provider, outcome, delay=0.0):
        super().__init__(model=f"{provider}-model")
        self.provider = provider
        self.outcome = outcome
        self.delay = delay

    async def _complete(self, messages, *, max_tokens, temperature, response_schema):
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return LLMResponse(content=self.outcome, provider=self.provider, model=self.model)


def _context(content, **metadata):
    agent_input = AgentInput(
        source=InputSource.webhook,
        type="form.submitted",
        raw_content=content,
        org_id="org-1",
        correlation_id="cor-1",
        metadata=metadata,
        priority=4,
    )
    return DecisionContext(
        input=agent_input,
        org=OrgSettingsSnapshot(org_id="org-1"),
        available_actions=tuple(k.value for k in ActionKind),
    )


def test_status_codes_map_to_error_family():
    assert isinstance(map_status_error("openai", 429, "slow", retry_after=2), LLMRateLimitError)
    assert isinstance(map_status_error("openai", 529, "busy"), ModelOverloadedError)
    assert isinstance(map_status_error("openai", 400, "content policy violation"), ContentFilterError)
    assert map_status_error("openai", 500, "oops").retryable is True
    assert is_retryable_llm_error(map_status_error("openai", 401, "bad key")) is False
    assert is_retryable_llm_error(ValueError("x")) is False


def test_hard_timeout_is_enforced():
    client = StaticLLM("slow", "{}", delay=1)

    with pytest.raises(LLMTimeoutError):
        asyncio.run(client.complete([ChatMessage(role="user", content="hi")], timeout_s=0.01))


def test_failover_uses_next_provider_and_aggregates_errors():
    ok = FailoverLLMClient(
        [StaticLLM("first", ModelOverloadedError("busy", provider="first")), StaticLLM("second", "{}")]
    )
    response = asyncio.run(ok.complete([ChatMessage(role="user", content="hi")]))
    assert response.provider == "second"

    broken = FailoverLLMClient([StaticLLM("a", LLMTimeoutError("t", provider="a"))])
    with pytest.raises(AllProvidersFailedError) as exc:
        asyncio.run(broken.complete([ChatMessage(role="user", content="hi")]))
    assert exc.value.retryable is True


def test_registry_caches_clients_and_rejects_unknown_providers():
    registry = LLMClientRegistry()
    assert registry.get_or_create("mock") is registry.get_or_create("mock")
    assert isinstance(registry.default_client(), MockLLMClient)
    with pytest.raises(ConfigurationError):
        registry.get_or_create("nope")


def test_real_providers_require_api_keys():
    with pytest.raises(ConfigurationError):
        OpenAIClient(api_key="")
    with pytest.raises(ConfigurationError):
        AnthropicClient(api_key="")


def test_openai_text_extraction_falls_back_to_output_parts():
    client = OpenAIClient.__new__(OpenAIClient)
    response = SimpleNamespace(
        output_text="",
        output=[SimpleNamespace(content=[SimpleNamespace(text='{"a":'), SimpleNamespace(text="1}")])],
    )
    assert client._extract_text(response) == '{"a":\n1}'


def test_anthropic_request_carries_schema_in_system_prompt():
    client = AnthropicClient.__new__(AnthropicClient)
    client.model = "claude-test"
    captured = {}
    client._client = SimpleNamespace(messages=SimpleNamespace(create=lambda **kw: captured.update(kw)))

    client._create_message(
        [ChatMessage(role="system", content="be brief"), ChatMessage(role="user", content="hi")],
        100,
        0.1,
        response_schema(["escalate"]),
    )

    assert captured["messages"] == [{"role": "user", "content": "hi"}]
    assert captured["system"].startswith("be brief")
    assert "single JSON object" in captured["system"]


def test_mock_client_classifies_and_proposes_actions():
    ctx = _context("Can we schedule a meeting next week?", intake_id="int_9")

    response = asyncio.run(MockLLMClient().complete(build_messages(ctx)))
    payload = json.loads(response.content)

    assert payload["intent"]["category"] == "scheduling"
    assert payload["intent"]["urgency"] == "high"
    kinds = [a["kind"] for a in payload["actions"]]
    assert kinds == ["assign_pipeline", "send_notification"]
    assert payload["actions"][1]["params"]["recipient_role"] == "pm"
    assert payload["actions"][0]["params"]["intake_id"] == "int_9"
