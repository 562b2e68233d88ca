"""Outbound automation triggers against a mocked HTTP transport."""

import asyncio
import json

import httpx
import pytest

from opsagent.actions.automation import AutomationTrigger
from opsagent.db import session_factory
from opsagent.domain import ExecutionContext, TriggerAutomationAction, TriggerAutomationParams
from opsagent.errors import ExecutionTimeoutError, NotFoundError, WebhookRequestError
from opsagent.inputs.signatures import verify_hmac_signature
from opsagent.store import AgentStore

CTX = ExecutionContext(decision_id="dec_1", action_index=2, org_id="org-1", correlation_id="cor-1")


def _trigger(handler, secret=""):
    store = AgentStore(session_factory)
    store.ensure_organization("org-1")
    return store, AutomationTrigger(
        store, timeout_s=1, signing_secret=secret, transport=httpx.MockTransport(handler)
    )


def _action(**params):
    params.setdefault("payload", {"intake_id": "int_1"})
    return TriggerAutomationAction(params=TriggerAutomationParams(**params))


def test_workflow_is_resolved_and_request_is_signed():
    captured = []

    def handler(request):
        captured.append(request)
        return httpx.Response(200, json={"run_id": "r1"})

    store, trigger = _trigger(handler, secret="out-secret")
    workflow = store.add_workflow("org-1", "Send contract", "https://hooks.example.com/contract")

    result = asyncio.run(trigger.trigger(_action(workflow_id=workflow.id), CTX))

    assert result.success is True
    assert result.data["response"] == {"run_id": "r1"}
    request = captured[0]
    assert str(request.url) == "https://hooks.example.com/contract"
    assert request.headers["Idempotency-Key"] == "dec_1:2"
    assert request.headers["X-Correlation-Id"] == "cor-1"
    body = request.content
    assert json.loads(body)["payload"] == {"intake_id": "int_1"}
    assert verify_hmac_signature(
        body,
        request.headers["X-Webhook-Signature"],
        "out-secret",
        timestamp=request.headers["X-Webhook-Timestamp"],
    )


def test_server_error_is_retryable_and_client_error_is_not():
    statuses = [500, 422]

    def handler(request):
        return httpx.Response(statuses.pop(0), text="nope")

    _, trigger = _trigger(handler)

    with pytest.raises(WebhookRequestError) as server:
        asyncio.run(trigger.trigger(_action(url="https://hooks.example.com/a"), CTX))
    with pytest.raises(WebhookRequestError) as client:
        asyncio.run(trigger.trigger(_action(url="https://hooks.example.com/a"), CTX))

    assert server.value.retryable is True and server.value.status_code == 500
    assert client.value.retryable is False and client.value.status_code == 422


def test_timeout_maps_to_execution_timeout():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    _, trigger = _trigger(handler)

    with pytest.raises(ExecutionTimeoutError) as exc:
        asyncio.run(trigger.trigger(_action(url="https://hooks.example.com/slow"), CTX))
    assert exc.value.retryable is True


def test_unknown_workflow_is_not_found():
    _, trigger = _trigger(lambda request: httpx.Response(200))

    with pytest.raises(NotFoundError):
        asyncio.run(trigger.trigger(_action(workflow_id="wf_missing"), CTX))
