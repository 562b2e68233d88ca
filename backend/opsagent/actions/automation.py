"""Outbound workflow triggers over HTTP."""

import json
import logging
import time
from typing import Any, Optional

import httpx

from ..config import settings
from ..domain import ActionHandlerResult, ExecutionContext, TriggerAutomationAction
from ..errors import ExecutionTimeoutError, NotFoundError, WebhookRequestError
from ..inputs.signatures import sign_payload
from ..store import AgentStore
from ..utils import truncate

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


class AutomationTrigger:
    def __init__(
        self,
        store: AgentStore,
        *,
        timeout_s: float | None = None,
        signing_secret: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.timeout_s = timeout_s if timeout_s is not None else settings.automation_timeout_s
        self.signing_secret = signing_secret if signing_secret is not None else settings.automation_signing_secret
        self.transport = transport

    def resolve_url(self, org_id: str, workflow_id: Optional[str], url: Optional[str]) -> str:
        if url:
            return url
        workflow = self.store.get_workflow(org_id, workflow_id or "")
        if workflow is None or not workflow.active:
            raise NotFoundError(f"Workflow {workflow_id} not found", details={"workflow_id": workflow_id})
        return workflow.url

    def build_request(self, action: TriggerAutomationAction, ctx: ExecutionContext) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(
            {
                "workflow_id": action.params.workflow_id,
                "org_id": ctx.org_id,
                "decision_id": ctx.decision_id,
                "action_index": str(ctx.action_index),
                "correlation_id": ctx.correlation_id,
                "payload": action.params.payload,
            },
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Correlation-Id": ctx.correlation_id,
            "Idempotency-Key": ctx.idempotency_key,
        }
        if self.signing_secret:
            timestamp = str(int(time.time()))
            headers[TIMESTAMP_HEADER] = timestamp
            headers[SIGNATURE_HEADER] = sign_payload(self.signing_secret, body, timestamp)
        return body, headers

    async def trigger(self, action: TriggerAutomationAction, ctx: ExecutionContext) -> ActionHandlerResult:
        url = self.resolve_url(ctx.org_id, action.params.workflow_id, action.params.url)
        body, headers = self.build_request(action, ctx)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExecutionTimeoutError(
                f"Automation request timed out after {self.timeout_s}s", details={"url": url}
            ) from exc
        except httpx.HTTPError as exc:
            raise WebhookRequestError(f"Automation request failed: {exc}") from exc

        if not response.is_success:
            raise WebhookRequestError(
                f"Automation endpoint returned {response.status_code}: {truncate(response.text, 200)}",
                status_code=response.status_code,
            )
        logger.info(
            "automation triggered org=%s workflow=%s status=%s",
            ctx.org_id,
            action.params.workflow_id or url,
            response.status_code,
        )
        return ActionHandlerResult.ok(
            status_code=response.status_code, url=url, response=self._response_body(response)
        )

    def _response_body(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return truncate(response.text, 500)
