"""Generic signed webhook ingress."""

import hashlib
import json
from typing import Any

from ..config import settings
from ..domain import AgentInput, ContactInfo, InputSource
from ..errors import ValidationError
from ..utils import new_id
from .base import BaseInputHandler, InboundRequest, ProcessingResult, detect_priority
from .signatures import extract_webhook_headers, verify_request

CONTENT_FIELDS = ("message", "text", "body", "description", "content", "notes")
DELIVERY_HEADERS = ("x-webhook-id", "x-delivery-id", "x-github-delivery", "idempotency-key")


class WebhookHandler(BaseInputHandler):
    source = InputSource.webhook
    event_name = "webhook.received"

    def __init__(
        self,
        bus,
        org_id: str,
        *,
        secret: str | None = None,
        scheme: str | None = None,
        window_s: int | None = None,
        endpoint_secrets: dict[str, str] | None = None,
        endpoint_schemes: dict[str, str] | None = None,
    ) -> None:
        super().__init__(bus, org_id)
        self.secret = secret if secret is not None else settings.webhook_secret
        self.scheme = scheme or settings.webhook_signature_scheme
        self.window_s = window_s or settings.webhook_signature_window_s
        self.endpoint_secrets = dict(
            endpoint_secrets if endpoint_secrets is not None else settings.webhook_endpoint_secrets
        )
        self.endpoint_schemes = dict(
            endpoint_schemes if endpoint_schemes is not None else settings.webhook_endpoint_schemes
        )

    def credentials_for(self, endpoint: str | None) -> tuple[str, str]:
        """Secret and scheme for one endpoint, falling back to the handler-wide ones."""

        secret = self.endpoint_secrets.get(endpoint, self.secret) if endpoint else self.secret
        scheme = self.endpoint_schemes.get(endpoint, self.scheme) if endpoint else self.scheme
        return secret, scheme

    async def _process(self, request: InboundRequest) -> AgentInput | ProcessingResult:
        secret, scheme = self.credentials_for(request.endpoint)
        verified = verify_request(scheme, request.body, request.headers, secret, window_s=self.window_s)
        payload = self._parse_body(request.body)

        headers = extract_webhook_headers(request.headers)
        webhook_type = str(
            payload.get("event") or payload.get("type") or request.header("x-webhook-event") or "generic"
        )
        correlation_id = headers.correlation_id or str(payload.get("correlation_id") or "") or new_id("cor")
        content = self._content(payload)
        subject = str(payload.get("subject") or payload.get("title") or "")

        metadata: dict[str, Any] = {
            "endpoint": request.endpoint,
            "webhook_type": webhook_type,
            "signature_verified": verified,
            "payload": payload,
            "dedupe_key": self._delivery_key(request, correlation_id),
        }
        if subject:
            metadata["subject"] = subject
        for key in ("intake_id", "event_id", "workflow_id"):
            if payload.get(key):
                metadata[key] = str(payload[key])

        return AgentInput(
            source=self.source,
            type=webhook_type,
            raw_content=content,
            org_id=self.org_id,
            correlation_id=correlation_id,
            metadata=metadata,
            contact_info=self._contact(payload),
            priority=detect_priority(request.headers, f"{subject}\n{content}"),
            timestamp=request.received_at,
        )

    def _delivery_key(self, request: InboundRequest, correlation_id: str) -> str:
        # A redelivery repeats the sender's delivery id, or at least the same body.
        for name in DELIVERY_HEADERS:
            value = request.header(name)
            if value:
                return f"{request.endpoint or 'default'}:{value}"
        digest = hashlib.sha256(request.body or b"").hexdigest()[:24]
        return f"{request.endpoint or 'default'}:{correlation_id}:{digest}"

    def _parse_body(self, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("Webhook body is not valid JSON", {"body": str(exc)[:120]}) from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object", {"body": "expected object"})
        return payload

    def _content(self, payload: dict[str, Any]) -> str:
        for key in CONTENT_FIELDS:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return json.dumps(payload, sort_keys=True, default=str)

    def _contact(self, payload: dict[str, Any]) -> ContactInfo | None:
        contact = payload.get("contact") if isinstance(payload.get("contact"), dict) else {}
        email = contact.get("email") or payload.get("email") or payload.get("from")
        name = contact.get("name") or payload.get("name")
        phone = contact.get("phone") or payload.get("phone")
        if not (email or name or phone):
            return None
        return ContactInfo(
            email=str(email) if email else None,
            name=str(name) if name else None,
            phone=str(phone) if phone else None,
        )
