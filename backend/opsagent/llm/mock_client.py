"""Deterministic client for local development and repeatable tests.

Reads the sectioned user prompt, classifies by keyword, and answers with
decision JSON without any network call.
"""

import json
import re
from typing import Any

from .base import ChatMessage, LLMClient, LLMResponse, TokenUsage

CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("scheduling", ("meeting", "schedule", "reschedule", "appointment", "calendar", "book a call")),
    ("billing", ("invoice", "payment", "refund", "billing", "charge")),
    ("support", ("bug", "error", "broken", "reset", "password", "not working", "issue", "help")),
    ("sales", ("quote", "pricing", "demo", "proposal", "purchase")),
]

CATEGORY_ROLE = {
    "scheduling": "pm",
    "billing": "admin",
    "support": "support",
    "sales": "sales",
    "general": "operator",
}

PRIORITY_URGENCY = {5: "critical", 4: "high", 3: "medium", 2: "low", 1: "low"}


class MockLLMClient(LLMClient):
    provider = "mock"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(model="mock-classifier", **kwargs)

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
        response_schema: dict[str, Any] | None,
    ) -> LLMResponse:
        prompt = next((m.content for m in messages if m.role == "user"), "")
        payload = self._decide(prompt)
        text = json.dumps(payload)
        return LLMResponse(
            content=text,
            provider=self.provider,
            model=self.model,
            usage=TokenUsage(prompt_tokens=len(prompt) // 4, completion_tokens=len(text) // 4),
            finish_reason="stop",
        )

    def _decide(self, prompt: str) -> dict[str, Any]:
        fields = self._input_fields(prompt)
        content = self._section(prompt, "content:", "## Organization").lower()
        available = {
            x.strip() for x in fields.get("available_actions", "").split(",") if x.strip()
        } or self._available(prompt)

        category = "general"
        for name, keywords in CATEGORY_KEYWORDS:
            if any(k in content for k in keywords):
                category = name
                break

        try:
            priority = int(fields.get("priority", "3"))
        except ValueError:
            priority = 3
        urgency = PRIORITY_URGENCY.get(max(1, min(5, priority)), "medium")
        confidence = 0.9 if category != "general" else 0.6

        actions: list[dict[str, Any]] = []
        intake_id = fields.get("intake_id")
        if intake_id and "assign_pipeline" in available:
            actions.append(
                {"kind": "assign_pipeline", "params": {"intake_id": intake_id, "reason": f"{category} request"}}
            )
        if "send_notification" in available:
            summary = content.strip().replace("\n", " ")[:200] or "(no content)"
            actions.append(
                {
                    "kind": "send_notification",
                    "params": {
                        "recipient_role": CATEGORY_ROLE[category],
                        "title": f"New {category} request",
                        "message": summary,
                        "urgency": urgency,
                        **({"intake_id": intake_id} if intake_id else {}),
                    },
                }
            )
        return {
            "intent": {
                "category": category,
                "urgency": urgency,
                "confidence": confidence,
                "reasoning": f"keyword classification from {fields.get('source', 'unknown')} input",
            },
            "actions": actions,
        }

    def _input_fields(self, prompt: str) -> dict[str, str]:
        fields: dict[str, str] = {}
        head = prompt.split("content:", 1)[0]
        for line in head.splitlines():
            match = re.match(r"^([a-z_]+):\s*(.*)$", line.strip())
            if match:
                fields[match.group(1)] = match.group(2).strip()
        tail = re.search(r"^available_actions:\s*(.*)$", prompt, re.MULTILINE)
        if tail:
            fields["available_actions"] = tail.group(1)
        return fields

    def _available(self, prompt: str) -> set[str]:
        return set(re.findall(r"^- ([a-z_]+): ", self._section(prompt, "## Available actions", None), re.MULTILINE))

    def _section(self, prompt: str, start: str, end: str | None) -> str:
        idx = prompt.find(start)
        if idx < 0:
            return ""
        body = prompt[idx + len(start) :]
        if end:
            stop = body.find(end)
            if stop >= 0:
                body = body[:stop]
        return body
