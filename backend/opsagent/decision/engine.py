"""Decision engine: classify an input and propose actions via the LLM.

Transient LLM errors are retried with exponential backoff; a response that
fails validation gets one corrective re-prompt. Anything unrecoverable ends
in a deterministic fallback decision, so every input produces a decision.
"""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..domain import (
    AgentAction,
    AgentDecisionResult,
    AgentInput,
    DecisionContext,
    IntentClassification,
    Urgency,
    parse_action,
)
from ..errors import LLMError, LLMRateLimitError, ResponseParseError, is_retryable_llm_error
from ..llm.base import ChatMessage, LLMClient, LLMResponse
from .context import DecisionContextBuilder
from .fallback import build_fallback_decision
from .prompt import build_messages, build_retry_messages, response_schema

logger = logging.getLogger(__name__)

MAX_BACKOFF_S = 4.0


class DecisionEngine:
    def __init__(
        self,
        llm: LLMClient,
        context_builder: DecisionContextBuilder,
        *,
        max_retries: int | None = None,
        retry_base_s: float | None = None,
        timeout_s: float | None = None,
        auto_execute_threshold: float | None = None,
        critical_threshold: float | None = None,
        validation_attempts: int = 2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.llm = llm
        self.context_builder = context_builder
        self.max_retries = max(1, max_retries if max_retries is not None else settings.llm_max_retries)
        self.retry_base_s = retry_base_s if retry_base_s is not None else settings.llm_retry_base_ms / 1000
        self.timeout_s = timeout_s if timeout_s is not None else settings.llm_timeout_ms / 1000
        self.auto_execute_threshold = (
            auto_execute_threshold if auto_execute_threshold is not None else settings.auto_execute_threshold
        )
        self.critical_threshold = (
            critical_threshold if critical_threshold is not None else settings.critical_auto_execute_threshold
        )
        self.validation_attempts = max(1, validation_attempts)
        self._sleep = sleep
        self.fallback_count = 0

    def build_context(self, agent_input: AgentInput) -> DecisionContext:
        return self.context_builder.build(agent_input)

    async def decide(self, agent_input: AgentInput, context: DecisionContext | None = None) -> AgentDecisionResult:
        try:
            ctx = context or self.build_context(agent_input)
            return await self._decide(ctx)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {str(exc)[:160]}"
            logger.warning(
                "fallback decision org=%s input=%s correlation=%s reason=%s",
                agent_input.org_id,
                agent_input.id,
                agent_input.correlation_id,
                reason,
            )
            self.fallback_count += 1
            return build_fallback_decision(agent_input, reason)

    async def _decide(self, ctx: DecisionContext) -> AgentDecisionResult:
        base_messages = build_messages(ctx)
        schema = response_schema(ctx.available_actions)
        messages = base_messages
        last_error: Exception | None = None
        for attempt in range(self.validation_attempts):
            response = await self._request_with_retry(messages, schema)
            try:
                payload = self._coerce_json(response.content)
                intent, actions = self._validate(payload)
            except ResponseParseError as exc:
                last_error = exc
                logger.info(
                    "llm response rejected input=%s attempt=%s reason=%s", ctx.input.id, attempt + 1, exc.message
                )
                messages = build_retry_messages(base_messages, response.content, exc, attempt)
                continue
            return self._finalize(ctx, intent, actions, response)
        raise ResponseParseError(
            f"{self.validation_attempts} attempts: {last_error}", provider=getattr(self.llm, "provider", None)
        )

    async def _request_with_retry(self, messages: list[ChatMessage], schema: dict[str, Any]) -> LLMResponse:
        last_error: LLMError | None = None
        for attempt in range(self.max_retries):
            try:
                return await self.llm.complete(messages, timeout_s=self.timeout_s, response_schema=schema)
            except LLMError as exc:
                last_error = exc
                if not is_retryable_llm_error(exc) or attempt == self.max_retries - 1:
                    raise
                delay = min(MAX_BACKOFF_S, self.retry_base_s * (2**attempt))
                if isinstance(exc, LLMRateLimitError) and exc.retry_after:
                    delay = min(MAX_BACKOFF_S * 4, max(delay, exc.retry_after))
                logger.info("llm call retry attempt=%s code=%s delay=%.2fs", attempt + 1, exc.code, delay)
                await self._sleep(delay)
        assert last_error is not None
        raise last_error

    def _finalize(
        self,
        ctx: DecisionContext,
        intent: IntentClassification,
        actions: list[AgentAction],
        response: LLMResponse,
    ) -> AgentDecisionResult:
        allowed = set(ctx.available_actions)
        kept = [a for a in actions if a.kind in allowed]
        if len(kept) != len(actions):
            logger.info(
                "dropped disabled actions input=%s kinds=%s",
                ctx.input.id,
                sorted({a.kind for a in actions if a.kind not in allowed}),
            )
        threshold = ctx.org.auto_execute_threshold
        return AgentDecisionResult(
            input_id=ctx.input.id,
            org_id=ctx.input.org_id,
            correlation_id=ctx.input.correlation_id,
            intent=intent,
            actions=kept,
            confidence=intent.confidence,
            requires_confirmation=self.requires_confirmation(intent, kept, threshold),
            raw_response=response.content,
            provider=response.provider,
            usage=response.usage.to_dict(),
        )

    def requires_confirmation(
        self, intent: IntentClassification, actions: list[AgentAction], org_threshold: float | None = None
    ) -> bool:
        """Auto-execute only when confident enough for the urgency and nothing is destructive."""

        threshold = org_threshold if org_threshold is not None else self.auto_execute_threshold
        if intent.urgency == Urgency.critical:
            threshold = max(threshold, self.critical_threshold)
        if intent.confidence < threshold:
            return True
        return any(a.is_destructive for a in actions)

    def _validate(self, payload: dict[str, Any]) -> tuple[IntentClassification, list[AgentAction]]:
        raw_intent = payload.get("intent")
        if not isinstance(raw_intent, dict):
            raise ResponseParseError("response is missing the intent object")
        raw_intent = dict(raw_intent)
        if isinstance(raw_intent.get("urgency"), str):
            raw_intent["urgency"] = raw_intent["urgency"].strip().lower()
        try:
            intent = IntentClassification.model_validate(raw_intent)
        except PydanticValidationError as exc:
            raise ResponseParseError(f"invalid intent: {self._errors(exc)}") from exc

        raw_actions = payload.get("actions", [])
        if not isinstance(raw_actions, list):
            raise ResponseParseError("actions must be a list")
        actions: list[AgentAction] = []
        for index, item in enumerate(raw_actions):
            if not isinstance(item, dict):
                raise ResponseParseError(f"actions[{index}] must be an object")
            item = dict(item)
            if "kind" not in item and "type" in item:
                item["kind"] = item.pop("type")
            item.setdefault("params", {})
            try:
                actions.append(parse_action(item))
            except PydanticValidationError as exc:
                raise ResponseParseError(f"invalid actions[{index}]: {self._errors(exc)}") from exc
        return intent, actions

    def _errors(self, exc: PydanticValidationError) -> str:
        parts = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()[:5]]
        return "; ".join(parts)

    def _coerce_json(self, text: str) -> dict[str, Any]:
        if not text or not text.strip():
            raise ResponseParseError("LLM response was empty")
        text = self._strip_code_fence(text)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            candidate = self._extract_first_json_object(text)
            if not candidate:
                raise ResponseParseError("LLM response contained no JSON object")
            try:
                payload = json.loads(candidate)
            except json.JSONDecodeError as exc:
                raise ResponseParseError(f"LLM response JSON is malformed: {exc}") from exc
        if not isinstance(payload, dict):
            raise ResponseParseError("LLM response must be a JSON object")
        return payload

    def _extract_first_json_object(self, text: str) -> str | None:
        start = text.find("{")
        if start < 0:
            return None
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                    continue
                if ch == "\\":
                    escaped = True
                    continue
                if ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
                continue
            if ch == "{":
                depth += 1
                continue
            if ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        return None

    def _strip_code_fence(self, text: str) -> str:
        fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text.strip(), re.DOTALL | re.IGNORECASE)
        if fenced:
            return fenced.group(1).strip()
        return text.strip()
