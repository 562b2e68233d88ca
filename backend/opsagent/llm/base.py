"""Provider-agnostic LLM client contract.

Concrete clients implement ``_complete``; the base class enforces the hard
per-call timeout, accumulates token usage, and provides a health probe.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import settings
from ..errors import (
    ContentFilterError,
    LLMAuthenticationError,
    LLMError,
    LLMRateLimitError,
    LLMTimeoutError,
    ModelOverloadedError,
)


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LLMResponse:
    content: str
    provider: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None
    latency_ms: int = 0


@dataclass
class ProviderHealth:
    provider: str
    healthy: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None


def map_status_error(
    provider: str,
    status_code: int | None,
    message: str,
    *,
    retry_after: float | None = None,
) -> LLMError:
    """Translate an HTTP status from a provider SDK into the LLM error family."""

    if status_code == 429:
        return LLMRateLimitError(message, provider=provider, retry_after=retry_after)
    if status_code in (401, 403):
        return LLMAuthenticationError(message, provider=provider)
    if status_code in (503, 529):
        return ModelOverloadedError(message, provider=provider)
    if status_code == 400:
        lowered = message.lower()
        if "content" in lowered or "policy" in lowered or "filter" in lowered:
            return ContentFilterError(message, provider=provider)
        return LLMError(message, provider=provider, code="LLM_BAD_REQUEST", retryable=False)
    if status_code is not None and status_code >= 500:
        return LLMError(message, provider=provider, code="LLM_SERVER_ERROR", retryable=True)
    return LLMError(message, provider=provider, code="LLM_API_ERROR", retryable=False)


def parse_retry_after(headers: Any) -> float | None:
    if not headers:
        return None
    raw = headers.get("retry-after") if hasattr(headers, "get") else None
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class LLMClient:
    """Minimal interface implemented by all completion backends."""

    provider: str = "base"

    def __init__(
        self,
        *,
        model: str = "",
        timeout_s: float | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        self.model = model
        self.timeout_s = timeout_s if timeout_s is not None else settings.llm_timeout_ms / 1000
        self.max_output_tokens = max_output_tokens or settings.llm_max_output_tokens
        self.temperature = temperature if temperature is not None else settings.llm_temperature
        self.usage_totals = TokenUsage()
        self.request_count = 0

    def is_ready(self) -> bool:
        return True

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        timeout_s: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._complete(
                    messages,
                    max_tokens=max_tokens or self.max_output_tokens,
                    temperature=self.temperature if temperature is None else temperature,
                    response_schema=response_schema,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LLMTimeoutError(f"{self.provider} call exceeded {timeout:.1f}s", provider=self.provider) from exc
        response.latency_ms = int((time.perf_counter() - started) * 1000)
        self.request_count += 1
        self.usage_totals.add(response.usage)
        return response

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
        response_schema: dict[str, Any] | None,
    ) -> LLMResponse:
        raise NotImplementedError

    async def health_check(self) -> ProviderHealth:
        if not self.is_ready():
            return ProviderHealth(provider=self.provider, healthy=False, error="not configured")
        started = time.perf_counter()
        try:
            await self.complete([ChatMessage(role="user", content="ping")], max_tokens=5, timeout_s=10)
        except LLMError as exc:
            return ProviderHealth(provider=self.provider, healthy=False, error=exc.code)
        return ProviderHealth(
            provider=self.provider, healthy=True, latency_ms=int((time.perf_counter() - started) * 1000)
        )

    def close(self) -> None:
        return None


def split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    return system, [m for m in messages if m.role != "system"]
