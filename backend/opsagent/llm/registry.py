"""Explicit LLM client registry and provider failover.

The registry is created by application startup and passed to the agents
that need it; clients are built on first use and closed on shutdown.
"""

import logging
from collections.abc import Callable
from typing import Any

from ..config import settings
from ..errors import AllProvidersFailedError, ConfigurationError, LLMError
from .anthropic_client import AnthropicClient
from .base import ChatMessage, LLMClient, LLMResponse, ProviderHealth
from .mock_client import MockLLMClient
from .openai_client import OpenAIClient

logger = logging.getLogger(__name__)

DEFAULT_FACTORIES: dict[str, Callable[[], LLMClient]] = {
    "mock": MockLLMClient,
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
}


class FailoverLLMClient(LLMClient):
    """Tries each provider in order until one answers."""

    provider = "failover"

    def __init__(self, clients: list[LLMClient]) -> None:
        super().__init__(model=",".join(c.model for c in clients))
        self.clients = clients

    def is_ready(self) -> bool:
        return any(c.is_ready() for c in self.clients)

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        timeout_s: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        errors: list[LLMError] = []
        for client in self.clients:
            if not client.is_ready():
                continue
            try:
                response = await client.complete(
                    messages,
                    timeout_s=timeout_s,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    response_schema=response_schema,
                )
            except LLMError as exc:
                logger.warning("llm provider failed provider=%s code=%s", client.provider, exc.code)
                errors.append(exc)
                continue
            self.request_count += 1
            self.usage_totals.add(response.usage)
            return response
        raise AllProvidersFailedError(errors)

    async def health_check(self) -> ProviderHealth:
        checks = [await c.health_check() for c in self.clients]
        healthy = [c for c in checks if c.healthy]
        return ProviderHealth(
            provider=self.provider,
            healthy=bool(healthy),
            latency_ms=healthy[0].latency_ms if healthy else None,
            error=None if healthy else "; ".join(f"{c.provider}: {c.error}" for c in checks),
        )


class LLMClientRegistry:
    def __init__(self, factories: dict[str, Callable[[], LLMClient]] | None = None) -> None:
        self._factories = dict(factories or DEFAULT_FACTORIES)
        self._clients: dict[str, LLMClient] = {}

    def get_or_create(self, provider: str) -> LLMClient:
        client = self._clients.get(provider)
        if client is not None:
            return client
        factory = self._factories.get(provider)
        if factory is None:
            raise ConfigurationError(f"Unknown LLM provider: {provider}")
        client = factory()
        self._clients[provider] = client
        logger.info("llm client created provider=%s model=%s", provider, client.model)
        return client

    def default_client(self) -> LLMClient:
        mode = settings.ai_mode
        if mode != "auto":
            return self.get_or_create(mode)
        clients: list[LLMClient] = []
        for provider in settings.llm_provider_order:
            try:
                clients.append(self.get_or_create(provider))
            except ConfigurationError as exc:
                logger.warning("llm provider skipped provider=%s reason=%s", provider, exc.message)
        if not clients:
            raise ConfigurationError("AI_MODE=auto but no LLM provider is configured")
        return FailoverLLMClient(clients)

    async def check_health(self) -> list[ProviderHealth]:
        return [await client.health_check() for client in self._clients.values()]

    def close(self) -> None:
        for provider, client in self._clients.items():
            try:
                client.close()
            except Exception as exc:
                logger.warning("llm client close failed provider=%s error=%s", provider, exc)
        self._clients.clear()
