"""Anthropic Messages API client."""

import asyncio
from typing import Any

import anthropic

from ..config import settings
from ..errors import ConfigurationError, LLMError, LLMTimeoutError
from .base import ChatMessage, LLMClient, LLMResponse, TokenUsage, map_status_error, parse_retry_after, split_system

JSON_ONLY_INSTRUCTION = (
    "Respond with a single JSON object matching this schema and nothing else. "
    "Do not wrap it in markdown fences.\nSchema: {schema}"
)


class AnthropicClient(LLMClient):
    provider = "anthropic"

    _semaphore: asyncio.Semaphore | None = None

    def __init__(self, *, api_key: str | None = None, model: str | None = None, **kwargs: Any) -> None:
        super().__init__(model=model or settings.anthropic_model, **kwargs)
        api_key = api_key if api_key is not None else settings.anthropic_api_key
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for the anthropic provider")
        self._client = anthropic.Anthropic(api_key=api_key, timeout=self.timeout_s, max_retries=0)
        if AnthropicClient._semaphore is None:
            AnthropicClient._semaphore = asyncio.Semaphore(max(1, settings.llm_concurrency))

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
        response_schema: dict[str, Any] | None,
    ) -> LLMResponse:
        assert AnthropicClient._semaphore is not None
        try:
            async with AnthropicClient._semaphore:
                response = await asyncio.to_thread(
                    self._create_message, messages, max_tokens, temperature, response_schema
                )
        except anthropic.APITimeoutError as exc:
            raise LLMTimeoutError(str(exc), provider=self.provider) from exc
        except anthropic.APIStatusError as exc:
            raise map_status_error(
                self.provider,
                exc.status_code,
                str(exc),
                retry_after=parse_retry_after(getattr(exc.response, "headers", None)),
            ) from exc
        except anthropic.APIConnectionError as exc:
            raise LLMError(str(exc), provider=self.provider, code="LLM_CONNECTION_ERROR", retryable=True) from exc

        text = "".join(
            getattr(block, "text", "") for block in (response.content or []) if getattr(block, "type", "") == "text"
        )
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=text.strip(),
            provider=self.provider,
            model=getattr(response, "model", None) or self.model,
            usage=TokenUsage(
                prompt_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                completion_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            ),
            finish_reason=getattr(response, "stop_reason", None),
        )

    def _create_message(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        response_schema: dict[str, Any] | None,
    ) -> Any:
        system, turns = split_system(messages)
        if response_schema is not None:
            schema = response_schema.get("schema", response_schema)
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION.format(schema=schema)}".strip()
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": m.role, "content": m.content} for m in turns],
        }
        if system:
            request["system"] = system
        return self._client.messages.create(**request)

    def close(self) -> None:
        self._client.close()
