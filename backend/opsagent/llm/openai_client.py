"""OpenAI Responses API client.

Uses the sync SDK inside a worker thread, bounded by a class-wide semaphore.
SDK retries are disabled; retry policy lives in the decision engine.
"""

import asyncio
from typing import Any

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..config import settings
from ..errors import ConfigurationError, LLMError, LLMTimeoutError
from .base import ChatMessage, LLMClient, LLMResponse, TokenUsage, map_status_error, parse_retry_after, split_system


class OpenAIClient(LLMClient):
    provider = "openai"

    _semaphore: asyncio.Semaphore | None = None

    def __init__(self, *, api_key: str | None = None, model: str | None = None, **kwargs: Any) -> None:
        super().__init__(model=model or settings.openai_model, **kwargs)
        api_key = api_key if api_key is not None else settings.openai_api_key
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai provider")
        self._client = OpenAI(api_key=api_key, timeout=self.timeout_s, max_retries=0)
        if OpenAIClient._semaphore is None:
            OpenAIClient._semaphore = asyncio.Semaphore(max(1, settings.llm_concurrency))

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
        response_schema: dict[str, Any] | None,
    ) -> LLMResponse:
        assert OpenAIClient._semaphore is not None
        try:
            async with OpenAIClient._semaphore:
                response = await asyncio.to_thread(
                    self._create_response, messages, max_tokens, temperature, response_schema
                )
        except APITimeoutError as exc:
            raise LLMTimeoutError(str(exc), provider=self.provider) from exc
        except APIStatusError as exc:
            raise map_status_error(
                self.provider,
                exc.status_code,
                str(exc),
                retry_after=parse_retry_after(getattr(exc.response, "headers", None)),
            ) from exc
        except APIConnectionError as exc:
            raise LLMError(str(exc), provider=self.provider, code="LLM_CONNECTION_ERROR", retryable=True) from exc

        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=self._extract_text(response),
            provider=self.provider,
            model=getattr(response, "model", None) or self.model,
            usage=TokenUsage(
                prompt_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                completion_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            ),
            finish_reason=getattr(response, "status", None),
        )

    def _create_response(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        response_schema: dict[str, Any] | None,
    ) -> Any:
        system, turns = split_system(messages)
        request: dict[str, Any] = {
            "model": self.model,
            "input": [{"role": m.role, "content": m.content} for m in turns],
            "max_output_tokens": max(16, max_tokens),
            "temperature": temperature,
        }
        if system:
            request["instructions"] = system
        if response_schema is not None:
            request["text"] = {"format": response_schema}
        return self._client.responses.create(**request)

    def _extract_text(self, response: Any) -> str:
        text = getattr(response, "output_text", None)
        if text:
            return text
        output = getattr(response, "output", None) or []
        chunks: list[str] = []
        for item in output:
            content = getattr(item, "content", None) or []
            for part in content:
                part_text = getattr(part, "text", None)
                if part_text:
                    chunks.append(part_text)
        return "\n".join(chunks).strip()

    def close(self) -> None:
        self._client.close()
