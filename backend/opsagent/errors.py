"""Error taxonomy shared by ingress, decision, and execution layers.

Every error carries a stable ``code`` and a ``retryable`` flag so callers can
convert failures into structured results without string matching.
"""

from typing import Any


class AgentError(Exception):
    """Base class for all orchestration errors."""

    code = "AGENT_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class AuthenticationError(AgentError):
    code = "AUTHENTICATION_ERROR"


class ValidationError(AgentError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: dict[str, str] | None = None, **kwargs: Any) -> None:
        self.field_errors = field_errors or {}
        details = kwargs.pop("details", None) or {}
        details.setdefault("field_errors", self.field_errors)
        super().__init__(message, details=details, **kwargs)


class QuotaExceededError(AgentError):
    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, *, remaining: int, limit: int, plan: str) -> None:
        self.remaining = remaining
        self.limit = limit
        self.plan = plan
        super().__init__(message, details={"remaining": remaining, "limit": limit, "plan": plan})


class NotFoundError(AgentError):
    code = "NOT_FOUND"


class InvalidStateError(AgentError):
    code = "INVALID_STATE"


class ConfigurationError(AgentError):
    code = "CONFIGURATION_ERROR"


class ConflictError(AgentError):
    """Raised when a side effect would double-book or duplicate work."""

    code = "CONFLICT"

    def __init__(self, message: str, conflict: Any = None, **kwargs: Any) -> None:
        self.conflict = conflict
        super().__init__(message, **kwargs)


# LLM family


class LLMError(AgentError):
    code = "LLM_ERROR"

    def __init__(self, message: str, *, provider: str | None = None, **kwargs: Any) -> None:
        self.provider = provider
        super().__init__(message, **kwargs)


class LLMRateLimitError(LLMError):
    code = "LLM_RATE_LIMITED"
    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class LLMTimeoutError(LLMError):
    code = "LLM_TIMEOUT"
    retryable = True


class ModelOverloadedError(LLMError):
    code = "LLM_OVERLOADED"
    retryable = True


class ContentFilterError(LLMError):
    code = "LLM_CONTENT_FILTERED"


class LLMAuthenticationError(LLMError):
    code = "LLM_AUTH_FAILED"


class ResponseParseError(LLMError):
    code = "LLM_RESPONSE_INVALID"


class AllProvidersFailedError(LLMError):
    code = "LLM_ALL_PROVIDERS_FAILED"

    def __init__(self, errors: list[LLMError]) -> None:
        self.errors = errors
        summary = "; ".join(f"{e.provider or '?'}: {e.code}" for e in errors) or "no providers configured"
        super().__init__(
            f"All LLM providers failed ({summary})",
            retryable=any(e.retryable for e in errors),
            details={"errors": [e.to_dict() for e in errors]},
        )


LLM_RETRY_POLICY: dict[str, bool] = {
    LLMRateLimitError.code: True,
    LLMTimeoutError.code: True,
    ModelOverloadedError.code: True,
    ContentFilterError.code: False,
    LLMAuthenticationError.code: False,
    ResponseParseError.code: False,
}


def is_retryable_llm_error(exc: BaseException) -> bool:
    if isinstance(exc, AllProvidersFailedError):
        return exc.retryable
    if isinstance(exc, LLMError):
        return LLM_RETRY_POLICY.get(exc.code, exc.retryable)
    return False


# Execution family


class ExecutionError(AgentError):
    code = "EXECUTION_ERROR"
    retryable = True


class ExecutionTimeoutError(ExecutionError):
    code = "EXECUTION_TIMEOUT"
    retryable = True


class WebhookRequestError(ExecutionError):
    code = "WEBHOOK_REQUEST_FAILED"

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        self.status_code = status_code
        if "retryable" not in kwargs:
            kwargs["retryable"] = status_code is None or status_code == 429 or status_code >= 500
        super().__init__(message, details={"status_code": status_code}, **kwargs)
