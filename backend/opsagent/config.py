"""Runtime configuration loaded from environment variables.

This module centralizes backend settings such as database URL, LLM provider
mode, confirmation thresholds, ingress secrets, and rate-limit windows.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list[str]:
    return [x.strip() for x in value.split(",") if x.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _pairs(value: str) -> dict[str, str]:
    """Parse ``name=value,other=value`` into a dict; an empty value is kept."""

    pairs: dict[str, str] = {}
    for item in value.split(","):
        name, sep, val = item.partition("=")
        if sep and name.strip():
            pairs[name.strip()] = val.strip()
    return pairs


class Settings:
    """Typed settings object used across the backend."""

    env: str = os.getenv("ENV", "dev")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./data/dev.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: list[str] = _csv(os.getenv("CORS_ORIGINS", "http://localhost:3000"))
    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "8000"))

    # LLM providers
    ai_mode: str = os.getenv("AI_MODE", "mock").lower()
    llm_provider_order: list[str] = _csv(os.getenv("LLM_PROVIDER_ORDER", "anthropic,openai"))
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    anthropic_model: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
    llm_timeout_ms: int = int(os.getenv("LLM_TIMEOUT_MS", "30000"))
    llm_max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "3"))
    llm_retry_base_ms: int = int(os.getenv("LLM_RETRY_BASE_MS", "500"))
    llm_max_output_tokens: int = int(os.getenv("LLM_MAX_OUTPUT_TOKENS", "1500"))
    llm_temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.3"))
    llm_concurrency: int = int(os.getenv("LLM_CONCURRENCY", "3"))

    # Confirmation gate
    auto_execute_threshold: float = float(os.getenv("AUTO_EXECUTE_THRESHOLD", "0.85"))
    critical_auto_execute_threshold: float = float(os.getenv("CRITICAL_AUTO_EXECUTE_THRESHOLD", "0.95"))
    confirmation_timeout_s: int = int(os.getenv("CONFIRMATION_TIMEOUT_S", "86400"))
    expiry_sweep_interval_s: int = int(os.getenv("EXPIRY_SWEEP_INTERVAL_S", "60"))

    # Intake SLA, as fractions of the time between creation and due time
    sla_warning_threshold: float = float(os.getenv("SLA_WARNING_THRESHOLD", "0.8"))
    sla_breach_threshold: float = float(os.getenv("SLA_BREACH_THRESHOLD", "1.0"))

    # Ingress
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    webhook_signature_scheme: str = os.getenv("WEBHOOK_SIGNATURE_SCHEME", "hmac").lower()
    webhook_signature_window_s: int = int(os.getenv("WEBHOOK_SIGNATURE_WINDOW_S", "300"))
    # Per-endpoint overrides, e.g. "forms=s3cret,public=" (empty secret disables verification).
    webhook_endpoint_secrets: dict[str, str] = _pairs(os.getenv("WEBHOOK_ENDPOINT_SECRETS", ""))
    webhook_endpoint_schemes: dict[str, str] = _pairs(os.getenv("WEBHOOK_ENDPOINT_SCHEMES", "").lower())
    email_webhook_secret: str = os.getenv("EMAIL_WEBHOOK_SECRET", "")
    email_webhook_scheme: str = os.getenv("EMAIL_WEBHOOK_SCHEME", "hmac").lower()
    email_skip_auto_replies: bool = _flag(os.getenv("EMAIL_SKIP_AUTO_REPLIES", "true"))
    email_blocked_domains: list[str] = _csv(os.getenv("EMAIL_BLOCKED_DOMAINS", ""))
    email_domain_rate_limit: int = int(os.getenv("EMAIL_DOMAIN_RATE_LIMIT", "30"))
    email_domain_rate_window_s: int = int(os.getenv("EMAIL_DOMAIN_RATE_WINDOW_S", "60"))

    # Action execution
    action_max_attempts: int = int(os.getenv("ACTION_MAX_ATTEMPTS", "3"))
    action_retry_base_ms: int = int(os.getenv("ACTION_RETRY_BASE_MS", "1000"))
    action_retry_max_ms: int = int(os.getenv("ACTION_RETRY_MAX_MS", "60000"))
    notification_rate_limit: int = int(os.getenv("NOTIFICATION_RATE_LIMIT", "10"))
    notification_rate_window_s: int = int(os.getenv("NOTIFICATION_RATE_WINDOW_S", "300"))
    quiet_hours_start: int = int(os.getenv("QUIET_HOURS_START", "22"))
    quiet_hours_end: int = int(os.getenv("QUIET_HOURS_END", "7"))
    automation_timeout_s: float = float(os.getenv("AUTOMATION_TIMEOUT_S", "10"))
    automation_signing_secret: str = os.getenv("AUTOMATION_SIGNING_SECRET", "")

    # Per-org agent quotas
    agent_max_decisions_per_minute: int = int(os.getenv("AGENT_MAX_DECISIONS_PER_MINUTE", "60"))
    agent_max_decisions_per_hour: int = int(os.getenv("AGENT_MAX_DECISIONS_PER_HOUR", "500"))
    agent_plan: str = os.getenv("AGENT_PLAN", "standard")

    # Event bus
    event_history_size: int = int(os.getenv("EVENT_HISTORY_SIZE", "1000"))
    event_handler_timeout_ms: int = int(os.getenv("EVENT_HANDLER_TIMEOUT_MS", "30000"))


settings = Settings()
