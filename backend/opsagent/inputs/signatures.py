"""Webhook signature verification.

Generic scheme: ``HMAC-SHA256(secret, "<timestamp>.<body>")`` (or the body
alone when no timestamp is sent), hex encoded, optionally prefixed ``v1=``.
Provider variants: a shared token compared directly, and a combined
``t=<ts>,v1=<sig>`` header.
"""

import hashlib
import hmac
import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

from ..errors import AuthenticationError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_S = 300

SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")
TIMESTAMP_HEADERS = ("x-webhook-timestamp", "x-timestamp")
CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")
TOKEN_HEADERS = ("x-webhook-token", "authorization")

_VERSION_PREFIX = re.compile(r"^v\d+=")


@dataclass(frozen=True)
class WebhookHeaders:
    signature: Optional[str] = None
    timestamp: Optional[str] = None
    correlation_id: Optional[str] = None
    token: Optional[str] = None


def _first(headers: Mapping[str, str], names: tuple[str, ...]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value.strip()
    return None


def extract_webhook_headers(headers: Mapping[str, str]) -> WebhookHeaders:
    token = _first(headers, TOKEN_HEADERS)
    if token and token.lower().startswith("bearer "):
        token = token[7:].strip()
    return WebhookHeaders(
        signature=_first(headers, SIGNATURE_HEADERS),
        timestamp=_first(headers, TIMESTAMP_HEADERS),
        correlation_id=_first(headers, CORRELATION_HEADERS),
        token=token,
    )


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def sign_payload(secret: str, body: bytes | str, timestamp: str | int | None = None) -> str:
    message = _as_bytes(body)
    if timestamp is not None:
        message = f"{timestamp}.".encode("utf-8") + message
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _timestamp_seconds(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise AuthenticationError("Invalid signature timestamp", code="INVALID_TIMESTAMP") from exc
    # Millisecond epochs are accepted too.
    return value / 1000 if value > 1e12 else value


def verify_hmac_signature(
    body: bytes | str,
    signature: str | None,
    secret: str | None,
    *,
    timestamp: str | None = None,
    window_s: int = DEFAULT_WINDOW_S,
    now: float | None = None,
) -> bool:
    """Raise ``AuthenticationError`` unless the signature matches.

    Returns ``False`` only when no secret is configured (verification skipped).
    """

    if not secret:
        logger.info("webhook signature verification skipped reason=no_secret_configured")
        return False
    if not signature:
        raise AuthenticationError("Missing webhook signature", code="MISSING_SIGNATURE")
    if timestamp is not None:
        age = abs((now if now is not None else time.time()) - _timestamp_seconds(timestamp))
        if age > window_s:
            raise AuthenticationError(
                "Webhook timestamp outside validity window",
                code="STALE_SIGNATURE",
                details={"age_s": int(age), "window_s": window_s},
            )
    provided = _VERSION_PREFIX.sub("", signature.strip())
    expected = sign_payload(secret, body, timestamp)
    if not hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Invalid webhook signature", code="INVALID_SIGNATURE")
    return True


def verify_shared_token(provided: str | None, secret: str | None) -> bool:
    if not secret:
        logger.info("webhook token verification skipped reason=no_secret_configured")
        return False
    if not provided:
        raise AuthenticationError("Missing webhook token", code="MISSING_SIGNATURE")
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise AuthenticationError("Invalid webhook token", code="INVALID_SIGNATURE")
    return True


def parse_multipart_signature(header: str) -> tuple[str | None, list[str]]:
    """Split ``t=<ts>,v1=<sig>[,v1=<sig>]`` into timestamp and candidate signatures."""

    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value.strip()
        elif re.fullmatch(r"v\d+", key):
            signatures.append(value.strip())
    return timestamp, signatures


def verify_multipart_signature(
    body: bytes | str,
    header: str | None,
    secret: str | None,
    *,
    window_s: int = DEFAULT_WINDOW_S,
    now: float | None = None,
) -> bool:
    if not secret:
        logger.info("webhook signature verification skipped reason=no_secret_configured")
        return False
    if not header:
        raise AuthenticationError("Missing webhook signature", code="MISSING_SIGNATURE")
    timestamp, candidates = parse_multipart_signature(header)
    if not timestamp or not candidates:
        raise AuthenticationError("Malformed signature header", code="INVALID_SIGNATURE")
    last_error: AuthenticationError | None = None
    for candidate in candidates:
        try:
            return verify_hmac_signature(body, candidate, secret, timestamp=timestamp, window_s=window_s, now=now)
        except AuthenticationError as exc:
            if exc.code == "STALE_SIGNATURE":
                raise
            last_error = exc
    assert last_error is not None
    raise last_error


def verify_request(
    scheme: str,
    body: bytes | str,
    headers: Mapping[str, str],
    secret: str | None,
    *,
    window_s: int = DEFAULT_WINDOW_S,
) -> bool:
    """Dispatch to the configured scheme: ``hmac``, ``token`` or ``multipart``."""

    parsed = extract_webhook_headers(headers)
    if scheme == "token":
        return verify_shared_token(parsed.token or parsed.signature, secret)
    if scheme == "multipart":
        return verify_multipart_signature(body, parsed.signature, secret, window_s=window_s)
    return verify_hmac_signature(body, parsed.signature, secret, timestamp=parsed.timestamp, window_s=window_s)
