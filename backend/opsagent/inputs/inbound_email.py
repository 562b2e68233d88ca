"""Inbound email ingress.

Accepts the canonical inbound-email webhook payload, verifies its signature,
normalizes the body to clean text, classifies spam/bounce/auto-reply mail,
extracts calendar invitations, threads replies onto earlier conversations,
and rate limits per sender domain before publishing ``email.received``.
"""

import base64
import binascii
import json
import logging
import re
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import html2text
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..domain import AgentInput, ContactInfo, InputSource
from ..errors import QuotaExceededError, ValidationError
from ..rate_limit import FixedWindowRateLimiter
from ..utils import new_id
from .base import BaseInputHandler, InboundRequest, ProcessingResult, detect_priority
from .signatures import verify_request

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")

AUTO_REPLY_SUBJECTS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^auto[:\s-]*reply",
        r"^automatic\s+reply",
        r"^out\s+of\s+(the\s+)?office",
        r"^ooo[:\s]",
        r"away\s+from\s+(my\s+)?desk",
        r"^vacation\s+reply",
        r"^\[auto-?reply\]",
        r"on\s+leave",
        r"^automatic\s+response",
    )
]
AUTO_REPLY_HEADERS = {
    "auto-submitted": ("auto-replied", "auto-generated", "auto-notified"),
    "x-auto-response-suppress": ("all", "oof", "autoreply"),
    "precedence": ("bulk", "junk", "auto_reply"),
    "x-autoreply": ("yes",),
}
BOUNCE_SUBJECTS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^undelivered\s+mail",
        r"^returned\s+mail",
        r"^mail\s+delivery\s+(failed|failure|system)",
        r"^delivery\s+(status\s+)?notification",
        r"failure\s+notice",
        r"^undeliverable",
        r"could\s+not\s+be\s+delivered",
    )
]
BOUNCE_SENDERS = [re.compile(p, re.IGNORECASE) for p in (r"^mailer-daemon@", r"^postmaster@", r"^mail-daemon@")]
SPAM_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"free\s+money",
        r"click\s+here\s+now",
        r"act\s+now",
        r"limited\s+time\s+offer",
        r"congratulations.*winner",
        r"you'?ve?\s+won",
        r"claim\s+your\s+prize",
        r"urgent.*wire\s+transfer",
        r"viagra|cialis",
        r"crypto\s+giveaway",
    )
]
SUSPICIOUS_TLDS = (".xyz", ".top", ".click", ".loan", ".work", ".gq", ".tk")
SPAM_THRESHOLD = 5.0
NEWSLETTER_HEADERS = ("list-unsubscribe", "list-id", "x-campaign", "x-mailchimp")
REPLY_SUBJECT = re.compile(r"^(re|aw|sv|antw|res):\s*", re.IGNORECASE)
FORWARD_SUBJECT = re.compile(r"^(fwd?|fw|wg|tr):\s*", re.IGNORECASE)
SIGNATURE_PATTERNS = [
    re.compile(p, re.IGNORECASE | re.MULTILINE | re.DOTALL)
    for p in (
        r"^--\s*$.*",
        r"Sent from my iPhone.*$",
        r"Sent from my Android.*$",
        r"Get Outlook for iOS.*$",
        r"This email and any attachments.*$",
        r"CONFIDENTIALITY NOTICE:.*$",
    )
]
QUOTED_REPLY = re.compile(r"^On .{0,200}wrote:\s*$.*", re.MULTILINE | re.DOTALL)

THREAD_INDEX_SIZE = 5000


class EmailType(str, Enum):
    new_inquiry = "new_inquiry"
    reply = "reply"
    forward = "forward"
    auto_reply = "auto_reply"
    bounce = "bounce"
    spam = "spam"
    newsletter = "newsletter"


class EmailAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    filename: str
    content_type: str = Field(default="application/octet-stream", alias="contentType")
    size: int = 0
    content: Optional[str] = None


class InboundEmail(BaseModel):
    """Canonical inbound email webhook payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_: str = Field(alias="from")
    to: str | list[str]
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: list[EmailAttachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    message_id: Optional[str] = Field(default=None, alias="messageId")
    in_reply_to: Optional[str] = Field(default=None, alias="inReplyTo")
    references: list[str] = Field(default_factory=list)
    spam_score: Optional[float] = Field(default=None, alias="spamScore")

    @field_validator("from_")
    @classmethod
    def _require_address(cls, value: str) -> str:
        if not EMAIL_RE.search(value or ""):
            raise ValueError("from must contain an email address")
        return value

    @field_validator("references", mode="before")
    @classmethod
    def _split_references(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.split()
        return value or []

    @property
    def sender(self) -> str:
        match = EMAIL_RE.search(self.from_)
        return match.group(0).lower() if match else self.from_.lower()

    @property
    def sender_name(self) -> Optional[str]:
        name = self.from_.split("<", 1)[0].strip().strip('"') if "<" in self.from_ else ""
        return name or None

    @property
    def sender_domain(self) -> str:
        return self.sender.rsplit("@", 1)[-1]

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class EventProposal:
    """Calendar invitation lifted from an ICS attachment."""

    summary: str
    start: Optional[str] = None
    end: Optional[str] = None
    uid: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    organizer: Optional[str] = None
    attendees: list[str] = field(default_factory=list)
    method: Optional[str] = None


@dataclass
class EmailClassification:
    email_type: EmailType
    spam_score: float
    is_spam: bool
    is_bounce: bool
    is_auto_reply: bool


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html)


def clean_body(text: str) -> str:
    text = text.replace("\u200b", "").replace("\xa0", " ").replace("\r\n", "\n")
    text = QUOTED_REPLY.sub("", text)
    text = "\n".join(line for line in text.split("\n") if not line.lstrip().startswith(">"))
    for pattern in SIGNATURE_PATTERNS:
        text = pattern.sub("", text)
    text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    return text.strip()


def spam_score(email: InboundEmail, blocked_domains: set[str]) -> float:
    score = email.spam_score or 0.0
    haystack = f"{email.subject}\n{email.text or ''}"
    for pattern in SPAM_PATTERNS:
        if pattern.search(haystack):
            score += 2
    domain = email.sender_domain
    if domain in blocked_domains:
        score += 10
    if domain.endswith(SUSPICIOUS_TLDS):
        score += 2
    local = email.sender.split("@", 1)[0]
    if sum(ch.isdigit() for ch in local) >= 6:
        score += 1
    spf = (email.header("received-spf") or "").lower()
    if spf and not spf.startswith(("pass", "softfail")):
        score += 1
    dkim = (email.header("x-dkim-result") or "").lower()
    if dkim and dkim != "pass":
        score += 1
    return min(score, 10.0)


def is_auto_reply(email: InboundEmail) -> bool:
    if any(p.search(email.subject) for p in AUTO_REPLY_SUBJECTS):
        return True
    for header, values in AUTO_REPLY_HEADERS.items():
        value = (email.header(header) or "").lower()
        if value and (not values or any(v in value for v in values)):
            return True
    return False


def is_bounce(email: InboundEmail) -> bool:
    if any(p.search(email.sender) for p in BOUNCE_SENDERS):
        return True
    return any(p.search(email.subject) for p in BOUNCE_SUBJECTS)


def classify_email(email: InboundEmail, blocked_domains: set[str] | None = None) -> EmailClassification:
    score = spam_score(email, blocked_domains or set())
    spam = score >= SPAM_THRESHOLD
    bounce = is_bounce(email)
    auto = is_auto_reply(email)
    if bounce:
        email_type = EmailType.bounce
    elif spam:
        email_type = EmailType.spam
    elif auto:
        email_type = EmailType.auto_reply
    elif any(email.header(h) for h in NEWSLETTER_HEADERS):
        email_type = EmailType.newsletter
    elif FORWARD_SUBJECT.match(email.subject):
        email_type = EmailType.forward
    elif REPLY_SUBJECT.match(email.subject) or email.in_reply_to or email.references:
        email_type = EmailType.reply
    else:
        email_type = EmailType.new_inquiry
    return EmailClassification(
        email_type=email_type, spam_score=score, is_spam=spam, is_bounce=bounce, is_auto_reply=auto
    )


def _ics_unfold(raw: str) -> list[str]:
    lines: list[str] = []
    for line in raw.replace("\r\n", "\n").split("\n"):
        if line.startswith((" ", "\t")) and lines:
            lines[-1] += line[1:]
        elif line:
            lines.append(line)
    return lines


def _ics_datetime(value: str, params: dict[str, str]) -> Optional[str]:
    value = value.strip()
    try:
        if params.get("VALUE") == "DATE" or re.fullmatch(r"\d{8}", value):
            return datetime.strptime(value, "%Y%m%d").replace(tzinfo=timezone.utc).isoformat()
        if value.endswith("Z"):
            return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc).isoformat()
        # Local/TZID times are kept as wall clock without an offset.
        return datetime.strptime(value, "%Y%m%dT%H%M%S").isoformat()
    except ValueError:
        return None


def parse_ics(raw: str) -> Optional[EventProposal]:
    """Return the first VEVENT in an iCalendar document, if any."""

    method = None
    current: dict[str, Any] | None = None
    for line in _ics_unfold(raw):
        name_part, sep, value = line.partition(":")
        if not sep:
            continue
        name, *param_parts = name_part.split(";")
        name = name.upper()
        params = dict(p.split("=", 1) for p in param_parts if "=" in p)
        params = {k.upper(): v for k, v in params.items()}
        if name == "METHOD":
            method = value.strip()
        elif name == "BEGIN" and value.strip().upper() == "VEVENT":
            current = {"attendees": []}
        elif name == "END" and value.strip().upper() == "VEVENT" and current is not None:
            return EventProposal(
                summary=current.get("summary") or "(untitled event)",
                start=current.get("start"),
                end=current.get("end"),
                uid=current.get("uid"),
                location=current.get("location"),
                description=current.get("description"),
                organizer=current.get("organizer"),
                attendees=current["attendees"],
                method=method,
            )
        elif current is not None:
            text = value.replace("\\n", "\n").replace("\\,", ",").replace("\\;", ";").strip()
            if name == "SUMMARY":
                current["summary"] = text
            elif name == "DTSTART":
                current["start"] = _ics_datetime(value, params)
            elif name == "DTEND":
                current["end"] = _ics_datetime(value, params)
            elif name == "UID":
                current["uid"] = text
            elif name == "LOCATION":
                current["location"] = text
            elif name == "DESCRIPTION":
                current["description"] = text
            elif name == "ORGANIZER":
                current["organizer"] = re.sub(r"^mailto:", "", text, flags=re.IGNORECASE)
            elif name == "ATTENDEE":
                current["attendees"].append(re.sub(r"^mailto:", "", text, flags=re.IGNORECASE))
    return None


def _attachment_text(attachment: EmailAttachment) -> Optional[str]:
    if not attachment.content:
        return None
    if "BEGIN:" in attachment.content:
        return attachment.content
    try:
        return base64.b64decode(attachment.content, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def extract_event_proposal(email: InboundEmail) -> Optional[EventProposal]:
    for attachment in email.attachments:
        is_calendar = attachment.content_type.lower().startswith("text/calendar") or attachment.filename.lower().endswith(
            ".ics"
        )
        if not is_calendar:
            continue
        raw = _attachment_text(attachment)
        if raw:
            proposal = parse_ics(raw)
            if proposal is not None:
                return proposal
    return None


def _normalize_message_id(value: str) -> str:
    return value.strip().strip("<>").strip().lower()


class EmailHandler(BaseInputHandler):
    source = InputSource.email
    event_name = "email.received"

    def __init__(
        self,
        bus,
        org_id: str,
        *,
        secret: str | None = None,
        scheme: str | None = None,
        window_s: int | None = None,
        skip_auto_replies: bool | None = None,
        skip_spam: bool = True,
        skip_bounces: bool = True,
        blocked_domains: list[str] | None = None,
        domain_limiter: FixedWindowRateLimiter | None = None,
    ) -> None:
        super().__init__(bus, org_id)
        self.secret = secret if secret is not None else settings.email_webhook_secret
        self.scheme = scheme or settings.email_webhook_scheme
        self.window_s = window_s or settings.webhook_signature_window_s
        self.skip_auto_replies = settings.email_skip_auto_replies if skip_auto_replies is None else skip_auto_replies
        self.skip_spam = skip_spam
        self.skip_bounces = skip_bounces
        self.blocked_domains = {d.lower() for d in (blocked_domains if blocked_domains is not None else settings.email_blocked_domains)}
        self.domain_limiter = domain_limiter or FixedWindowRateLimiter(
            settings.email_domain_rate_limit, settings.email_domain_rate_window_s
        )
        self._threads: OrderedDict[str, str] = OrderedDict()

    def register_thread(self, message_id: str, correlation_id: str) -> None:
        """Remember a message id so later replies join the same correlation."""

        key = _normalize_message_id(message_id)
        if not key:
            return
        self._threads[key] = correlation_id
        self._threads.move_to_end(key)
        while len(self._threads) > THREAD_INDEX_SIZE:
            self._threads.popitem(last=False)

    def find_thread(self, email: InboundEmail) -> Optional[str]:
        candidates = [email.in_reply_to, *reversed(email.references)]
        for candidate in candidates:
            if candidate:
                found = self._threads.get(_normalize_message_id(candidate))
                if found:
                    return found
        return None

    async def _process(self, request: InboundRequest) -> AgentInput | ProcessingResult:
        verify_request(self.scheme, request.body, request.headers, self.secret, window_s=self.window_s)
        email = self._parse(request.body)

        limit = self.domain_limiter.hit(f"{self.org_id}:{email.sender_domain}")
        if not limit.allowed:
            raise QuotaExceededError(
                f"Too many emails from {email.sender_domain}",
                remaining=limit.remaining,
                limit=limit.limit,
                plan="sender_domain",
            )

        body = email.text if email.text and email.text.strip() else html_to_text(email.html or "")
        body = clean_body(body)
        classification = classify_email(email, self.blocked_domains)
        skip_reason = self._skip_reason(classification)
        if skip_reason:
            self.stats[f"skipped_{classification.email_type.value}"] += 1
            logger.info("email skipped org=%s domain=%s reason=%s", self.org_id, email.sender_domain, skip_reason)
            return ProcessingResult.skipped(skip_reason)

        thread_correlation = self.find_thread(email)
        correlation_id = thread_correlation or request.header("x-correlation-id") or new_id("cor")
        if thread_correlation:
            logger.debug("email threaded org=%s correlation=%s", self.org_id, thread_correlation)
        if email.message_id:
            self.register_thread(email.message_id, correlation_id)

        metadata: dict[str, Any] = {
            "subject": email.subject,
            "to": email.to if isinstance(email.to, str) else ", ".join(email.to),
            "email_type": classification.email_type.value,
            "spam_score": classification.spam_score,
            "is_auto_reply": classification.is_auto_reply,
            "attachment_count": len(email.attachments),
            "attachments": [
                {"filename": a.filename, "content_type": a.content_type, "size": a.size} for a in email.attachments
            ],
        }
        if email.message_id:
            metadata["message_id"] = email.message_id
            metadata["dedupe_key"] = _normalize_message_id(email.message_id)
        if email.in_reply_to:
            metadata["in_reply_to"] = email.in_reply_to
        if thread_correlation:
            metadata["thread_correlation_id"] = thread_correlation
        proposal = extract_event_proposal(email)
        if proposal is not None:
            metadata["event_proposal"] = asdict(proposal)

        return AgentInput(
            source=self.source,
            type=classification.email_type.value,
            raw_content=f"Subject: {email.subject}\n\n{body}".strip(),
            org_id=self.org_id,
            correlation_id=correlation_id,
            metadata=metadata,
            contact_info=ContactInfo(email=email.sender, name=email.sender_name),
            priority=detect_priority(email.headers, f"{email.subject}\n{body}"),
            timestamp=request.received_at,
        )

    def _parse(self, body: bytes) -> InboundEmail:
        try:
            payload = json.loads(body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("Email payload is not valid JSON", {"body": str(exc)[:120]}) from exc
        if not isinstance(payload, dict):
            raise ValidationError("Email payload must be a JSON object", {"body": "expected object"})
        try:
            return InboundEmail.model_validate(payload)
        except PydanticValidationError as exc:
            field_errors = {".".join(str(p) for p in err["loc"]) or "body": err["msg"] for err in exc.errors()}
            raise ValidationError("Invalid inbound email payload", field_errors) from exc

    def _skip_reason(self, classification: EmailClassification) -> Optional[str]:
        if self.skip_spam and classification.is_spam:
            return f"spam detected (score {classification.spam_score:.1f})"
        if self.skip_bounces and classification.is_bounce:
            return "bounce email"
        if self.skip_auto_replies and classification.is_auto_reply:
            return "auto-reply"
        return None
