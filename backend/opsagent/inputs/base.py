"""Shared contract for input handlers.

A handler turns a raw trigger into an ``AgentInput`` and publishes it on the
event bus. Authentication and validation problems come back as a failed
``ProcessingResult``; nothing is emitted for them.
"""

import logging
import re
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..domain import AgentInput, InputSource
from ..errors import AgentError, ValidationError
from ..events.bus import EmitResult, EventBus
from ..utils import utc_now

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 5
DEFAULT_PRIORITY = 3

_CRITICAL_WORDS = re.compile(r"\b(urgent|asap|emergency)\b", re.IGNORECASE)
_HIGH_WORDS = re.compile(r"\b(important|deadline)\b", re.IGNORECASE)


@dataclass(frozen=True)
class InboundRequest:
    """Raw HTTP delivery: the exact body bytes plus headers."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    endpoint: str = "default"
    received_at: datetime = field(default_factory=utc_now)

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class ProcessingResult:
    success: bool
    input: Optional[AgentInput] = None
    event_emitted: bool = False
    event_name: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_type: Optional[str] = None
    error_details: dict[str, Any] = field(default_factory=dict)
    field_errors: dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None
    emit_result: Optional[EmitResult] = None

    @classmethod
    def skipped(cls, reason: str, agent_input: AgentInput | None = None) -> "ProcessingResult":
        return cls(success=True, input=agent_input, skipped_reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "input_id": self.input.id if self.input else None,
            "correlation_id": self.input.correlation_id if self.input else None,
            "event_emitted": self.event_emitted,
            "event_name": self.event_name,
            "error": self.error,
            "error_code": self.error_code,
            "error_details": self.error_details,
            "field_errors": self.field_errors,
            "skipped_reason": self.skipped_reason,
        }


def clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, value))


def content_priority(text: str) -> int:
    if _CRITICAL_WORDS.search(text or ""):
        return 5
    if _HIGH_WORDS.search(text or ""):
        return 4
    return DEFAULT_PRIORITY


def header_priority(headers: Mapping[str, str]) -> Optional[int]:
    """Priority implied by mail/webhook headers, or ``None`` if none are present."""

    lowered = {k.lower(): str(v).strip().lower() for k, v in headers.items()}
    found: list[int] = []

    explicit = lowered.get("x-agent-priority")
    if explicit:
        match = re.match(r"^(\d+)", explicit)
        if match:
            found.append(int(match.group(1)))

    x_priority = lowered.get("x-priority")
    if x_priority:
        match = re.match(r"^(\d)", x_priority)
        if match:
            # X-Priority runs 1 (highest) to 5 (lowest).
            found.append(6 - int(match.group(1)))
        elif "high" in x_priority:
            found.append(4)

    importance = lowered.get("importance")
    if importance in ("high", "urgent"):
        found.append(4)
    elif importance == "low":
        found.append(2)
    elif importance == "normal":
        found.append(3)

    priority = lowered.get("priority")
    if priority == "urgent":
        found.append(5)
    elif priority == "non-urgent":
        found.append(2)

    if not found:
        return None
    return clamp_priority(max(found))


def detect_priority(headers: Mapping[str, str] | None, text: str) -> int:
    from_content = content_priority(text)
    from_headers = header_priority(headers or {})
    if from_headers is None:
        return clamp_priority(from_content)
    return clamp_priority(max(from_headers, from_content))


class BaseInputHandler:
    """Template for source-specific handlers; subclasses implement ``_process``."""

    source: InputSource = InputSource.manual
    event_name: str = "manual.received"

    def __init__(self, bus: EventBus, org_id: str) -> None:
        self.bus = bus
        self.org_id = org_id
        self.stats: Counter[str] = Counter()

    async def handle_input(self, raw: Any) -> ProcessingResult:
        self.stats["received"] += 1
        try:
            outcome = await self._process(raw)
        except AgentError as exc:
            self.stats["rejected"] += 1
            logger.warning(
                "input rejected source=%s org=%s code=%s error=%s",
                self.source.value,
                self.org_id,
                exc.code,
                exc.message,
            )
            return ProcessingResult(
                success=False,
                error=exc.message,
                error_code=exc.code,
                error_type=type(exc).__name__,
                error_details=dict(exc.details),
                field_errors=exc.field_errors if isinstance(exc, ValidationError) else {},
            )
        if isinstance(outcome, ProcessingResult):
            self.stats["skipped"] += 1
            logger.info(
                "input skipped source=%s org=%s reason=%s", self.source.value, self.org_id, outcome.skipped_reason
            )
            return outcome
        return await self.publish(outcome)

    def event_name_for(self, agent_input: AgentInput) -> str:
        return self.event_name

    async def publish(self, agent_input: AgentInput) -> ProcessingResult:
        event_name = self.event_name_for(agent_input)
        emit_result = await self.bus.emit(
            event_name,
            {"input": agent_input.to_payload()},
            org_id=agent_input.org_id,
            correlation_id=agent_input.correlation_id,
            source=self.source.value,
        )
        self.stats["emitted"] += 1
        return ProcessingResult(
            success=True,
            input=agent_input,
            event_emitted=True,
            event_name=event_name,
            emit_result=emit_result,
        )

    async def _process(self, raw: Any) -> AgentInput | ProcessingResult:
        raise NotImplementedError

    def get_stats(self) -> dict[str, int]:
        return dict(self.stats)
