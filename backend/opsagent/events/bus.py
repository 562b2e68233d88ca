"""In-process publish/subscribe event bus.

Handlers run sequentially in subscription order. Async handlers are awaited
(with a per-handler timeout) before the next handler runs, so by the time
``emit`` returns every matching handler has observed the event. A failing
handler is recorded in the emit result and never stops the others. Every
emitted event lands in a bounded history log whatever its handlers did.
"""

import asyncio
import inspect
import itertools
import logging
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any, Optional

from ..config import settings
from ..utils import new_id, utc_now

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class Event:
    id: str
    name: str
    payload: dict[str, Any]
    org_id: Optional[str] = None
    correlation_id: Optional[str] = None
    source: Optional[str] = None
    emitted_at: datetime = field(default_factory=utc_now)


Handler = Callable[[Event], Any]


@dataclass
class HandlerFailure:
    subscription_id: str
    handler: str
    error: str
    error_type: str


@dataclass
class HandlerOutcome:
    subscription_id: str
    handler: str
    success: bool
    duration_ms: int
    error: Optional[str] = None


@dataclass
class EmitResult:
    event_id: str
    delivered_to: int = 0
    failures: list[HandlerFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class StoredEvent:
    id: str
    event_name: str
    payload: dict[str, Any]
    emitted_at: datetime
    handler_results: list[HandlerOutcome] = field(default_factory=list)
    org_id: Optional[str] = None
    correlation_id: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_name": self.event_name,
            "payload": self.payload,
            "emitted_at": self.emitted_at.isoformat(),
            "org_id": self.org_id,
            "correlation_id": self.correlation_id,
            "source": self.source,
            "handler_results": [
                {
                    "subscription_id": r.subscription_id,
                    "handler": r.handler,
                    "success": r.success,
                    "duration_ms": r.duration_ms,
                    "error": r.error,
                }
                for r in self.handler_results
            ],
        }


@dataclass
class _Subscription:
    id: str
    pattern: str
    handler: Handler
    once: bool
    seq: int

    def matches(self, event_name: str) -> bool:
        if self.pattern == WILDCARD or self.pattern == event_name:
            return True
        return "*" in self.pattern and fnmatchcase(event_name, self.pattern)


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None) or repr(handler)


class EventBus:
    """Sequential, fully-delivered event dispatch with a bounded audit log."""

    def __init__(self, *, history_size: int | None = None, handler_timeout_s: float | None = None) -> None:
        self._subscriptions: dict[str, _Subscription] = {}
        self._seq = itertools.count()
        size = history_size if history_size is not None else settings.event_history_size
        self._history: deque[StoredEvent] = deque(maxlen=max(1, size))
        self._handler_timeout_s = (
            handler_timeout_s if handler_timeout_s is not None else settings.event_handler_timeout_ms / 1000
        )
        self._emitted = 0
        self._per_event: Counter[str] = Counter()
        self._invocations = 0
        self._failures = 0

    def subscribe(self, event_name: str, handler: Handler, *, once: bool = False) -> str:
        if not event_name:
            raise ValueError("event_name is required")
        subscription_id = new_id("sub")
        self._subscriptions[subscription_id] = _Subscription(
            id=subscription_id, pattern=event_name, handler=handler, once=once, seq=next(self._seq)
        )
        return subscription_id

    def once(self, event_name: str, handler: Handler) -> str:
        return self.subscribe(event_name, handler, once=True)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def clear(self) -> None:
        self._subscriptions.clear()

    def subscriber_count(self, event_name: str | None = None) -> int:
        if event_name is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions.values() if s.matches(event_name))

    async def emit(
        self,
        event_name: str,
        payload: dict[str, Any] | None = None,
        *,
        org_id: str | None = None,
        correlation_id: str | None = None,
        source: str | None = None,
    ) -> EmitResult:
        event = Event(
            id=new_id("evt"),
            name=event_name,
            payload=dict(payload or {}),
            org_id=org_id,
            correlation_id=correlation_id,
            source=source,
        )
        targets = sorted(
            (s for s in self._subscriptions.values() if s.matches(event_name)),
            key=lambda s: s.seq,
        )
        for sub in targets:
            if sub.once:
                self._subscriptions.pop(sub.id, None)

        result = EmitResult(event_id=event.id)
        stored = StoredEvent(
            id=event.id,
            event_name=event_name,
            payload=event.payload,
            emitted_at=event.emitted_at,
            org_id=org_id,
            correlation_id=correlation_id,
            source=source,
        )
        self._emitted += 1
        self._per_event[event_name] += 1

        for sub in targets:
            name = _handler_name(sub.handler)
            started = time.perf_counter()
            error: BaseException | None = None
            try:
                outcome = sub.handler(event)
                if inspect.isawaitable(outcome):
                    await asyncio.wait_for(outcome, timeout=self._handler_timeout_s)
            except asyncio.TimeoutError:
                error = TimeoutError(f"handler timed out after {self._handler_timeout_s}s")
            except Exception as exc:
                error = exc
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._invocations += 1
            if error is None:
                result.delivered_to += 1
                stored.handler_results.append(
                    HandlerOutcome(subscription_id=sub.id, handler=name, success=True, duration_ms=duration_ms)
                )
                continue
            self._failures += 1
            message = f"{type(error).__name__}: {str(error)[:200]}"
            logger.warning("event handler failed event=%s handler=%s error=%s", event_name, name, message)
            result.failures.append(
                HandlerFailure(
                    subscription_id=sub.id, handler=name, error=str(error), error_type=type(error).__name__
                )
            )
            stored.handler_results.append(
                HandlerOutcome(
                    subscription_id=sub.id, handler=name, success=False, duration_ms=duration_ms, error=message
                )
            )

        self._history.append(stored)
        return result

    def history(
        self,
        event_name: str | None = None,
        *,
        org_id: str | None = None,
        limit: int | None = None,
    ) -> list[StoredEvent]:
        items = [
            e
            for e in self._history
            if (event_name is None or e.event_name == event_name) and (org_id is None or e.org_id == org_id)
        ]
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def stats(self) -> dict[str, Any]:
        return {
            "events_emitted": self._emitted,
            "events_by_name": dict(self._per_event),
            "handler_invocations": self._invocations,
            "handler_failures": self._failures,
            "subscriptions": len(self._subscriptions),
            "history_size": len(self._history),
        }
