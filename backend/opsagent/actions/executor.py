"""Action execution: dispatch, idempotency, entity locks, retries, escalation.

Each action runs at most once per ``(decision_id, action_index)``. A terminal
result is recorded in memory and in the store and is returned as-is on later
calls. Retryable failures go back through the job queue with exponential
backoff; once attempts run out the action is marked failed and an
``escalate`` action is synthesized so a human sees it.
"""

import asyncio
import inspect
import logging
from collections import Counter, OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import replace
from typing import Any, Optional

from ..config import settings
from ..domain import (
    ActionHandlerResult,
    ActionKind,
    AgentAction,
    EscalateAction,
    EscalateParams,
    ExecutionContext,
    Urgency,
)
from ..errors import AgentError, ConfigurationError
from ..events.bus import EventBus
from ..store import AgentStore
from ..utils import truncate
from .queue import InMemoryJobQueue, QueueJob

logger = logging.getLogger(__name__)

ActionHandler = Callable[[Any, ExecutionContext], Awaitable[ActionHandlerResult]]
ResultCallback = Callable[[ExecutionContext, AgentAction, ActionHandlerResult], Any]

ESCALATION_SUFFIX = "escalation"
RESULT_CACHE_SIZE = 1000


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                del self._users[key]
                self._locks.pop(key, None)


class ActionExecutor:
    def __init__(
        self,
        handlers: dict[ActionKind, ActionHandler],
        *,
        bus: EventBus | None = None,
        store: AgentStore | None = None,
        queue: InMemoryJobQueue | None = None,
        max_attempts: int | None = None,
        retry_base_s: float | None = None,
        retry_max_s: float | None = None,
        on_result: ResultCallback | None = None,
        result_cache_size: int = RESULT_CACHE_SIZE,
    ) -> None:
        missing = [kind.value for kind in ActionKind if kind not in handlers]
        if missing:
            raise ConfigurationError(
                f"No handler registered for action kinds: {', '.join(missing)}",
                details={"missing": missing},
            )
        self._handlers = dict(handlers)
        self.bus = bus
        self.store = store
        self.queue = queue or InMemoryJobQueue()
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.action_max_attempts)
        self.retry_base_s = retry_base_s if retry_base_s is not None else settings.action_retry_base_ms / 1000
        self.retry_max_s = retry_max_s if retry_max_s is not None else settings.action_retry_max_ms / 1000
        self.on_result = on_result
        # Terminal results live in the store; this is only a hot cache in front of it.
        self._results: OrderedDict[str, ActionHandlerResult] = OrderedDict()
        self._result_cache_size = max(1, result_cache_size)
        self._key_locks = KeyedLocks()
        self._entity_locks = KeyedLocks()
        self._retrying: set[str] = set()
        self.executed = 0
        self.failed = 0
        self.retries_scheduled = 0

    def retry_delay(self, attempt: int) -> float:
        return min(self.retry_max_s, self.retry_base_s * (2 ** max(0, attempt - 1)))

    def cached_result(self, key: str) -> Optional[ActionHandlerResult]:
        cached = self._results.get(key)
        if cached is not None:
            self._results.move_to_end(key)
        elif self.store is not None:
            cached = self.store.get_action_result(key)
            if cached is not None:
                self._remember(key, cached)
        return cached

    def _remember(self, key: str, result: ActionHandlerResult) -> None:
        self._results[key] = result
        self._results.move_to_end(key)
        while len(self._results) > self._result_cache_size:
            self._results.popitem(last=False)

    def forget_failure(self, key: str) -> bool:
        """Drop a recorded failure so the action can run again. Successes are kept."""

        cached = self.cached_result(key)
        if cached is None or cached.success:
            return False
        self._results.pop(key, None)
        if self.store is not None:
            self.store.delete_action_result(key)
        return True

    async def execute(self, action: AgentAction, ctx: ExecutionContext, *, attempt: int = 1) -> ActionHandlerResult:
        key = ctx.idempotency_key
        async with self._key_locks.hold(key):
            cached = self.cached_result(key)
            if cached is not None:
                logger.info("action replayed from record key=%s success=%s", key, cached.success)
                return replace(cached, from_cache=True)
            if attempt == 1 and key in self._retrying:
                return ActionHandlerResult(
                    success=False, error="Retry already scheduled", error_code="RETRY_PENDING", retry_scheduled=True
                )
            self._retrying.discard(key)
            result = await self._run(action, ctx, attempt)
            result.attempts = attempt
            retry = result.retryable and not result.success and attempt < self.max_attempts
            if retry:
                self._retrying.add(key)
            else:
                self._record(ctx, action, result)

        if retry:
            self._schedule_retry(action, ctx, attempt)
            result.retry_scheduled = True
            await self._notify(ctx, action, result)
            return result

        await self._publish(ctx, action, result)
        await self._notify(ctx, action, result)
        if not result.success and self._should_escalate(action, ctx):
            await self._escalate(action, ctx, result)
        return result

    async def _run(self, action: AgentAction, ctx: ExecutionContext, attempt: int) -> ActionHandlerResult:
        kind = ActionKind(action.kind)
        if ctx.dry_run:
            logger.info("dry run action key=%s kind=%s", ctx.idempotency_key, kind.value)
            return ActionHandlerResult.ok(dry_run=True, kind=kind.value, params=action.params.model_dump(mode="json"))
        handler = self._handlers.get(kind)
        if handler is None:
            return ActionHandlerResult.from_error(ConfigurationError(f"No handler for action kind {kind.value}"))
        async with self._lock_entities(action.entity_keys()):
            try:
                result = await handler(action, ctx)
            except AgentError as exc:
                result = ActionHandlerResult.from_error(exc)
            except Exception as exc:
                logger.exception("action handler crashed key=%s kind=%s", ctx.idempotency_key, kind.value)
                result = ActionHandlerResult(success=False, error=str(exc)[:500], error_code="HANDLER_CRASHED")
        self.executed += 1
        log = logger.info if result.success else logger.warning
        log(
            "action executed key=%s kind=%s attempt=%s success=%s code=%s",
            ctx.idempotency_key,
            kind.value,
            attempt,
            result.success,
            result.error_code,
        )
        return result

    @asynccontextmanager
    async def _lock_entities(self, keys: list[str]) -> AsyncIterator[None]:
        # Sorted acquisition keeps two multi-entity actions from deadlocking.
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self._entity_locks.hold(key))
            yield

    def _record(self, ctx: ExecutionContext, action: AgentAction, result: ActionHandlerResult) -> None:
        self._remember(ctx.idempotency_key, result)
        if not result.success:
            self.failed += 1
        if self.store is not None:
            self.store.save_action_result(ctx, action.kind, result)

    def _schedule_retry(self, action: AgentAction, ctx: ExecutionContext, attempt: int) -> None:
        delay = self.retry_delay(attempt)
        self.retries_scheduled += 1

        async def _runner(job: QueueJob) -> None:
            await self.execute(action, ctx, attempt=job.attempt)

        self.queue.enqueue(
            QueueJob(
                task_id=ctx.idempotency_key,
                org_id=ctx.org_id,
                priority=ctx.priority,
                correlation_id=ctx.correlation_id,
                attempt=attempt + 1,
                delay_s=delay,
                data={"kind": action.kind},
            ),
            _runner,
        )

    def _should_escalate(self, action: AgentAction, ctx: ExecutionContext) -> bool:
        if action.kind == ActionKind.escalate.value:
            return False
        return not str(ctx.action_index).endswith(ESCALATION_SUFFIX)

    async def _escalate(self, action: AgentAction, ctx: ExecutionContext, result: ActionHandlerResult) -> None:
        intake_id = getattr(action.params, "intake_id", None)
        escalation = EscalateAction(
            params=EscalateParams(
                reason=truncate(
                    f"Action {action.kind} failed after {result.attempts} attempt(s): "
                    f"{result.error_code}: {result.error or 'unknown error'}",
                    500,
                ),
                intake_id=intake_id,
                urgency=Urgency.critical if ctx.priority >= 5 else Urgency.high,
            )
        )
        escalation_ctx = replace(ctx, action_index=f"{ctx.action_index}:{ESCALATION_SUFFIX}")
        logger.warning("escalating failed action key=%s", ctx.idempotency_key)
        await self.execute(escalation, escalation_ctx)

    async def _publish(self, ctx: ExecutionContext, action: AgentAction, result: ActionHandlerResult) -> None:
        if self.bus is None:
            return
        event_name = "action.completed" if result.success else "action.failed"
        await self.bus.emit(
            event_name,
            {
                "decision_id": ctx.decision_id,
                "action_index": ctx.action_index,
                "kind": action.kind,
                "result": result.to_dict(),
            },
            org_id=ctx.org_id,
            correlation_id=ctx.correlation_id,
            source="executor",
        )

    async def _notify(self, ctx: ExecutionContext, action: AgentAction, result: ActionHandlerResult) -> None:
        if self.on_result is None:
            return
        outcome = self.on_result(ctx, action, result)
        if inspect.isawaitable(outcome):
            await outcome

    def get_stats(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "failed": self.failed,
            "retries_scheduled": self.retries_scheduled,
            "recorded": len(self._results),
            "locks": len(self._key_locks) + len(self._entity_locks),
            "queues": self.queue.stats(),
        }

