"""Per-organization orchestration agent.

Owns the input handlers, decision engine and action executor for one org and
drives each decision through its lifecycle:

    PENDING_CLASSIFICATION -> CLASSIFIED -> AUTO_APPROVED | AWAITING_CONFIRMATION
    -> EXECUTING -> COMPLETED | FAILED        (or REJECTED / EXPIRED while pending)

``AgentRegistry`` is the only place agents are created; it holds the shared
event bus, LLM clients, store and job queue.
"""

import asyncio
import logging
from collections import Counter, OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from .actions.automation import AutomationTrigger
from .actions.calendar import CalendarManager
from .actions.executor import ActionExecutor, ActionHandler
from .actions.notifications import NotificationDispatcher
from .actions.pipeline import PipelineAssigner
from .actions.queue import InMemoryJobQueue
from .config import settings
from .decision.context import DecisionContextBuilder
from .decision.engine import DecisionEngine
from .decision.fallback import build_fallback_decision
from .domain import (
    ActionHandlerResult,
    ActionKind,
    AgentAction,
    AgentDecisionResult,
    AgentInput,
    ChangeEvent,
    DecisionContext,
    DecisionRecord,
    DecisionState,
    ExecutionContext,
    OrgSettingsSnapshot,
    PendingDecision,
)
from .errors import InvalidStateError, NotFoundError, QuotaExceededError
from .events.bus import Event, EventBus
from .inputs.db_trigger import DBTriggerHandler
from .inputs.inbound_email import EmailHandler
from .inputs.webhook import WebhookHandler
from .inputs.worker import WorkerEventHandler
from .llm.base import LLMClient
from .llm.registry import LLMClientRegistry
from .rate_limit import FixedWindowRateLimiter
from .sla import SLAMonitor
from .store import AgentStore
from .utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTIONS = ("*.received", "intake.*", "pipeline.*", "calendar.*", "team.*")
SEEN_INPUTS_LIMIT = 5000
RECENT_RECORDS_LIMIT = 500
AGENT_ACTOR = "agent"


@dataclass
class AgentConfig:
    org_id: str
    auto_execute_threshold: Optional[float] = None
    critical_threshold: Optional[float] = None
    enabled_actions: Optional[list[str]] = None
    confirmation_timeout_s: int = field(default_factory=lambda: settings.confirmation_timeout_s)
    expiry_sweep_interval_s: float = field(default_factory=lambda: float(settings.expiry_sweep_interval_s))
    max_decisions_per_minute: int = field(default_factory=lambda: settings.agent_max_decisions_per_minute)
    max_decisions_per_hour: int = field(default_factory=lambda: settings.agent_max_decisions_per_hour)
    plan: str = field(default_factory=lambda: settings.agent_plan)
    dry_run: bool = False
    subscribed_events: tuple[str, ...] = DEFAULT_SUBSCRIPTIONS


def build_handler_map(
    pipeline: PipelineAssigner,
    calendar: CalendarManager,
    notifications: NotificationDispatcher,
    automation: AutomationTrigger,
) -> dict[ActionKind, ActionHandler]:
    return {
        ActionKind.assign_pipeline: pipeline.assign,
        ActionKind.create_event: calendar.create,
        ActionKind.update_event: calendar.update,
        ActionKind.cancel_event: calendar.cancel,
        ActionKind.send_notification: notifications.send,
        ActionKind.trigger_automation: automation.trigger,
        ActionKind.escalate: notifications.escalate,
    }


class OrchestrationAgent:
    def __init__(
        self,
        config: AgentConfig,
        *,
        bus: EventBus,
        store: AgentStore,
        llm: LLMClient,
        queue: InMemoryJobQueue | None = None,
        engine: DecisionEngine | None = None,
        automation: AutomationTrigger | None = None,
        notifications: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.org_id = config.org_id
        self.bus = bus
        self.store = store
        self._clock = clock

        self.context_builder = DecisionContextBuilder(store, enabled_actions=config.enabled_actions)
        self.engine = engine or DecisionEngine(
            llm,
            self.context_builder,
            auto_execute_threshold=config.auto_execute_threshold,
            critical_threshold=config.critical_threshold,
        )

        self.webhooks = WebhookHandler(bus, self.org_id)
        self.email = EmailHandler(bus, self.org_id)
        self.worker = WorkerEventHandler(bus, self.org_id)
        self.db_trigger = DBTriggerHandler(bus, self.org_id)
        self.sla = SLAMonitor(bus, store, self.org_id, clock=clock)

        handlers = build_handler_map(
            PipelineAssigner(store, on_change=self.report_change),
            CalendarManager(store, on_change=self.report_change),
            notifications or NotificationDispatcher(store, on_change=self.report_change),
            automation or AutomationTrigger(store),
        )
        self.executor = ActionExecutor(
            handlers,
            bus=bus,
            store=store,
            queue=queue,
            on_result=self._on_action_result,
        )

        self._minute_quota = FixedWindowRateLimiter(config.max_decisions_per_minute, 60)
        self._hour_quota = FixedWindowRateLimiter(config.max_decisions_per_hour, 3600)
        self._pending: dict[str, PendingDecision] = {}
        self._active: dict[str, DecisionRecord] = {}
        self._recent: OrderedDict[str, DecisionRecord] = OrderedDict()
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        self._subscriptions: list[str] = []
        self._sweeper: asyncio.Task | None = None
        self.stats: Counter[str] = Counter()

    # Lifecycle

    @property
    def running(self) -> bool:
        return bool(self._subscriptions)

    async def start(self) -> None:
        if self.running:
            return
        for pattern in self.config.subscribed_events:
            self._subscriptions.append(self.bus.subscribe(pattern, self.handle_event))
        if self.config.expiry_sweep_interval_s > 0:
            self._sweeper = asyncio.create_task(self._sweep())
        logger.info("agent started org=%s subscriptions=%s", self.org_id, len(self._subscriptions))

    async def stop(self) -> None:
        for subscription_id in self._subscriptions:
            self.bus.unsubscribe(subscription_id)
        self._subscriptions.clear()
        tasks = [t for t in [self._sweeper, *self._tasks] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sweeper = None
        self._tasks.clear()
        logger.info("agent stopped org=%s", self.org_id)

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.config.expiry_sweep_interval_s)
            try:
                await self.expire_pending()
            except Exception:
                logger.exception("expiry sweep failed org=%s", self.org_id)
            try:
                await self.sla.check_all()
            except Exception:
                logger.exception("sla sweep failed org=%s", self.org_id)

    # Ingress

    async def handle_event(self, event: Event) -> Optional[asyncio.Task]:
        """Bus subscriber: schedule processing of an input event in the background."""

        if event.org_id and event.org_id != self.org_id:
            return None
        raw = event.payload.get("input")
        if not isinstance(raw, dict):
            return None
        agent_input = AgentInput.from_payload(raw)
        if agent_input.org_id != self.org_id:
            return None
        if agent_input.metadata.get("triggered_by") == AGENT_ACTOR:
            self.stats["own_changes_skipped"] += 1
            return None
        key = self._dedupe_key(agent_input)
        if key in self._seen:
            self.stats["duplicates_skipped"] += 1
            logger.info("duplicate input skipped org=%s key=%s", self.org_id, key)
            return None
        self._seen[key] = None
        while len(self._seen) > SEEN_INPUTS_LIMIT:
            self._seen.popitem(last=False)

        task = asyncio.create_task(self._process_event_input(agent_input))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _dedupe_key(self, agent_input: AgentInput) -> str:
        # Handlers tag redeliveries with a delivery key; threads and jobs share correlation ids.
        delivery = agent_input.metadata.get("dedupe_key")
        if delivery:
            return f"{agent_input.source.value}:{delivery}"
        return f"{agent_input.source.value}:{agent_input.id}"

    async def _process_event_input(self, agent_input: AgentInput) -> None:
        try:
            await self.process(agent_input)
        except QuotaExceededError as exc:
            logger.warning("decision quota exceeded org=%s input=%s", self.org_id, agent_input.id)
            decision = build_fallback_decision(agent_input, exc.message)
            await self._record_decision(agent_input, self._minimal_context(agent_input), decision)
        except Exception:
            logger.exception("input processing failed org=%s input=%s", self.org_id, agent_input.id)

    async def report_change(self, change: ChangeEvent) -> None:
        await self.db_trigger.handle_input(change)

    # Decisions

    def check_quota(self) -> dict[str, Any]:
        minute_left = self._minute_quota.limit - self._minute_quota.peek(self.org_id)
        hour_left = self._hour_quota.limit - self._hour_quota.peek(self.org_id)
        if minute_left <= hour_left:
            remaining, limit = minute_left, self._minute_quota.limit
        else:
            remaining, limit = hour_left, self._hour_quota.limit
        return {"allowed": remaining > 0, "remaining": max(0, remaining), "limit": limit, "plan": self.config.plan}

    def _consume_quota(self) -> None:
        quota = self.check_quota()
        if not quota["allowed"]:
            raise QuotaExceededError(
                f"Decision quota exceeded for org {self.org_id}",
                remaining=0,
                limit=quota["limit"],
                plan=quota["plan"],
            )
        self._minute_quota.hit(self.org_id)
        self._hour_quota.hit(self.org_id)

    async def process(self, agent_input: AgentInput) -> DecisionRecord:
        self._consume_quota()
        self.stats["inputs_processed"] += 1
        try:
            context = self.engine.build_context(agent_input)
        except Exception as exc:
            logger.warning("context build failed org=%s input=%s error=%s", self.org_id, agent_input.id, exc)
            context = self._minimal_context(agent_input)
            decision = build_fallback_decision(agent_input, f"context unavailable: {exc}")
        else:
            decision = await self.engine.decide(agent_input, context)
        return await self._record_decision(agent_input, context, decision)

    def _minimal_context(self, agent_input: AgentInput) -> DecisionContext:
        return DecisionContext(input=agent_input, org=OrgSettingsSnapshot(org_id=self.org_id))

    async def _record_decision(
        self, agent_input: AgentInput, context: DecisionContext, decision: AgentDecisionResult
    ) -> DecisionRecord:
        record = DecisionRecord(decision=decision, input=agent_input)
        record.transition(DecisionState.classified)
        self._active[decision.id] = record
        self.stats["decisions"] += 1
        if decision.is_fallback:
            self.stats["fallback_decisions"] += 1
        if decision.requires_confirmation:
            record.transition(DecisionState.awaiting_confirmation)
            now = self._clock()
            self._pending[decision.id] = PendingDecision(
                record=record,
                context=context,
                expires_at=now + timedelta(seconds=self.config.confirmation_timeout_s),
                created_at=now,
            )
        else:
            record.transition(DecisionState.auto_approved)
            record.resolved_by = AGENT_ACTOR
        self.store.save_decision(record)
        logger.info(
            "decision made org=%s decision=%s category=%s confidence=%.2f actions=%s confirm=%s fallback=%s",
            self.org_id,
            decision.id,
            decision.intent.category,
            decision.confidence,
            len(decision.actions),
            decision.requires_confirmation,
            decision.is_fallback,
        )
        await self._emit("decision.made", record, {"decision": decision.to_payload(), "state": record.state.value})
        if not decision.requires_confirmation:
            await self._execute(record)
        return record

    async def _execute(self, record: DecisionRecord) -> None:
        record.transition(DecisionState.executing)
        self.store.save_decision(record)
        decision = record.decision
        for index, action in enumerate(decision.actions):
            ctx = ExecutionContext(
                decision_id=decision.id,
                action_index=index,
                org_id=self.org_id,
                correlation_id=decision.correlation_id,
                priority=record.input.priority,
                dry_run=self.config.dry_run,
            )
            record.action_results[index] = await self.executor.execute(action, ctx)
        if self._maybe_finish(record):
            await self._emit_finished(record)

    async def _on_action_result(self, ctx: ExecutionContext, action: AgentAction, result: ActionHandlerResult) -> None:
        if not isinstance(ctx.action_index, int):
            return
        record = self._active.get(ctx.decision_id)
        if record is None:
            return
        record.action_results[ctx.action_index] = result
        if self._maybe_finish(record):
            await self._emit_finished(record)

    def _maybe_finish(self, record: DecisionRecord) -> bool:
        if record.state != DecisionState.executing:
            return False
        results = record.action_results
        if len(results) < len(record.decision.actions) or any(r.retry_scheduled for r in results.values()):
            self.store.save_decision(record)
            return False
        failed = [i for i, r in results.items() if not r.success]
        record.transition(DecisionState.failed if failed else DecisionState.completed)
        self.stats["decisions_failed" if failed else "decisions_completed"] += 1
        self.store.save_decision(record)
        self._retire(record)
        logger.info(
            "decision finished org=%s decision=%s state=%s failed_actions=%s",
            self.org_id,
            record.decision_id,
            record.state.value,
            failed,
        )
        return True

    async def _emit_finished(self, record: DecisionRecord) -> None:
        name = "decision.completed" if record.state == DecisionState.completed else "decision.failed"
        await self._emit(name, record, {"state": record.state.value})

    # Confirmation loop

    def _retire(self, record: DecisionRecord) -> None:
        """Move a terminal record out of the active set into the bounded recent cache."""

        self._active.pop(record.decision_id, None)
        self._remember(record)

    def _remember(self, record: DecisionRecord) -> None:
        self._recent[record.decision_id] = record
        self._recent.move_to_end(record.decision_id)
        while len(self._recent) > RECENT_RECORDS_LIMIT:
            self._recent.popitem(last=False)

    def get_record(self, decision_id: str) -> Optional[DecisionRecord]:
        record = self._active.get(decision_id) or self._recent.get(decision_id)
        if record is None:
            record = self.store.get_decision(self.org_id, decision_id)
            if record is not None and record.is_terminal:
                self._remember(record)
        return record

    def _resolved(self, decision_id: str) -> DecisionRecord:
        record = self.get_record(decision_id)
        if record is None:
            raise NotFoundError(f"Decision {decision_id} not found", details={"decision_id": decision_id})
        return record

    async def approve(self, decision_id: str, actor: str) -> DecisionRecord:
        pending = self._pending.pop(decision_id, None)
        if pending is None:
            return self._resolved(decision_id)
        record = pending.record
        if pending.is_expired(self._clock()):
            await self._expire(pending)
            return record
        record.resolved_by = actor
        logger.info("decision approved org=%s decision=%s actor=%s", self.org_id, decision_id, actor)
        self.store.log_activity(
            self.org_id, "decision", decision_id, "approved", actor=actor, correlation_id=record.decision.correlation_id
        )
        await self._emit("decision.approved", record, {"actor": actor})
        await self._execute(record)
        return record

    async def reject(self, decision_id: str, actor: str, reason: str = "") -> DecisionRecord:
        pending = self._pending.pop(decision_id, None)
        if pending is None:
            return self._resolved(decision_id)
        record = pending.record
        record.transition(DecisionState.rejected)
        record.resolved_by = actor
        record.resolution_reason = reason or None
        self.store.save_decision(record)
        self._retire(record)
        self.stats["decisions_rejected"] += 1
        logger.info("decision rejected org=%s decision=%s actor=%s", self.org_id, decision_id, actor)
        self.store.log_activity(
            self.org_id,
            "decision",
            decision_id,
            "rejected",
            actor=actor,
            correlation_id=record.decision.correlation_id,
            details={"reason": reason},
        )
        await self._emit("decision.rejected", record, {"actor": actor, "reason": reason})
        return record

    async def expire_pending(self, now: datetime | None = None) -> list[DecisionRecord]:
        now = now or self._clock()
        due = [d for d, p in self._pending.items() if p.is_expired(now)]
        expired = []
        for decision_id in due:
            pending = self._pending.pop(decision_id, None)
            if pending is None:
                continue
            await self._expire(pending)
            expired.append(pending.record)
        return expired

    async def _expire(self, pending: PendingDecision) -> None:
        record = pending.record
        record.transition(DecisionState.expired)
        record.resolved_by = AGENT_ACTOR
        record.resolution_reason = "confirmation timeout"
        self.store.save_decision(record)
        self._retire(record)
        self.stats["decisions_expired"] += 1
        logger.info("decision expired org=%s decision=%s", self.org_id, record.decision_id)
        self.store.log_activity(
            self.org_id,
            "decision",
            record.decision_id,
            "expired",
            correlation_id=record.decision.correlation_id,
            details={"expires_at": pending.expires_at.isoformat()},
        )
        await self._emit("decision.expired", record, {"expires_at": pending.expires_at.isoformat()})

    async def retry_action(self, decision_id: str, index: int) -> ActionHandlerResult:
        """Re-run one failed action of a decision that was executed.

        Only actions whose recorded result is a final failure can be retried;
        rejected, expired and still-pending decisions never execute.
        """

        record = self._resolved(decision_id)
        actions = record.decision.actions
        if not 0 <= index < len(actions):
            raise NotFoundError(f"Decision {decision_id} has no action {index}", details={"index": index})
        if record.state not in (DecisionState.executing, DecisionState.failed):
            raise InvalidStateError(
                f"Decision {decision_id} is {record.state.value}; only executed decisions can retry actions",
                details={"state": record.state.value},
            )
        previous = record.action_results.get(index)
        if previous is None or previous.success or previous.retry_scheduled:
            raise InvalidStateError(
                f"Action {index} of decision {decision_id} has no failed result to retry",
                details={"index": index},
            )
        ctx = ExecutionContext(
            decision_id=decision_id,
            action_index=index,
            org_id=self.org_id,
            correlation_id=record.decision.correlation_id,
            priority=record.input.priority,
            dry_run=self.config.dry_run,
        )
        self.executor.forget_failure(ctx.idempotency_key)
        result = await self.executor.execute(actions[index], ctx)
        record.action_results[index] = result
        self.store.save_decision(record)
        recovered = all(r.success for r in record.action_results.values())
        self.stats["manual_retries"] += 1
        logger.info(
            "action retried org=%s decision=%s index=%s success=%s attempts=%s",
            self.org_id,
            decision_id,
            index,
            result.success,
            result.attempts,
        )
        self.store.log_activity(
            self.org_id,
            "decision",
            decision_id,
            "action_retried",
            correlation_id=record.decision.correlation_id,
            details={
                "index": index,
                "kind": actions[index].kind,
                "success": result.success,
                "attempts": previous.attempts + result.attempts,
                "error_code": result.error_code,
                "all_actions_succeeded": recovered,
            },
        )
        await self._emit(
            "decision.action_retried",
            record,
            {"index": index, "result": result.to_dict(), "all_actions_succeeded": recovered},
        )
        return result

    # Introspection

    def get_pending(self) -> list[PendingDecision]:
        return sorted(self._pending.values(), key=lambda p: p.created_at)

    def get_history(self, *, state: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return [row.record for row in self.store.list_decisions(self.org_id, state=state, limit=limit)]

    def get_stats(self) -> dict[str, Any]:
        return {
            "org_id": self.org_id,
            "running": self.running,
            "pending": len(self._pending),
            "active_records": len(self._active),
            "in_flight": len(self._tasks),
            "decisions": dict(self.stats),
            "engine_fallbacks": self.engine.fallback_count,
            "executor": self.executor.get_stats(),
            "inputs": {
                "webhook": self.webhooks.get_stats(),
                "email": self.email.get_stats(),
                "worker": self.worker.get_stats(),
                "db_trigger": self.db_trigger.get_stats(),
            },
            "quota": self.check_quota(),
        }

    async def drain(self) -> None:
        """Wait for in-flight input processing and queued retries to settle."""

        while self._tasks or self.executor.queue.pending:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.executor.queue.drain()

    async def _emit(self, name: str, record: DecisionRecord, payload: dict[str, Any]) -> None:
        await self.bus.emit(
            name,
            {"decision_id": record.decision_id, **payload},
            org_id=self.org_id,
            correlation_id=record.decision.correlation_id,
            source=AGENT_ACTOR,
        )


class AgentRegistry:
    """Creates and owns one agent per organization plus the shared infrastructure."""

    def __init__(
        self,
        store: AgentStore,
        *,
        bus: EventBus | None = None,
        llm_registry: LLMClientRegistry | None = None,
        queue: InMemoryJobQueue | None = None,
        config_factory: Callable[[str], AgentConfig] | None = None,
    ) -> None:
        self.store = store
        self.bus = bus or EventBus()
        self.llm_registry = llm_registry or LLMClientRegistry()
        self.queue = queue or InMemoryJobQueue()
        self._config_factory = config_factory or (lambda org_id: AgentConfig(org_id=org_id))
        self._agents: dict[str, OrchestrationAgent] = {}

    async def get_or_create(self, org_id: str) -> OrchestrationAgent:
        agent = self._agents.get(org_id)
        if agent is not None:
            return agent
        self.store.ensure_organization(org_id)
        agent = OrchestrationAgent(
            self._config_factory(org_id),
            bus=self.bus,
            store=self.store,
            llm=self.llm_registry.default_client(),
            queue=self.queue,
        )
        self._agents[org_id] = agent
        await agent.start()
        return agent

    def get(self, org_id: str) -> Optional[OrchestrationAgent]:
        return self._agents.get(org_id)

    def agents(self) -> list[OrchestrationAgent]:
        return list(self._agents.values())

    async def shutdown(self) -> None:
        for agent in list(self._agents.values()):
            await agent.stop()
        self._agents.clear()
        await self.queue.close()
        self.llm_registry.close()
