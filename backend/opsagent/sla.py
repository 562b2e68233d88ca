"""SLA monitoring for open intakes.

An intake with ``sla_due_at`` is in warning once 80% of the time between its
creation and its due time has passed, and breached at 100%. Each threshold is
announced once on the bus as ``intake.sla_warning`` / ``intake.sla_breached``
carrying an ``AgentInput``, so the org's agent decides what to do about it.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .config import settings
from .domain import AgentInput, InputSource
from .events.bus import EventBus
from .models import Intake
from .store import AgentStore, from_db_time
from .utils import new_id, utc_now

logger = logging.getLogger(__name__)


class SLAState(str, Enum):
    no_sla = "no_sla"
    ok = "ok"
    warning = "warning"
    breached = "breached"


@dataclass(frozen=True)
class SLACheck:
    intake_id: str
    state: SLAState
    percentage_used: float = 0.0
    due_at: Optional[datetime] = None
    emitted: bool = False


@dataclass
class SLASummary:
    checked: int = 0
    warning: int = 0
    breached: int = 0
    emitted: int = 0
    results: list[SLACheck] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"checked": self.checked, "warning": self.warning, "breached": self.breached, "emitted": self.emitted}


class SLAMonitor:
    def __init__(
        self,
        bus: EventBus,
        store: AgentStore,
        org_id: str,
        *,
        warning_threshold: float | None = None,
        breach_threshold: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.bus = bus
        self.store = store
        self.org_id = org_id
        self.warning_threshold = warning_threshold if warning_threshold is not None else settings.sla_warning_threshold
        self.breach_threshold = breach_threshold if breach_threshold is not None else settings.sla_breach_threshold
        if not 0 < self.warning_threshold < self.breach_threshold:
            raise ValueError("SLA thresholds must satisfy 0 < warning < breach")
        self._clock = clock

    def evaluate(self, intake: Intake, now: datetime) -> SLACheck:
        if intake.sla_due_at is None:
            return SLACheck(intake_id=intake.id, state=SLAState.no_sla)
        created = from_db_time(intake.created_at)
        due = from_db_time(intake.sla_due_at)
        window = (due - created).total_seconds()
        used = (now - created).total_seconds() / window if window > 0 else float("inf")
        if used >= self.breach_threshold:
            state = SLAState.breached
        elif used >= self.warning_threshold:
            state = SLAState.warning
        else:
            state = SLAState.ok
        return SLACheck(intake_id=intake.id, state=state, percentage_used=round(min(used, 99.0), 4), due_at=due)

    async def check_intake(self, intake_id: str) -> SLACheck:
        intake = self.store.get_intake(self.org_id, intake_id)
        if intake is None:
            return SLACheck(intake_id=intake_id, state=SLAState.no_sla)
        return await self._check(intake, self._clock())

    async def check_all(self) -> SLASummary:
        now = self._clock()
        summary = SLASummary()
        for intake in self.store.list_sla_intakes(self.org_id):
            check = await self._check(intake, now)
            summary.checked += 1
            summary.results.append(check)
            if check.state == SLAState.warning:
                summary.warning += 1
            elif check.state == SLAState.breached:
                summary.breached += 1
            if check.emitted:
                summary.emitted += 1
        if summary.emitted:
            logger.info(
                "sla check org=%s checked=%s warning=%s breached=%s emitted=%s",
                self.org_id,
                summary.checked,
                summary.warning,
                summary.breached,
                summary.emitted,
            )
        return summary

    async def _check(self, intake: Intake, now: datetime) -> SLACheck:
        check = self.evaluate(intake, now)
        if check.state == SLAState.breached and intake.sla_breached_at is None:
            self.store.mark_intake_sla(self.org_id, intake.id, breached_at=now)
        elif check.state == SLAState.warning and intake.sla_warned_at is None:
            self.store.mark_intake_sla(self.org_id, intake.id, warned_at=now)
        else:
            return check
        await self._emit(intake, check)
        return SLACheck(
            intake_id=check.intake_id,
            state=check.state,
            percentage_used=check.percentage_used,
            due_at=check.due_at,
            emitted=True,
        )

    async def _emit(self, intake: Intake, check: SLACheck) -> None:
        breached = check.state == SLAState.breached
        event_name = "intake.sla_breached" if breached else "intake.sla_warning"
        correlation_id = intake.correlation_id or new_id("cor")
        percent = int(check.percentage_used * 100)
        agent_input = AgentInput(
            source=InputSource.db_trigger,
            type=event_name,
            raw_content=(
                f"Intake '{intake.title}' has used {percent}% of its SLA "
                f"(due {check.due_at.isoformat() if check.due_at else 'unknown'})."
            ),
            org_id=self.org_id,
            correlation_id=correlation_id,
            metadata={
                "entity": "intake",
                "entity_id": intake.id,
                "intake_id": intake.id,
                "sla_state": check.state.value,
                "percentage_used": check.percentage_used,
                "triggered_by": "sla_monitor",
                "dedupe_key": f"sla:{intake.id}:{check.state.value}",
            },
            priority=5 if breached else 4,
        )
        log = logger.warning if breached else logger.info
        log("intake sla %s org=%s intake=%s used=%s%%", check.state.value, self.org_id, intake.id, percent)
        await self.bus.emit(
            event_name,
            {"input": agent_input.to_payload(), "intake_id": intake.id, "percentage_used": check.percentage_used},
            org_id=self.org_id,
            correlation_id=correlation_id,
            source="sla_monitor",
        )
