"""Background job lifecycle events as agent inputs."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..domain import AgentInput, InputSource
from ..errors import ValidationError
from ..utils import utc_now
from .base import BaseInputHandler, ProcessingResult, clamp_priority


class JobEventType(str, Enum):
    enqueued = "enqueued"
    started = "started"
    completed = "completed"
    failed = "failed"


class WorkerJob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    return_value: Any = None
    failed_reason: Optional[str] = None
    attempts_made: int = 0
    max_attempts: int = 1
    priority: Optional[int] = None


class WorkerEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: JobEventType
    queue_name: str
    job: WorkerJob
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class WorkerEventHandler(BaseInputHandler):
    source = InputSource.worker
    event_name = "worker.received"

    def __init__(self, bus, org_id: str, *, reacts_to: set[JobEventType] | None = None) -> None:
        super().__init__(bus, org_id)
        self.reacts_to = reacts_to if reacts_to is not None else {JobEventType.completed, JobEventType.failed}

    async def _process(self, raw: WorkerEvent | dict[str, Any]) -> AgentInput | ProcessingResult:
        event = self._parse(raw)
        if event.event_type not in self.reacts_to:
            return ProcessingResult.skipped(f"job event {event.event_type.value} not handled")

        job = event.job
        exhausted = job.attempts_made >= job.max_attempts
        metadata: dict[str, Any] = {
            "queue_name": event.queue_name,
            "job_id": job.id,
            "job_name": job.name,
            "job_data": job.data,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "dedupe_key": f"{event.queue_name}:{job.id}:{event.event_type.value}:{job.attempts_made}",
        }
        for key in ("intake_id", "workflow_id", "event_id"):
            if job.data.get(key):
                metadata[key] = str(job.data[key])

        if event.event_type == JobEventType.failed:
            priority = 5 if exhausted else 4
            metadata["failed_reason"] = job.failed_reason or "unknown"
            metadata["retry_requested"] = not exhausted
            content = (
                f"Job {job.name} ({job.id}) on queue {event.queue_name} failed after "
                f"{job.attempts_made}/{job.max_attempts} attempts: {job.failed_reason or 'unknown error'}"
            )
        else:
            priority = clamp_priority(job.priority) if job.priority else 2
            metadata["return_value"] = job.return_value
            content = f"Job {job.name} ({job.id}) on queue {event.queue_name} {event.event_type.value}"

        correlation_id = (
            str(job.data.get("correlation_id") or "") or event.correlation_id or f"job:{event.queue_name}:{job.id}"
        )
        return AgentInput(
            source=self.source,
            type=f"job.{event.event_type.value}",
            raw_content=content,
            org_id=self.org_id,
            correlation_id=correlation_id,
            metadata=metadata,
            priority=priority,
            timestamp=event.timestamp,
        )

    def _parse(self, raw: WorkerEvent | dict[str, Any]) -> WorkerEvent:
        if isinstance(raw, WorkerEvent):
            return raw
        try:
            return WorkerEvent.model_validate(raw)
        except PydanticValidationError as exc:
            field_errors = {".".join(str(p) for p in err["loc"]): err["msg"] for err in exc.errors()}
            raise ValidationError("Invalid worker event", field_errors) from exc
