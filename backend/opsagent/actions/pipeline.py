"""Intake routing into a pipeline stage and onto a team member."""

import logging
from typing import Optional

from ..domain import ActionHandlerResult, AssignPipelineAction, ExecutionContext
from ..errors import InvalidStateError, NotFoundError
from ..models import IntakeStatus, Pipeline, TeamMember
from .base import StoreBackedHandler

logger = logging.getLogger(__name__)


class PipelineAssigner(StoreBackedHandler):
    async def assign(self, action: AssignPipelineAction, ctx: ExecutionContext) -> ActionHandlerResult:
        params = action.params
        intake = self.store.get_intake(ctx.org_id, params.intake_id)
        if intake is None:
            raise NotFoundError(f"Intake {params.intake_id} not found", details={"intake_id": params.intake_id})
        if intake.status == IntakeStatus.closed:
            raise InvalidStateError(f"Intake {intake.id} is closed", details={"intake_id": intake.id})

        pipeline = self._resolve_pipeline(ctx.org_id, params.pipeline_id)
        stage_id = self._resolve_stage(pipeline, params.stage_id)
        assignee = None
        if params.assignee_id or not intake.assigned_to:
            assignee = self._resolve_assignee(ctx.org_id, params.assignee_id)
        assignee_id = assignee.id if assignee else intake.assigned_to

        if (
            intake.status == IntakeStatus.assigned
            and intake.pipeline_id == pipeline.id
            and intake.stage_id == stage_id
            and intake.assigned_to == assignee_id
        ):
            raise InvalidStateError(
                f"Intake {intake.id} is already assigned",
                details={"intake_id": intake.id, "assigned_to": intake.assigned_to},
            )

        change = self.store.update_intake(
            ctx.org_id,
            intake.id,
            pipeline_id=pipeline.id,
            stage_id=stage_id,
            assigned_to=assignee_id,
            status=IntakeStatus.assigned,
        )
        self.store.log_activity(
            ctx.org_id,
            "intake",
            intake.id,
            "assigned",
            correlation_id=ctx.correlation_id,
            details={
                "pipeline_id": pipeline.id,
                "stage_id": stage_id,
                "assigned_to": assignee_id,
                "reason": params.reason,
                "decision_id": ctx.decision_id,
            },
        )
        await self.report_change(change)
        logger.info(
            "intake assigned org=%s intake=%s pipeline=%s stage=%s assignee=%s",
            ctx.org_id,
            intake.id,
            pipeline.id,
            stage_id,
            assignee_id,
        )
        return ActionHandlerResult.ok(
            intake_id=intake.id, pipeline_id=pipeline.id, stage_id=stage_id, assigned_to=assignee_id
        )

    def _resolve_pipeline(self, org_id: str, pipeline_id: Optional[str]) -> Pipeline:
        if pipeline_id:
            pipeline = self.store.get_pipeline(org_id, pipeline_id)
            if pipeline is None:
                raise NotFoundError(f"Pipeline {pipeline_id} not found", details={"pipeline_id": pipeline_id})
            return pipeline
        pipeline = self.store.get_default_pipeline(org_id)
        if pipeline is None:
            raise NotFoundError(f"Organization {org_id} has no pipelines", details={"org_id": org_id})
        return pipeline

    def _resolve_stage(self, pipeline: Pipeline, stage_id: Optional[str]) -> Optional[str]:
        stages = self.store.list_stages(pipeline.id)
        if stage_id:
            if not any(s.id == stage_id for s in stages):
                raise NotFoundError(
                    f"Stage {stage_id} is not part of pipeline {pipeline.id}",
                    details={"stage_id": stage_id, "pipeline_id": pipeline.id},
                )
            return stage_id
        return stages[0].id if stages else None

    def _resolve_assignee(self, org_id: str, assignee_id: Optional[str]) -> Optional[TeamMember]:
        if assignee_id:
            member = self.store.get_member(org_id, assignee_id)
            if member is None or not member.active:
                raise NotFoundError(f"Team member {assignee_id} not found", details={"assignee_id": assignee_id})
            return member
        return self.least_loaded(org_id)

    def least_loaded(self, org_id: str) -> Optional[TeamMember]:
        team = self.store.list_team(org_id)
        if not team:
            return None
        counts = self.store.open_assignment_counts(org_id)
        return min(team, key=lambda m: (counts.get(m.id, 0), m.name))
