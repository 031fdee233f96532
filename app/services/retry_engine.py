"""Resume a submission from its first incomplete step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.repositories.submission_repository import (
    SubmissionRecord,
    SubmissionStore,
    get_submission_store,
)
from app.services.pipeline_orchestrator import (
    PipelineOrchestrator,
    PipelineRunResult,
    optional_step_gate,
)
from app.services.status_merger import is_materialized, read_status_map, step_status
from app.services.steps.chain import (
    CHAIN,
    STATUS_COMPLETED,
    STATUS_NOT_REQUESTED,
    has_event_details,
)
from app.services.submission_state import (
    WARNING_MISSING_EVENT_DETAILS,
    reset_failed_steps,
    set_step_status,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPlan:
    submission_id: str
    reset_steps: list[str] = field(default_factory=list)
    start_at_step: str | None = None
    explanations: dict[str, str] = field(default_factory=dict)
    component_status: dict[str, str] = field(default_factory=dict)
    overall_status: str = "pending"
    run: PipelineRunResult | None = None


def first_incomplete_step(record: SubmissionRecord) -> str | None:
    """First step that still needs work and is allowed to run."""
    status_map = read_status_map(record.components)
    for step in CHAIN:
        if step_status(status_map, step.name) == STATUS_COMPLETED and is_materialized(
            record.components, step.name
        ):
            continue
        if optional_step_gate(step, record) is not None:
            continue
        return step.name
    return None


class RetryEngine:
    """Rewrites ``failed`` steps to ``pending`` and resumes the orchestrator."""

    def __init__(
        self,
        *,
        store: SubmissionStore | None = None,
        orchestrator: PipelineOrchestrator | None = None,
    ) -> None:
        self.store = store or get_submission_store()
        self.orchestrator = orchestrator or PipelineOrchestrator(store=self.store)

    async def prepare(self, submission_id: str) -> RetryPlan:
        """Reset failed steps and compute where the resume starts.

        Completed and not_requested entries are left as they are.
        """
        plan = RetryPlan(submission_id=submission_id)

        def _reset(record: SubmissionRecord) -> None:
            plan.reset_steps = reset_failed_steps(record)
            status_map = read_status_map(record.components)
            for step in CHAIN:
                if (
                    optional_step_gate(step, record) == WARNING_MISSING_EVENT_DETAILS
                    and step_status(status_map, step.name) != STATUS_NOT_REQUESTED
                ):
                    set_step_status(
                        record,
                        step.name,
                        STATUS_NOT_REQUESTED,
                        warning=WARNING_MISSING_EVENT_DETAILS,
                    )

        record = await self.store.update(submission_id, _reset)

        for step in CHAIN:
            if step.is_optional and not has_event_details(record.inputs):
                plan.explanations[step.name] = WARNING_MISSING_EVENT_DETAILS
        plan.start_at_step = first_incomplete_step(record)
        plan.component_status = dict(read_status_map(record.components))
        plan.overall_status = record.status

        logger.info(
            "Retry prepared",
            extra={
                "submission_id": submission_id,
                "reset_steps": plan.reset_steps,
                "start_at_step": plan.start_at_step,
            },
        )
        return plan

    async def resume(self, plan: RetryPlan) -> RetryPlan:
        if plan.start_at_step is None:
            logger.info("Nothing to resume", extra={"submission_id": plan.submission_id})
            return plan
        plan.run = await self.orchestrator.run(plan.submission_id, start_at_step=plan.start_at_step)
        plan.overall_status = plan.run.overall_status
        record = await self.store.get(plan.submission_id)
        if record is not None:
            plan.component_status = dict(read_status_map(record.components))
        return plan

    async def retry(self, submission_id: str) -> RetryPlan:
        """Reset then resume inline."""
        return await self.resume(await self.prepare(submission_id))
