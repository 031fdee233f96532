"""On-demand regeneration of a single chain step."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from redis.exceptions import RedisError

from app.config import settings
from app.core.exceptions import SubmissionNotFoundError, ValidationError
from app.repositories.submission_repository import (
    SubmissionRecord,
    SubmissionStore,
    get_submission_store,
)
from app.services.pipeline_orchestrator import PipelineOrchestrator
from app.services.status_merger import is_materialized, read_status_map, step_status
from app.services.steps.chain import (
    STATUS_COMPLETED,
    STATUS_NOT_REQUESTED,
    STATUS_PENDING,
    StepDefinition,
    direct_dependents,
    get_step,
    has_event_details,
    missing_event_fields,
)
from app.services.submission_state import set_step_status

logger = logging.getLogger(__name__)


class CascadeScheduler(Protocol):
    async def schedule_cascade(
        self,
        *,
        submission_id: str,
        step: str,
        context: Mapping[str, Any],
        delay_seconds: float,
    ) -> str: ...

    async def cancel_scheduled(self, *, submission_id: str, step: str) -> bool: ...


@dataclass(slots=True)
class RegenerationResult:
    submission_id: str
    step: str
    status: str
    overall_status: str
    error: str | None = None
    cascaded_step: str | None = None
    cascade_job_id: str | None = None
    cascade_error: str | None = None

    @property
    def upstream_failed(self) -> bool:
        return self.error is not None


def dependent_is_materialized(record: SubmissionRecord, dependent: StepDefinition) -> bool:
    """A dependent is worth refreshing when it holds data or was ever requested."""
    if is_materialized(record.components, dependent.name):
        return True
    return step_status(read_status_map(record.components), dependent.name) != STATUS_NOT_REQUESTED


class RegenerationService:
    """Re-runs one step and refreshes its direct dependents one hop downstream."""

    def __init__(
        self,
        *,
        store: SubmissionStore | None = None,
        orchestrator: PipelineOrchestrator | None = None,
        scheduler: CascadeScheduler | None = None,
        cascade_delay_seconds: float | None = None,
    ) -> None:
        self.store = store or get_submission_store()
        self.orchestrator = orchestrator or PipelineOrchestrator(store=self.store)
        self._scheduler = scheduler
        self.cascade_delay_seconds = (
            cascade_delay_seconds
            if cascade_delay_seconds is not None
            else settings.regeneration_cascade_delay_seconds
        )

    @property
    def scheduler(self) -> CascadeScheduler:
        if self._scheduler is None:
            # Local import avoids a circular dependency at module import time.
            from app.services.pipeline_task_manager import get_pipeline_task_manager

            self._scheduler = get_pipeline_task_manager()
        return self._scheduler

    async def regenerate(
        self,
        submission_id: str,
        step_name: str,
        *,
        cascade: bool = True,
        context_override: Mapping[str, Any] | None = None,
    ) -> RegenerationResult:
        """Regenerate ``step_name`` for a submission.

        Cascade jobs call this with ``cascade=False`` and the payload that
        triggered them as ``context_override``, so a cascade never fans out
        beyond one hop.
        """
        step = get_step(step_name)
        record = await self.store.get(submission_id)
        if record is None:
            raise SubmissionNotFoundError(submission_id)
        if step.is_optional and not has_event_details(record.inputs):
            raise ValidationError(
                f"{step.name} needs event details before it can be generated",
                {"step": step.name, "missing_fields": missing_event_fields(record.inputs)},
            )

        if cascade:
            # A direct request supersedes a cascade still waiting for this step.
            await self._cancel_waiting_cascade(submission_id, step.name)

        await self.store.update(
            submission_id,
            lambda r: set_step_status(r, step.name, STATUS_PENDING),
        )
        logger.info(
            "Regenerating step",
            extra={"submission_id": submission_id, "step": step.name, "cascade": cascade},
        )

        run = await self.orchestrator.run_step(
            submission_id,
            step,
            context_override=context_override,
        )
        record = await self.store.get(submission_id) or record
        status = step_status(read_status_map(record.components), step.name)
        result = RegenerationResult(
            submission_id=submission_id,
            step=step.name,
            status=status,
            overall_status=run.overall_status,
            error=run.error,
        )

        if cascade and status == STATUS_COMPLETED:
            await self._cascade(record, step, result)
        return result

    async def _cancel_waiting_cascade(self, submission_id: str, step_name: str) -> None:
        try:
            cancelled = await self.scheduler.cancel_scheduled(
                submission_id=submission_id,
                step=step_name,
            )
        except (RedisError, OSError) as e:
            logger.warning(
                "Could not cancel waiting cascade",
                extra={"submission_id": submission_id, "step": step_name, "error": str(e)},
            )
            return
        if cancelled:
            logger.info(
                "Waiting cascade superseded by direct regeneration",
                extra={"submission_id": submission_id, "step": step_name},
            )

    async def _cascade(
        self,
        record: SubmissionRecord,
        step: StepDefinition,
        result: RegenerationResult,
    ) -> None:
        status_map = read_status_map(record.components)
        for dependent in direct_dependents(step.name):
            if not dependent_is_materialized(record, dependent):
                continue
            if dependent.is_optional and not has_event_details(record.inputs):
                continue

            previous_status = step_status(status_map, dependent.name)
            updated = await self.store.update(
                record.id,
                lambda r, name=dependent.name: set_step_status(r, name, STATUS_PENDING),
            )
            try:
                job_id = await self.scheduler.schedule_cascade(
                    submission_id=record.id,
                    step=dependent.name,
                    context={step.name: record.components.get(step.name)},
                    delay_seconds=self.cascade_delay_seconds,
                )
            except (RedisError, OSError) as e:
                # Nothing will pick the dependent up; put its status back.
                restored = await self.store.update(
                    record.id,
                    lambda r, name=dependent.name, status=previous_status: set_step_status(
                        r, name, status
                    ),
                )
                result.cascade_error = f"could not schedule {dependent.name}: {e}"
                result.overall_status = restored.status
                logger.error(
                    "Cascade scheduling failed",
                    extra={
                        "submission_id": record.id,
                        "step": step.name,
                        "dependent": dependent.name,
                        "restored_status": previous_status,
                        "error": str(e),
                    },
                )
                continue

            result.cascaded_step = dependent.name
            result.cascade_job_id = job_id
            result.overall_status = updated.status
            logger.info(
                "Cascade scheduled",
                extra={
                    "submission_id": record.id,
                    "step": step.name,
                    "dependent": dependent.name,
                    "job_id": job_id,
                    "delay_seconds": self.cascade_delay_seconds,
                },
            )
