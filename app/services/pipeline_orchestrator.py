"""Pipeline orchestrator: runs the generation chain for one submission."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import SubmissionNotFoundError, UpstreamError, ValidationError
from app.integrations.generation_service import GenerationServiceClient
from app.repositories.submission_repository import (
    SubmissionRecord,
    SubmissionStore,
    get_submission_store,
)
from app.services.status_merger import is_materialized, read_status_map, step_status
from app.services.steps.chain import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_NOT_REQUESTED,
    STATUS_PENDING,
    StepDefinition,
    StepInvoker,
    build_invocation,
    has_event_details,
    landing_page_requested,
    missing_event_fields,
    steps_from,
)
from app.services.submission_state import (
    WARNING_MISSING_EVENT_DETAILS,
    apply_step_result,
    new_submission_record,
    set_step_status,
)

logger = logging.getLogger(__name__)

SKIP_ALREADY_COMPLETED = "already_completed"
SKIP_NOT_REQUESTED = "not_requested"


@dataclass(slots=True)
class PipelineRunResult:
    """Summary of one orchestrator pass."""

    submission_id: str
    overall_status: str
    executed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    failed_step: str | None = None
    error: str | None = None


def optional_step_gate(step: StepDefinition, record: SubmissionRecord) -> str | None:
    """Reason an optional step cannot run, or None when it may.

    A step counts as requested when the submission asked for a landing page
    or when its status entry was moved off ``not_requested`` (e.g. by a later
    landing-page request or a regeneration).
    """
    if not step.is_optional:
        return None
    current = step_status(read_status_map(record.components), step.name)
    if not landing_page_requested(record.inputs) and current == STATUS_NOT_REQUESTED:
        return SKIP_NOT_REQUESTED
    if not has_event_details(record.inputs):
        return WARNING_MISSING_EVENT_DETAILS
    return None


def validate_submission_inputs(inputs: Mapping[str, Any]) -> None:
    """Reject requests that can never run; nothing is persisted on failure."""
    for key in ("targetMarket", "product"):
        value = inputs.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{key} is required", {"field": key})
    if landing_page_requested(inputs):
        missing = missing_event_fields(inputs)
        if missing:
            raise ValidationError(
                "Event details are required when generateLandingPage is set",
                {"missing_fields": missing},
            )


class PipelineOrchestrator:
    """Sequences the chain steps for a submission with fail-fast semantics.

    Every step outcome is persisted before the next step starts, so a crash
    between steps loses at most the in-flight call.
    """

    def __init__(
        self,
        *,
        store: SubmissionStore | None = None,
        invoker: StepInvoker | None = None,
    ) -> None:
        self.store = store or get_submission_store()
        self.invoker = invoker

    @asynccontextmanager
    async def _active_invoker(self) -> AsyncGenerator[StepInvoker, None]:
        """Yield the injected invoker or a short-lived generation client."""
        if self.invoker is not None:
            yield self.invoker
            return
        async with GenerationServiceClient() as client:
            yield client

    async def create_submission(
        self,
        inputs: Mapping[str, Any],
        *,
        user_id: str | None = None,
    ) -> SubmissionRecord:
        """Validate and persist a new submission with every step seeded."""
        validate_submission_inputs(inputs)
        normalized = dict(inputs)
        normalized.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        normalized["generateLandingPage"] = bool(normalized.get("generateLandingPage"))

        record = new_submission_record(
            normalized,
            user_id=user_id,
            title=f"Audience Architect: {normalized['product'].strip()}",
        )
        created = await self.store.create(record)
        logger.info(
            "Submission created",
            extra={
                "submission_id": created.id,
                "generate_landing_page": normalized["generateLandingPage"],
            },
        )
        return created

    async def request_landing_page(
        self,
        submission_id: str,
        event_inputs: Mapping[str, Any],
    ) -> SubmissionRecord:
        """Attach event details to an existing submission and re-open the optional steps.

        Inputs are only extended. The caller queues the resume from the first
        incomplete step, which is upstream of the funnel when the chain never
        finished.
        """
        def _apply(record: SubmissionRecord) -> None:
            record.inputs = {**record.inputs, **dict(event_inputs), "generateLandingPage": True}
            missing = missing_event_fields(record.inputs)
            if missing:
                raise ValidationError(
                    "Missing required event fields",
                    {"missing_fields": missing},
                )
            for step in steps_from():
                if step.is_optional:
                    set_step_status(record, step.name, STATUS_PENDING, warning=None)

        record = await self.store.update(submission_id, _apply)
        logger.info(
            "Landing page requested",
            extra={"submission_id": submission_id, "overall_status": record.status},
        )
        return record

    async def _load(self, submission_id: str) -> SubmissionRecord:
        record = await self.store.get(submission_id)
        if record is None:
            raise SubmissionNotFoundError(submission_id)
        return record

    async def run(
        self,
        submission_id: str,
        start_at_step: str | None = None,
    ) -> PipelineRunResult:
        """Run the chain from ``start_at_step`` (default: the first step)."""
        record = await self._load(submission_id)
        result = PipelineRunResult(submission_id=submission_id, overall_status=record.status)
        logger.info(
            "Pipeline run starting",
            extra={"submission_id": submission_id, "start_at_step": start_at_step},
        )

        async with self._active_invoker() as invoker:
            for step in steps_from(start_at_step):
                status_map = read_status_map(record.components)
                current = step_status(status_map, step.name)

                if current == STATUS_COMPLETED and is_materialized(record.components, step.name):
                    result.skipped[step.name] = SKIP_ALREADY_COMPLETED
                    continue

                gate = optional_step_gate(step, record)
                if gate is not None:
                    result.skipped[step.name] = gate
                    if gate == WARNING_MISSING_EVENT_DETAILS and current != STATUS_NOT_REQUESTED:
                        record = await self.store.update(
                            submission_id,
                            lambda r, name=step.name: set_step_status(
                                r,
                                name,
                                STATUS_NOT_REQUESTED,
                                warning=WARNING_MISSING_EVENT_DETAILS,
                            ),
                        )
                    continue

                if current != STATUS_PENDING:
                    record = await self.store.update(
                        submission_id,
                        lambda r, name=step.name: set_step_status(r, name, STATUS_PENDING),
                    )

                record, failed = await self._execute_step(invoker, step, record, result)
                if failed:
                    break

        result.overall_status = record.status
        logger.info(
            "Pipeline run finished",
            extra={
                "submission_id": submission_id,
                "overall_status": result.overall_status,
                "executed": result.executed,
                "failed_step": result.failed_step,
            },
        )
        return result

    async def run_step(
        self,
        submission_id: str,
        step: StepDefinition,
        *,
        context_override: Mapping[str, Any] | None = None,
    ) -> PipelineRunResult:
        """Invoke a single step with the freshest upstream payload.

        ``context_override`` replaces stored components when building the
        previous-step context (cascades carry the payload that triggered them).
        """
        record = await self._load(submission_id)
        result = PipelineRunResult(submission_id=submission_id, overall_status=record.status)
        async with self._active_invoker() as invoker:
            record, _ = await self._execute_step(
                invoker,
                step,
                record,
                result,
                context_override=context_override,
            )
        result.overall_status = record.status
        return result

    async def _execute_step(
        self,
        invoker: StepInvoker,
        step: StepDefinition,
        record: SubmissionRecord,
        result: PipelineRunResult,
        *,
        context_override: Mapping[str, Any] | None = None,
    ) -> tuple[SubmissionRecord, bool]:
        components = dict(record.components)
        if context_override:
            components.update(context_override)
        invocation = build_invocation(
            step,
            submission_id=record.id,
            inputs=record.inputs,
            components=components,
        )
        log_context = {"submission_id": record.id, "step": step.name}
        logger.info("Invoking generation step", extra=log_context)

        try:
            response = await invoker.invoke(invocation)
        except Exception as exc:
            if isinstance(exc, UpstreamError):
                logger.warning(
                    "Generation step failed",
                    extra={**log_context, "error": exc.message, "http_status": exc.http_status},
                )
            else:
                logger.exception("Generation step raised unexpectedly", extra=log_context)
            error_details = {
                "error": str(exc),
                "error_type": type(exc).__name__,
                "step": step.name,
            }
            record = await self.store.update(
                record.id,
                lambda r: apply_step_result(
                    r,
                    step.name,
                    status=STATUS_FAILED,
                    raw_payload=error_details,
                ),
            )
            result.failed_step = step.name
            result.error = str(exc)
            return record, True

        record = await self.store.update(
            record.id,
            lambda r: apply_step_result(
                r,
                step.name,
                status=response.status,
                raw_payload=response.payload,
            ),
        )
        result.executed.append(step.name)
        if response.status == STATUS_FAILED:
            logger.warning("Generation step reported failure", extra=log_context)
            result.failed_step = step.name
            return record, True
        return record, False
