"""Submission API endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from app.api.v1.submissions.constants import (
    LANDING_PAGE_QUEUED_MESSAGE,
    QUEUE_FULL_REASON,
    RETRY_NOTHING_TO_DO_MESSAGE,
    RETRY_STARTED_MESSAGE,
    SUBMISSION_CREATED_MESSAGE,
    SUBMISSION_NOT_FOUND_DETAIL,
    SUBMISSION_QUEUE_FULL_DETAIL,
)
from app.core.exceptions import (
    SubmissionNotFoundError,
    SubmissionQueueFullError,
    ValidationError,
)
from app.dependencies import Diagnostics, Orchestrator, Regeneration, Retry, Store, TaskManager
from app.repositories.submission_repository import SubmissionRecord
from app.schemas.submission import (
    FixStatusResponse,
    LandingPageRequest,
    RegenerateRequest,
    RegenerateResponse,
    RetryResponse,
    StaleSweepResponse,
    SubmissionCreateRequest,
    SubmissionCreateResponse,
    SubmissionIdRequest,
    SubmissionResponse,
    SubmissionStatusReport,
)
from app.services.retry_engine import first_incomplete_step
from app.services.steps.chain import CHAIN
from app.services.submission_state import mark_pending_steps_failed

logger = logging.getLogger(__name__)

router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=SUBMISSION_NOT_FOUND_DETAIL)


def _bad_request(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _queue_full() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=SUBMISSION_QUEUE_FULL_DETAIL,
    )


def _to_response(record: SubmissionRecord) -> SubmissionResponse:
    return SubmissionResponse(
        id=record.id,
        userId=record.user_id,
        kind=record.kind,
        title=record.title,
        inputs=record.inputs,
        output=record.output,
        components=record.components,
        webhookResponse=record.webhook_response,
        status=record.status,
        createdAt=record.created_at,
        updatedAt=record.updated_at,
        completedAt=record.completed_at,
    )


@router.post(
    "/submissions",
    response_model=SubmissionCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create submission",
    description="Persist a submission with every step seeded and queue the generation chain.",
)
async def create_submission(
    request: SubmissionCreateRequest,
    store: Store,
    orchestrator: Orchestrator,
    task_manager: TaskManager,
) -> SubmissionCreateResponse:
    """Create a submission and queue its chain in the background."""
    try:
        record = await orchestrator.create_submission(request.to_inputs(), user_id=request.user_id)
    except ValidationError as e:
        raise _bad_request(e) from e

    try:
        await task_manager.enqueue_start(submission_id=record.id)
    except SubmissionQueueFullError as e:
        logger.warning("Submission queue full", extra={"submission_id": record.id})
        await store.update(
            record.id,
            lambda r: mark_pending_steps_failed(r, reason=QUEUE_FULL_REASON),
        )
        raise _queue_full() from e

    return SubmissionCreateResponse(id=record.id, message=SUBMISSION_CREATED_MESSAGE)


@router.get(
    "/submissions/{submission_id}",
    response_model=SubmissionResponse,
    summary="Get submission",
)
async def get_submission(submission_id: str, store: Store) -> SubmissionResponse:
    """Full record including ``components.componentStatus``."""
    record = await store.get(submission_id)
    if record is None:
        raise _not_found()
    return _to_response(record)


@router.get(
    "/results/{submission_id}",
    response_model=SubmissionResponse,
    summary="Get submission results",
)
async def get_results(submission_id: str, store: Store) -> SubmissionResponse:
    return await get_submission(submission_id, store)


@router.get(
    "/submissions/{submission_id}/status",
    response_model=SubmissionStatusReport,
    summary="Check submission status",
    description="Per-status counts, which steps hold data, and a suggested next action.",
)
async def check_submission_status(submission_id: str, diagnostics: Diagnostics) -> dict[str, Any]:
    try:
        return await diagnostics.status_report(submission_id)
    except SubmissionNotFoundError as e:
        raise _not_found() from e


@router.post(
    "/submissions/retry",
    response_model=RetryResponse,
    summary="Retry failed steps",
    description=(
        "Reset failed steps to pending and resume the chain in the background from the "
        "first incomplete step."
    ),
)
async def retry_submission(
    request: SubmissionIdRequest,
    retry_engine: Retry,
    task_manager: TaskManager,
) -> RetryResponse:
    try:
        plan = await retry_engine.prepare(request.submission_id)
    except SubmissionNotFoundError as e:
        raise _not_found() from e

    message = RETRY_NOTHING_TO_DO_MESSAGE
    if plan.start_at_step is not None:
        try:
            await task_manager.enqueue_resume(
                submission_id=plan.submission_id,
                start_at_step=plan.start_at_step,
            )
        except SubmissionQueueFullError as e:
            raise _queue_full() from e
        message = RETRY_STARTED_MESSAGE

    return RetryResponse(
        message=message,
        submissionId=plan.submission_id,
        componentStatus=plan.component_status,  # type: ignore[arg-type]
        startAtStep=plan.start_at_step,
        explanations=plan.explanations,
    )


@router.post(
    "/regenerate-component",
    response_model=RegenerateResponse,
    summary="Regenerate one component",
    description=(
        "Re-run one step with the freshest upstream payload. A materialized direct "
        "dependent is refreshed shortly after by a delayed cascade job."
    ),
    responses={
        502: {"description": "Generation service failed"},
        503: {"description": "Dependent refresh could not be scheduled"},
    },
)
async def regenerate_component(
    request: RegenerateRequest,
    regeneration: Regeneration,
) -> Any:
    try:
        result = await regeneration.regenerate(request.submission_id, request.component)
    except ValidationError as e:
        raise _bad_request(e) from e
    except SubmissionNotFoundError as e:
        raise _not_found() from e

    if result.upstream_failed:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": f"Failed to regenerate {result.step}: {result.error}"},
        )
    if result.cascade_error is not None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": f"Regenerated {result.step} but its dependent was not refreshed: "
                f"{result.cascade_error}",
                "status": result.status,
                "overallStatus": result.overall_status,
            },
        )
    return RegenerateResponse(
        success=True,
        status=result.status,
        component=result.step,
        overallStatus=result.overall_status,
        cascadedComponent=result.cascaded_step,
    )


@router.post(
    "/submissions/{submission_id}/landing-page",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request landing page",
    description="Attach event details to a submission and queue the funnel and landing-page steps.",
)
async def request_landing_page(
    submission_id: str,
    request: LandingPageRequest,
    orchestrator: Orchestrator,
    task_manager: TaskManager,
) -> RetryResponse:
    try:
        record = await orchestrator.request_landing_page(submission_id, request.to_inputs())
    except SubmissionNotFoundError as e:
        raise _not_found() from e
    except ValidationError as e:
        raise _bad_request(e) from e

    # Upstream steps that never completed run first so the funnel has their output.
    start_at = first_incomplete_step(record) or next(
        step.name for step in CHAIN if step.is_optional
    )
    try:
        await task_manager.enqueue_resume(submission_id=record.id, start_at_step=start_at)
    except SubmissionQueueFullError as e:
        raise _queue_full() from e

    return RetryResponse(
        message=LANDING_PAGE_QUEUED_MESSAGE,
        submissionId=record.id,
        componentStatus=record.components.get("componentStatus", {}),
        startAtStep=start_at,
    )


@router.post(
    "/submissions/check-stale",
    response_model=StaleSweepResponse,
    summary="Fail stale submissions",
    description="Mark submissions pending longer than the configured threshold as failed.",
)
async def check_stale_submissions(diagnostics: Diagnostics) -> StaleSweepResponse:
    result = await diagnostics.sweep_stale()
    return StaleSweepResponse(
        checked=result.checked,
        updated=result.updated,
        submissions=result.submissions,  # type: ignore[arg-type]
    )


@router.post(
    "/submissions/{submission_id}/fix-status",
    response_model=FixStatusResponse,
    summary="Repair step statuses",
    description="Promote steps that hold data but are still pending to completed.",
)
async def fix_submission_status(submission_id: str, diagnostics: Diagnostics) -> dict[str, Any]:
    try:
        return await diagnostics.fix_status(submission_id)
    except SubmissionNotFoundError as e:
        raise _not_found() from e
