"""Ingest step results pushed back by the generation service."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from app.core.exceptions import StepNotFoundError, ValidationError
from app.repositories.submission_repository import (
    SubmissionRecord,
    SubmissionStore,
    get_submission_store,
)
from app.services.steps.chain import STATUS_COMPLETED, STATUS_FAILED, STEP_NAMES, is_known_step
from app.services.submission_state import StepWrite, apply_step_result

logger = logging.getLogger(__name__)

CALLBACK_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


@dataclass(slots=True)
class CallbackRequest:
    submission_id: str | None
    step: str | None
    payload: Any
    status: str | None = None
    timestamp: str | None = None


@dataclass(slots=True)
class CallbackAck:
    submission_id: str
    step: str
    component_status: str
    overall_status: str
    ambiguous: bool = False
    ok: bool = True

    def to_response(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "submissionId": self.submission_id,
            "step": self.step,
            "componentStatus": self.component_status,
            "overallStatus": self.overall_status,
        }


def validate_callback(request: CallbackRequest) -> tuple[str, str, str]:
    """Return ``(submission_id, step, status)`` or raise before anything is written."""
    if not request.submission_id or not request.step or not request.payload:
        raise ValidationError("Missing required fields: submissionId, step, payload")
    if not is_known_step(request.step):
        raise StepNotFoundError(request.step, list(STEP_NAMES))
    status = request.status or STATUS_COMPLETED
    if status not in CALLBACK_STATUSES:
        raise ValidationError(f"Invalid status: {status}", {"status": status})
    return request.submission_id, request.step, status


class CallbackIngestor:
    """Merges one pushed step result into the stored submission.

    Repeating a callback overwrites the same key with the same value, so
    duplicates and out-of-order deliveries converge. Callbacks never drive
    the next step.
    """

    def __init__(self, *, store: SubmissionStore | None = None) -> None:
        self.store = store or get_submission_store()

    async def ingest(self, request: CallbackRequest) -> CallbackAck:
        submission_id, step_name, status = validate_callback(request)
        logger.info(
            "Step callback received",
            extra={
                "submission_id": submission_id,
                "step": step_name,
                "status": status,
                "timestamp": request.timestamp,
            },
        )

        outcome: dict[str, StepWrite] = {}

        def _merge(record: SubmissionRecord) -> None:
            outcome["write"] = apply_step_result(
                record,
                step_name,
                status=status,
                raw_payload=request.payload,
            )
            record.output = json.dumps(request.payload, ensure_ascii=False, indent=2, default=str)

        await self.store.update(submission_id, _merge)
        write = outcome["write"]
        logger.info(
            "Submission updated from callback",
            extra={
                "submission_id": submission_id,
                "step": step_name,
                "component_status": write.status,
                "overall_status": write.overall_status,
                "ambiguous": write.ambiguous,
            },
        )
        return CallbackAck(
            submission_id=submission_id,
            step=step_name,
            component_status=write.status,
            overall_status=write.overall_status,
            ambiguous=write.ambiguous,
        )
