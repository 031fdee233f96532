"""Operational checks and repairs for stuck submissions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from app.config import settings
from app.core.exceptions import SubmissionNotFoundError
from app.repositories.submission_repository import (
    SubmissionRecord,
    SubmissionStore,
    get_submission_store,
    utc_now,
)
from app.services.payload_normalizer import has_markers
from app.services.status_merger import read_status_map
from app.services.steps.chain import (
    CHAIN,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STEP_NAMES,
)
from app.services.submission_state import (
    mark_pending_steps_failed,
    repair_completed_steps,
    set_step_status,
)

logger = logging.getLogger(__name__)

STALE_REASON = "stale_submission"


def recommendation_for(counts: dict[str, int]) -> str:
    if counts[STATUS_PENDING] > 0 and counts[STATUS_COMPLETED] == 0:
        return "All components are pending. Try using the retry endpoint."
    if counts[STATUS_PENDING] > 0:
        return "Some components completed, others pending. Use retry to complete remaining."
    if counts[STATUS_FAILED] > 0:
        return "Some components failed. Use retry to reprocess failed components."
    return "All components completed successfully!"


def build_status_report(record: SubmissionRecord) -> dict[str, Any]:
    """Counts per status, which steps hold data, and what to do next."""
    status_map = read_status_map(record.components)
    counts = {STATUS_PENDING: 0, STATUS_COMPLETED: 0, STATUS_FAILED: 0}
    for status in status_map.values():
        if status in counts:
            counts[status] += 1
    return {
        "submissionId": record.id,
        "overallStatus": record.status,
        "componentStatus": status_map,
        "statusCounts": counts,
        "hasData": {name: bool(record.components.get(name)) for name in STEP_NAMES},
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
        "recommendation": recommendation_for(counts),
    }


def detect_step_for_output(output: Any) -> str | None:
    """Guess which step a legacy ``output`` blob belongs to from its markers.

    Later steps are checked first since their markers are more specific.
    """
    for step in reversed(CHAIN):
        if has_markers(output, step.marker_fields):
            return step.name
    return None


@dataclass(slots=True)
class StaleSweepResult:
    checked: int = 0
    updated: int = 0
    submissions: list[dict[str, Any]] = field(default_factory=list)


class SubmissionDiagnostics:
    """Status report, stale sweep and status repair."""

    def __init__(self, *, store: SubmissionStore | None = None) -> None:
        self.store = store or get_submission_store()

    async def status_report(self, submission_id: str) -> dict[str, Any]:
        record = await self.store.get(submission_id)
        if record is None:
            raise SubmissionNotFoundError(submission_id)
        return build_status_report(record)

    async def sweep_stale(
        self,
        *,
        now: datetime | None = None,
        threshold_minutes: int | None = None,
    ) -> StaleSweepResult:
        """Fail submissions that stayed pending longer than the threshold."""
        now = now or utc_now()
        minutes = threshold_minutes if threshold_minutes is not None else settings.stale_submission_minutes
        cutoff = now - timedelta(minutes=minutes)
        stale = await self.store.list_pending_before(cutoff)
        result = StaleSweepResult(checked=len(stale))

        for candidate in stale:
            def _fail(record: SubmissionRecord) -> None:
                if record.status != STATUS_PENDING:
                    return
                mark_pending_steps_failed(
                    record,
                    reason=STALE_REASON,
                    details={"threshold_minutes": minutes},
                )

            updated = await self.store.update(candidate.id, _fail)
            if updated.status != STATUS_FAILED:
                continue
            created_at = candidate.created_at or now
            result.updated += 1
            result.submissions.append(
                {
                    "id": candidate.id,
                    "age": int((now - created_at).total_seconds() // 60),
                    "action": "marked_as_failed",
                }
            )

        logger.info(
            "Stale submission sweep finished",
            extra={"checked": result.checked, "updated": result.updated, "threshold_minutes": minutes},
        )
        return result

    async def fix_status(self, submission_id: str) -> dict[str, Any]:
        """Promote steps that hold data but still read pending.

        A legacy ``output`` blob is migrated into the step it matches when
        that step has no payload yet.
        """
        updates: list[str] = []

        def _repair(record: SubmissionRecord) -> None:
            for step_name in repair_completed_steps(record):
                updates.append(f"{step_name}: pending -> completed")

            if not record.output:
                return
            try:
                output_data = json.loads(record.output)
            except ValueError:
                logger.warning(
                    "Could not parse output field as JSON",
                    extra={"submission_id": record.id},
                )
                return
            step_name = detect_step_for_output(output_data)
            if step_name and not record.components.get(step_name):
                record.components = {**record.components, step_name: output_data}
                set_step_status(record, step_name, STATUS_COMPLETED)
                updates.append(f"Migrated output data to {step_name}")

        record = await self.store.update(submission_id, _repair)
        logger.info(
            "Submission status repaired",
            extra={"submission_id": submission_id, "updates": updates, "overall_status": record.status},
        )
        return {
            "success": True,
            "submissionId": submission_id,
            "updates": updates,
            "componentStatus": read_status_map(record.components),
            "overallStatus": record.status,
        }
