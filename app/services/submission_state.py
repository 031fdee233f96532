"""Record-level transitions shared by every writer of a submission.

Each helper edits a ``SubmissionRecord`` in place and is meant to be used as
(or inside) a mutator passed to ``SubmissionStore.update`` so the merge runs
against the freshest stored state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.core.exceptions import AmbiguousPayloadError
from app.repositories.submission_repository import SubmissionRecord, utc_now
from app.services.payload_normalizer import normalize_payload
from app.services.status_merger import (
    UNSET,
    derive_overall_status,
    merge_components,
    read_status_map,
)
from app.services.steps.chain import (
    COMPONENT_STATUS_KEY,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    OverallStatus,
    get_step,
    initial_status_map,
)

logger = logging.getLogger(__name__)

WARNING_AMBIGUOUS_PAYLOAD = "ambiguous_payload"
WARNING_MISSING_EVENT_DETAILS = "missing_event_details"


@dataclass(slots=True)
class StepWrite:
    """What a single step write changed."""

    step: str
    status: str
    overall_status: OverallStatus
    ambiguous: bool = False


def _to_json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def new_submission_record(
    inputs: Mapping[str, Any],
    *,
    user_id: str | None = None,
    kind: str = "icp",
    title: str | None = None,
) -> SubmissionRecord:
    """Fresh record with every step seeded pending or not_requested."""
    status_map = initial_status_map(inputs)
    return SubmissionRecord(
        id="",
        user_id=user_id,
        kind=kind,
        title=title,
        inputs=dict(inputs),
        components={COMPONENT_STATUS_KEY: dict(status_map)},
        status=derive_overall_status(status_map),
    )


def _sync_overall(record: SubmissionRecord, overall: OverallStatus) -> None:
    record.status = overall
    if overall == STATUS_COMPLETED:
        record.completed_at = record.completed_at or utc_now()
    else:
        record.completed_at = None


def apply_step_result(
    record: SubmissionRecord,
    step_name: str,
    *,
    status: str,
    raw_payload: Any,
) -> StepWrite:
    """Store one step's outcome.

    Completed payloads are normalized first. A payload without any marker
    field is still stored as completed, but flagged under
    ``componentWarnings`` so the UI can tell it apart from a clean result.
    Failed outcomes keep the step's previous payload and record the raw
    response on ``webhook_response``.
    """
    get_step(step_name)

    if status == STATUS_FAILED:
        components, overall = merge_components(record.components, step_name, status=STATUS_FAILED)
        record.components = components
        if raw_payload is not None:
            record.webhook_response = _to_json_text(raw_payload)
        _sync_overall(record, overall)
        return StepWrite(step=step_name, status=STATUS_FAILED, overall_status=overall)

    ambiguous = False
    try:
        payload = normalize_payload(step_name, raw_payload)
    except AmbiguousPayloadError as exc:
        ambiguous = True
        payload = exc.payload
        logger.warning(
            "Storing step payload without expected markers",
            extra={"submission_id": record.id, "step": step_name, **exc.details},
        )

    components, overall = merge_components(
        record.components,
        step_name,
        status=STATUS_COMPLETED,
        payload=payload,
        warning=WARNING_AMBIGUOUS_PAYLOAD if ambiguous else None,
    )
    record.components = components
    record.output = _to_json_text(payload)
    _sync_overall(record, overall)
    return StepWrite(
        step=step_name,
        status=STATUS_COMPLETED,
        overall_status=overall,
        ambiguous=ambiguous,
    )


def set_step_status(
    record: SubmissionRecord,
    step_name: str,
    status: str,
    *,
    warning: str | None | Any = UNSET,
) -> OverallStatus:
    """Change one step's status without touching its payload.

    Pass ``warning`` to set (or, with None, clear) the step's warning.
    """
    components, overall = merge_components(
        record.components,
        step_name,
        status=status,
        warning=warning,
    )
    record.components = components
    _sync_overall(record, overall)
    return overall


def set_step_statuses(record: SubmissionRecord, updates: Mapping[str, str]) -> OverallStatus:
    overall = derive_overall_status(read_status_map(record.components))
    for step_name, status in updates.items():
        overall = set_step_status(record, step_name, status)
    _sync_overall(record, overall)
    return overall


def reset_failed_steps(record: SubmissionRecord) -> list[str]:
    """Flip every failed step back to pending; returns the steps it touched."""
    reset = [
        step_name
        for step_name, status in read_status_map(record.components).items()
        if status == STATUS_FAILED
    ]
    set_step_statuses(record, {step_name: STATUS_PENDING for step_name in reset})
    return reset


def mark_pending_steps_failed(
    record: SubmissionRecord,
    *,
    reason: str,
    details: Mapping[str, Any] | None = None,
) -> list[str]:
    """Terminal shortcut: every pending step becomes failed.

    Used when a submission can no longer progress (stale sweep, enqueue
    failures). The submission's overall status ends up ``failed``.
    """
    pending = [
        step_name
        for step_name, status in read_status_map(record.components).items()
        if status == STATUS_PENDING
    ]
    set_step_statuses(record, {step_name: STATUS_FAILED for step_name in pending})
    record.status = STATUS_FAILED
    record.completed_at = None
    record.webhook_response = _to_json_text({"error": reason, **dict(details or {})})
    return pending


def repair_completed_steps(record: SubmissionRecord) -> list[str]:
    """Mark steps that hold a payload but still read pending as completed."""
    repaired = [
        step_name
        for step_name, status in read_status_map(record.components).items()
        if status == STATUS_PENDING and record.components.get(step_name)
    ]
    set_step_statuses(record, {step_name: STATUS_COMPLETED for step_name in repaired})
    return repaired
