"""Pure merge rules for per-step status maps and component payloads.

Every writer (orchestrator, callback ingestor, retry, regeneration) goes
through these functions, so the overall submission status is derived in one
place only.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, cast

from app.core.exceptions import ValidationError
from app.services.steps.chain import (
    COMPONENT_STATUS_KEY,
    COMPONENT_WARNINGS_KEY,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_NOT_REQUESTED,
    STATUS_PENDING,
    STEP_STATUSES,
    OverallStatus,
    StepStatus,
)

UNSET: Any = object()


@dataclass(frozen=True, slots=True)
class StatusMergeResult:
    status_map: Mapping[str, StepStatus]
    overall_status: OverallStatus


def read_status_map(components: Mapping[str, Any] | None) -> dict[str, StepStatus]:
    """Extract ``componentStatus`` from stored components, dropping unknown values."""
    if not isinstance(components, Mapping):
        return {}
    raw = components.get(COMPONENT_STATUS_KEY)
    if not isinstance(raw, Mapping):
        return {}
    return {
        str(key): cast(StepStatus, value)
        for key, value in raw.items()
        if isinstance(value, str) and value in STEP_STATUSES
    }


def step_status(status_map: Mapping[str, str], step_name: str) -> StepStatus:
    """Status of one step; absent entries read as ``not_requested``."""
    value = status_map.get(step_name)
    if isinstance(value, str) and value in STEP_STATUSES:
        return cast(StepStatus, value)
    return STATUS_NOT_REQUESTED


def derive_overall_status(statuses: Mapping[str, str] | Iterable[str]) -> OverallStatus:
    """failed if any step failed, else pending if any is pending, else completed."""
    values = list(statuses.values()) if isinstance(statuses, Mapping) else list(statuses)
    if STATUS_FAILED in values:
        return STATUS_FAILED
    if STATUS_PENDING in values:
        return STATUS_PENDING
    return STATUS_COMPLETED


def merge_status(
    existing: Mapping[str, str],
    step_name: str,
    new_status: str,
) -> StatusMergeResult:
    """Overwrite one step's status and re-derive the overall status."""
    if new_status not in STEP_STATUSES:
        raise ValidationError(f"Invalid step status: {new_status}", {"status": new_status})
    merged: dict[str, StepStatus] = {
        key: cast(StepStatus, value) for key, value in existing.items()
    }
    merged[step_name] = cast(StepStatus, new_status)
    return StatusMergeResult(
        status_map=MappingProxyType(merged),
        overall_status=derive_overall_status(merged),
    )


def merge_components(
    components: Mapping[str, Any] | None,
    step_name: str,
    *,
    status: str,
    payload: Any = UNSET,
    warning: str | None | Any = UNSET,
) -> tuple[dict[str, Any], OverallStatus]:
    """Return new components with one step's payload/status replaced.

    Other steps' payloads are carried over untouched. ``warning=None`` clears a
    previous warning for the step; leaving it unset keeps whatever was stored.
    """
    merged: dict[str, Any] = dict(components or {})
    result = merge_status(read_status_map(merged), step_name, status)
    if payload is not UNSET:
        merged[step_name] = payload
    merged[COMPONENT_STATUS_KEY] = dict(result.status_map)

    if warning is not UNSET:
        warnings = dict(merged.get(COMPONENT_WARNINGS_KEY) or {})
        if warning is None:
            warnings.pop(step_name, None)
        else:
            warnings[step_name] = warning
        if warnings:
            merged[COMPONENT_WARNINGS_KEY] = warnings
        else:
            merged.pop(COMPONENT_WARNINGS_KEY, None)

    return merged, result.overall_status


def reset_failed_steps(status_map: Mapping[str, str]) -> dict[str, StepStatus]:
    """``failed -> pending``; every other entry is kept as is."""
    return {
        key: STATUS_PENDING if value == STATUS_FAILED else cast(StepStatus, value)
        for key, value in status_map.items()
    }


def is_materialized(components: Mapping[str, Any], step_name: str) -> bool:
    """Whether the step's payload is stored."""
    value = components.get(step_name)
    if isinstance(value, (dict, list, str)):
        return bool(value)
    return value is not None


def has_pending_steps(components: Mapping[str, Any] | None) -> bool:
    return STATUS_PENDING in read_status_map(components).values()
