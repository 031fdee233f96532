"""Unit tests for submission status reports and repairs."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from app.core.exceptions import SubmissionNotFoundError
from app.repositories.submission_repository import InMemorySubmissionStore, SubmissionRecord, utc_now
from app.services.submission_diagnostics import (
    SubmissionDiagnostics,
    build_status_report,
    detect_step_for_output,
)


def _record(submission_id: str = "sub-1", **statuses: str) -> SubmissionRecord:
    return SubmissionRecord(id=submission_id, components={"componentStatus": dict(statuses)})


def test_status_report_counts_and_recommendation() -> None:
    record = _record(audienceArchitect="completed", contentCompass="pending", eventFunnel="not_requested")
    record.components["audienceArchitect"] = {"icp": "ops"}

    report = build_status_report(record)

    assert report["statusCounts"] == {"pending": 1, "completed": 1, "failed": 0}
    assert report["hasData"]["audienceArchitect"] is True
    assert report["hasData"]["contentCompass"] is False
    assert report["recommendation"].startswith("Some components completed")


def test_status_report_recommendations() -> None:
    assert build_status_report(_record(audienceArchitect="pending"))["recommendation"].startswith(
        "All components are pending"
    )
    assert "failed" in build_status_report(_record(audienceArchitect="failed"))["recommendation"]
    assert build_status_report(_record(audienceArchitect="completed"))["recommendation"] == (
        "All components completed successfully!"
    )


def test_detect_step_for_output_prefers_later_steps() -> None:
    assert detect_step_for_output({"hero": "x", "icp": "y"}) == "landingPage"
    assert detect_step_for_output({"topics": ["a"], "channels": ["b"]}) == "messageMultiplier"
    assert detect_step_for_output({"icp": "ops"}) == "audienceArchitect"
    assert detect_step_for_output({"unrelated": True}) is None


@pytest.mark.asyncio
async def test_status_report_for_unknown_submission() -> None:
    with pytest.raises(SubmissionNotFoundError):
        await SubmissionDiagnostics(store=InMemorySubmissionStore()).status_report("missing")


@pytest.mark.asyncio
async def test_sweep_stale_fails_only_old_pending_submissions() -> None:
    store = InMemorySubmissionStore()
    now = utc_now()
    old = _record("old", audienceArchitect="completed", contentCompass="pending")
    old.created_at = now - timedelta(minutes=25)
    fresh = _record("fresh", audienceArchitect="pending")
    fresh.created_at = now - timedelta(minutes=2)
    await store.create(old)
    await store.create(fresh)

    result = await SubmissionDiagnostics(store=store).sweep_stale(now=now, threshold_minutes=10)

    assert result.checked == 1
    assert result.updated == 1
    assert result.submissions == [{"id": "old", "age": 25, "action": "marked_as_failed"}]

    swept = await store.get("old")
    assert swept is not None
    assert swept.status == "failed"
    assert swept.components["componentStatus"] == {
        "audienceArchitect": "completed",
        "contentCompass": "failed",
    }
    assert json.loads(swept.webhook_response or "")["error"] == "stale_submission"
    untouched = await store.get("fresh")
    assert untouched is not None and untouched.status == "pending"


@pytest.mark.asyncio
async def test_fix_status_promotes_steps_with_data_and_migrates_output() -> None:
    store = InMemorySubmissionStore()
    record = _record(audienceArchitect="pending", contentCompass="pending")
    record.components["audienceArchitect"] = {"icp": "ops"}
    record.output = json.dumps({"channels": ["blog"], "pillars": ["growth"]})
    await store.create(record)

    report = await SubmissionDiagnostics(store=store).fix_status("sub-1")

    assert report["updates"] == [
        "audienceArchitect: pending -> completed",
        "Migrated output data to contentCompass",
    ]
    assert report["componentStatus"] == {
        "audienceArchitect": "completed",
        "contentCompass": "completed",
    }
    assert report["overallStatus"] == "completed"
    stored = await store.get("sub-1")
    assert stored is not None
    assert stored.components["contentCompass"] == {"channels": ["blog"], "pillars": ["growth"]}


@pytest.mark.asyncio
async def test_fix_status_ignores_unparseable_output() -> None:
    store = InMemorySubmissionStore()
    record = _record(audienceArchitect="pending")
    record.output = "not json"
    await store.create(record)

    report = await SubmissionDiagnostics(store=store).fix_status("sub-1")

    assert report["success"] is True
    assert report["updates"] == []
