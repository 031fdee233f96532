"""Unit tests for single-step regeneration and its one-hop cascade."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from app.core.exceptions import StepNotFoundError, SubmissionNotFoundError, UpstreamError, ValidationError
from app.repositories.submission_repository import InMemorySubmissionStore, SubmissionRecord
from app.services.pipeline_orchestrator import PipelineOrchestrator
from app.services.regeneration import RegenerationService
from app.services.steps.chain import StepInvocation, StepResponse

EVENT_INPUTS = {
    "eventName": "Summit",
    "eventDates": "May 1-2",
    "eventLocation": "Lisbon",
    "uniqueSellingPoints": "Workshops",
    "ticketTiers": "General",
}


class _FakeInvoker:
    def __init__(self, version: str = "v1", failing: set[str] | None = None) -> None:
        self.version = version
        self.failing = failing or set()
        self.invocations: list[StepInvocation] = []

    async def invoke(self, invocation: StepInvocation) -> StepResponse:
        self.invocations.append(invocation)
        if invocation.step in self.failing:
            raise UpstreamError(invocation.step, "502 Bad Gateway", http_status=502)
        payloads: dict[str, Any] = {
            "audienceArchitect": {"icp": f"ops {self.version}"},
            "contentCompass": {"topics": [f"pricing {self.version}"]},
            "messageMultiplier": {"milestone": f"activation {self.version}"},
            "eventFunnel": {"funnel": f"webinar {self.version}"},
            "landingPage": {"hero": f"Join {self.version}"},
        }
        return StepResponse(status="completed", payload=payloads[invocation.step])


class _FakeScheduler:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.cancelled: list[tuple[str, str]] = []
        self.error = error

    async def schedule_cascade(
        self,
        *,
        submission_id: str,
        step: str,
        context: Mapping[str, Any],
        delay_seconds: float,
    ) -> str:
        if self.error is not None:
            raise self.error
        self.calls.append(
            {
                "submission_id": submission_id,
                "step": step,
                "context": dict(context),
                "delay_seconds": delay_seconds,
            }
        )
        return f"job-{len(self.calls)}"

    async def cancel_scheduled(self, *, submission_id: str, step: str) -> bool:
        if self.error is not None:
            raise self.error
        self.cancelled.append((submission_id, step))
        return True


def _service(
    store: InMemorySubmissionStore,
    invoker: _FakeInvoker,
    scheduler: _FakeScheduler,
) -> RegenerationService:
    return RegenerationService(
        store=store,
        orchestrator=PipelineOrchestrator(store=store, invoker=invoker),
        scheduler=scheduler,
        cascade_delay_seconds=1.0,
    )


async def _completed_submission(
    store: InMemorySubmissionStore,
    inputs: dict[str, Any] | None = None,
) -> SubmissionRecord:
    orchestrator = PipelineOrchestrator(store=store, invoker=_FakeInvoker())
    record = await orchestrator.create_submission(inputs or {"targetMarket": "SMB", "product": "CRM"})
    await orchestrator.run(record.id)
    return record


@pytest.mark.asyncio
async def test_regenerate_refreshes_step_and_schedules_one_cascade() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    invoker = _FakeInvoker(version="v2")
    scheduler = _FakeScheduler()

    result = await _service(store, invoker, scheduler).regenerate(record.id, "contentCompass")

    assert result.status == "completed"
    assert result.cascaded_step == "messageMultiplier"
    assert result.cascade_job_id == "job-1"
    assert result.overall_status == "pending"
    assert [invocation.step for invocation in invoker.invocations] == ["contentCompass"]
    assert invoker.invocations[0].previous_output == {"audienceArchitect": {"icp": "ops v1"}}
    assert scheduler.calls == [
        {
            "submission_id": record.id,
            "step": "messageMultiplier",
            "context": {"contentCompass": {"topics": ["pricing v2"]}},
            "delay_seconds": 1.0,
        }
    ]

    stored = await store.get(record.id)
    assert stored is not None
    assert stored.components["contentCompass"] == {"topics": ["pricing v2"]}
    assert stored.components["componentStatus"]["messageMultiplier"] == "pending"
    assert stored.components["messageMultiplier"] == {"milestone": "activation v1"}


@pytest.mark.asyncio
async def test_cascade_skips_dependents_that_were_never_requested() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    scheduler = _FakeScheduler()

    result = await _service(store, _FakeInvoker("v2"), scheduler).regenerate(
        record.id, "messageMultiplier"
    )

    assert result.cascaded_step is None
    assert scheduler.calls == []
    assert result.overall_status == "completed"


@pytest.mark.asyncio
async def test_cascade_job_does_not_cascade_further() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(
        store,
        {"targetMarket": "SMB", "product": "CRM", "generateLandingPage": True, **EVENT_INPUTS},
    )
    invoker = _FakeInvoker("v3")
    scheduler = _FakeScheduler()

    result = await _service(store, invoker, scheduler).regenerate(
        record.id,
        "eventFunnel",
        cascade=False,
        context_override={"messageMultiplier": {"milestone": "fresh"}},
    )

    assert result.status == "completed"
    assert scheduler.calls == []
    assert invoker.invocations[0].previous_output == {"messageMultiplier": {"milestone": "fresh"}}


@pytest.mark.asyncio
async def test_regenerating_optional_step_requires_event_details() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    invoker = _FakeInvoker()

    with pytest.raises(ValidationError):
        await _service(store, invoker, _FakeScheduler()).regenerate(record.id, "landingPage")

    assert invoker.invocations == []
    stored = await store.get(record.id)
    assert stored is not None
    assert stored.components["componentStatus"]["landingPage"] == "not_requested"


@pytest.mark.asyncio
async def test_regenerate_rejects_unknown_step_and_submission() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    service = _service(store, _FakeInvoker(), _FakeScheduler())

    with pytest.raises(StepNotFoundError):
        await service.regenerate(record.id, "summary")
    with pytest.raises(SubmissionNotFoundError):
        await service.regenerate("missing", "contentCompass")


@pytest.mark.asyncio
async def test_upstream_failure_is_reported_without_cascade() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    scheduler = _FakeScheduler()

    result = await _service(
        store, _FakeInvoker(failing={"audienceArchitect"}), scheduler
    ).regenerate(record.id, "audienceArchitect")

    assert result.upstream_failed
    assert result.status == "failed"
    assert result.overall_status == "failed"
    assert scheduler.calls == []
    stored = await store.get(record.id)
    assert stored is not None
    assert stored.components["audienceArchitect"] == {"icp": "ops v1"}


@pytest.mark.asyncio
async def test_direct_regeneration_cancels_waiting_cascade_for_the_step() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    scheduler = _FakeScheduler()

    await _service(store, _FakeInvoker("v2"), scheduler).regenerate(record.id, "messageMultiplier")

    assert scheduler.cancelled == [(record.id, "messageMultiplier")]


@pytest.mark.asyncio
async def test_cascade_job_leaves_scheduled_cascades_alone() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    scheduler = _FakeScheduler()

    await _service(store, _FakeInvoker("v2"), scheduler).regenerate(
        record.id,
        "messageMultiplier",
        cascade=False,
        context_override={"contentCompass": {"topics": ["fresh"]}},
    )

    assert scheduler.cancelled == []


@pytest.mark.asyncio
async def test_failed_cascade_schedule_restores_dependent_status() -> None:
    store = InMemorySubmissionStore()
    record = await _completed_submission(store)
    scheduler = _FakeScheduler(error=ConnectionError("redis unavailable"))

    result = await _service(store, _FakeInvoker("v2"), scheduler).regenerate(
        record.id, "contentCompass"
    )

    assert result.status == "completed"
    assert result.cascaded_step is None
    assert result.cascade_error is not None
    assert "messageMultiplier" in result.cascade_error
    assert result.overall_status == "completed"
    stored = await store.get(record.id)
    assert stored is not None
    assert stored.components["contentCompass"] == {"topics": ["pricing v2"]}
    assert stored.components["componentStatus"]["messageMultiplier"] == "completed"
    assert stored.status == "completed"
