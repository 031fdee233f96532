"""Unit tests for the pipeline worker pool and process entrypoint."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from app.repositories.submission_repository import (
    InMemorySubmissionStore,
    SubmissionRecord,
    set_submission_store,
)
from app.services.pipeline_task_manager import PipelineTaskJob, PipelineTaskWorker
from app.workers.pipeline_worker import parse_args


class _FakeManager:
    worker_count = 1

    def __init__(self, job: PipelineTaskJob) -> None:
        self._job = job
        self.requeued: list[PipelineTaskJob] = []
        self._popped = False

    async def pop_next(self, *, timeout_seconds: int = 5) -> PipelineTaskJob | None:
        if self._popped:
            return None
        self._popped = True
        return self._job

    async def requeue(self, job: PipelineTaskJob) -> None:
        self.requeued.append(job)

    async def promote_due(self) -> int:
        return 0


class _FlakyDequeueManager(_FakeManager):
    def __init__(self, job: PipelineTaskJob) -> None:
        super().__init__(job)
        self._raised = False

    async def pop_next(self, *, timeout_seconds: int = 5) -> PipelineTaskJob | None:
        if not self._raised:
            self._raised = True
            raise RuntimeError("temporary dequeue failure")
        return await super().pop_next(timeout_seconds=timeout_seconds)


@pytest.fixture
def memory_store() -> Any:
    store = InMemorySubmissionStore()
    set_submission_store(store)
    yield store
    set_submission_store(None)


def test_parse_args_defaults() -> None:
    args = parse_args([])

    assert args.workers is None
    assert args.poll_timeout == 5
    assert args.promote_interval == 0.5
    assert args.debug is False


def test_parse_args_overrides() -> None:
    args = parse_args(["--workers", "4", "--requeue-delay", "2.5", "--debug"])

    assert args.workers == 4
    assert args.requeue_delay == 2.5
    assert args.debug is True


@pytest.mark.asyncio
async def test_worker_executes_popped_job(monkeypatch: Any) -> None:
    manager = _FakeManager(PipelineTaskJob(kind="start", submission_id="sub-1"))
    worker = PipelineTaskWorker(manager=manager, poll_timeout_seconds=1)  # type: ignore[arg-type]
    seen: list[PipelineTaskJob] = []

    async def _fake_execute(job: PipelineTaskJob) -> None:
        seen.append(job)
        worker._stopping.set()

    monkeypatch.setattr(worker, "_execute", _fake_execute)

    await worker._worker_loop(worker_index=1)

    assert [job.submission_id for job in seen] == ["sub-1"]
    assert manager.requeued == []
    assert worker._submission_locks == {}


@pytest.mark.asyncio
async def test_worker_recovers_from_dequeue_error(monkeypatch: Any) -> None:
    manager = _FlakyDequeueManager(PipelineTaskJob(kind="start", submission_id="sub-1"))
    worker = PipelineTaskWorker(
        manager=manager,  # type: ignore[arg-type]
        poll_timeout_seconds=1,
        requeue_delay_seconds=0.1,
    )
    calls = {"count": 0}

    async def _fake_execute(_job: PipelineTaskJob) -> None:
        calls["count"] += 1
        worker._stopping.set()

    monkeypatch.setattr(worker, "_execute", _fake_execute)

    await worker._worker_loop(worker_index=1)

    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_worker_requeues_job_when_submission_is_busy(monkeypatch: Any) -> None:
    job = PipelineTaskJob(kind="resume", submission_id="sub-1")
    manager = _FakeManager(job)
    worker = PipelineTaskWorker(
        manager=manager,  # type: ignore[arg-type]
        poll_timeout_seconds=1,
        requeue_delay_seconds=0.1,
    )
    busy_lock = worker._lock_for(job.submission_id)
    await busy_lock.acquire()
    execute_mock = AsyncMock()
    monkeypatch.setattr(worker, "_execute", execute_mock)

    handled = await worker.handle(job)

    assert handled is False
    assert execute_mock.await_count == 0
    assert manager.requeued == [job]
    busy_lock.release()


@pytest.mark.asyncio
async def test_jobs_for_one_submission_never_overlap(monkeypatch: Any) -> None:
    first = PipelineTaskJob(kind="start", submission_id="sub-1")
    second = PipelineTaskJob(kind="cascade", submission_id="sub-1", step="contentCompass")
    manager = _FakeManager(first)
    worker = PipelineTaskWorker(
        manager=manager,  # type: ignore[arg-type]
        poll_timeout_seconds=1,
        requeue_delay_seconds=0.1,
    )
    release = asyncio.Event()

    async def _slow_execute(_job: PipelineTaskJob) -> None:
        await release.wait()

    monkeypatch.setattr(worker, "_execute", _slow_execute)

    running = asyncio.create_task(worker.handle(first))
    await asyncio.sleep(0)
    assert await worker.handle(second) is False
    release.set()

    assert await running is True
    assert manager.requeued == [second]


@pytest.mark.asyncio
async def test_crashed_job_fails_pending_steps(monkeypatch: Any, memory_store: Any) -> None:
    await memory_store.create(
        SubmissionRecord(
            id="sub-1",
            components={
                "componentStatus": {
                    "audienceArchitect": "completed",
                    "contentCompass": "pending",
                    "messageMultiplier": "pending",
                }
            },
        )
    )
    worker = PipelineTaskWorker(
        manager=_FakeManager(PipelineTaskJob(kind="start", submission_id="sub-1")),  # type: ignore[arg-type]
        poll_timeout_seconds=1,
    )
    monkeypatch.setattr(worker, "_execute", AsyncMock(side_effect=RuntimeError("store exploded")))

    handled = await worker.handle(PipelineTaskJob(kind="start", submission_id="sub-1"))

    assert handled is False
    stored = await memory_store.get("sub-1")
    assert stored.status == "failed"
    assert stored.components["componentStatus"]["contentCompass"] == "failed"
    assert json.loads(stored.webhook_response) == {
        "error": "store exploded",
        "error_type": "RuntimeError",
        "job_kind": "start",
    }


@pytest.mark.asyncio
async def test_crash_for_unknown_submission_is_logged(monkeypatch: Any, memory_store: Any) -> None:
    worker = PipelineTaskWorker(
        manager=_FakeManager(PipelineTaskJob(kind="start", submission_id="gone")),  # type: ignore[arg-type]
        poll_timeout_seconds=1,
    )
    monkeypatch.setattr(worker, "_execute", AsyncMock(side_effect=RuntimeError("boom")))

    assert await worker.handle(PipelineTaskJob(kind="start", submission_id="gone")) is False


@pytest.mark.asyncio
async def test_resume_without_step_and_nothing_left_is_a_no_op(
    monkeypatch: Any,
    memory_store: Any,
) -> None:
    await memory_store.create(
        SubmissionRecord(
            id="sub-1",
            status="completed",
            components={
                "componentStatus": {
                    "audienceArchitect": "completed",
                    "contentCompass": "completed",
                    "messageMultiplier": "completed",
                    "eventFunnel": "not_requested",
                    "landingPage": "not_requested",
                },
                "audienceArchitect": {"icp": "ops"},
                "contentCompass": {"topics": ["a"]},
                "messageMultiplier": {"milestone": "m"},
            },
        )
    )
    run_mock = AsyncMock()
    monkeypatch.setattr("app.services.pipeline_task_manager.PipelineOrchestrator.run", run_mock)
    worker = PipelineTaskWorker(
        manager=_FakeManager(PipelineTaskJob(kind="resume", submission_id="sub-1")),  # type: ignore[arg-type]
        poll_timeout_seconds=1,
    )

    await worker._execute(PipelineTaskJob(kind="resume", submission_id="sub-1"))

    assert run_mock.await_count == 0
