"""Unit tests for the Redis-backed submission job queue."""

from __future__ import annotations

import json
from typing import Any

import pytest

from app.core.exceptions import SubmissionQueueFullError
from app.repositories.submission_repository import InMemorySubmissionStore
from app.services.pipeline_orchestrator import PipelineOrchestrator
from app.services.pipeline_task_manager import PipelineTaskJob, PipelineTaskManager
from app.services.regeneration import RegenerationService
from app.services.steps.chain import StepInvocation, StepResponse


class _FakePipeline:
    def __init__(self, redis: "_FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    def hset(self, *args: Any) -> "_FakePipeline":
        self._ops.append(("hset", args))
        return self

    def zadd(self, *args: Any) -> "_FakePipeline":
        self._ops.append(("zadd", args))
        return self

    async def execute(self) -> list[Any]:
        return [await getattr(self._redis, name)(*args) for name, args in self._ops]


class _FakeRedis:
    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def rpush(self, key: str, value: str) -> int:
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def blpop(self, key: str, timeout: int = 0) -> tuple[str, str] | None:
        items = self.lists.get(key)
        if not items:
            return None
        return key, items.pop(0)

    async def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> int:
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hdel(self, key: str, field: str) -> int:
        return 1 if self.hashes.get(key, {}).pop(field, None) is not None else 0

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrem(self, key: str, member: str) -> int:
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zrangebyscore(self, key: str, low: float, high: float) -> list[str]:
        members = self.zsets.get(key, {})
        return [member for member, score in sorted(members.items(), key=lambda item: item[1]) if low <= score <= high]

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)


def _manager(queue_size: int = 10) -> tuple[PipelineTaskManager, _FakeRedis]:
    redis = _FakeRedis()
    manager = PipelineTaskManager(worker_count=2, queue_size=queue_size, redis=redis)  # type: ignore[arg-type]
    return manager, redis


@pytest.mark.asyncio
async def test_enqueue_and_pop_in_fifo_order() -> None:
    manager, _ = _manager()

    start = await manager.enqueue_start(submission_id="sub-1")
    resume = await manager.enqueue_resume(submission_id="sub-2", start_at_step="contentCompass")

    assert await manager.get_queue_size() == 2
    first = await manager.pop_next(timeout_seconds=1)
    second = await manager.pop_next(timeout_seconds=1)
    assert first is not None and second is not None
    assert (first.kind, first.submission_id, first.job_id) == ("start", "sub-1", start.job_id)
    assert (second.kind, second.step, second.job_id) == ("resume", "contentCompass", resume.job_id)
    assert await manager.pop_next(timeout_seconds=1) is None


@pytest.mark.asyncio
async def test_enqueue_enforces_queue_cap_but_requeue_does_not() -> None:
    manager, _ = _manager(queue_size=1)
    job = await manager.enqueue_start(submission_id="sub-1")

    with pytest.raises(SubmissionQueueFullError):
        await manager.enqueue_resume(submission_id="sub-2", start_at_step="contentCompass")

    await manager.requeue(job)
    assert await manager.get_queue_size() == 2


@pytest.mark.asyncio
async def test_schedule_cascade_replaces_waiting_job_for_same_step() -> None:
    manager, redis = _manager()

    first_id = await manager.schedule_cascade(
        submission_id="sub-1",
        step="messageMultiplier",
        context={"contentCompass": {"topics": ["v1"]}},
        delay_seconds=1.0,
    )
    second_id = await manager.schedule_cascade(
        submission_id="sub-1",
        step="messageMultiplier",
        context={"contentCompass": {"topics": ["v2"]}},
        delay_seconds=1.0,
    )

    assert first_id != second_id
    assert await manager.get_scheduled_size() == 1
    stored = json.loads(redis.hashes[manager._scheduled_jobs_key()]["sub-1:messageMultiplier"])
    assert stored["job_id"] == second_id
    assert stored["context"] == {"contentCompass": {"topics": ["v2"]}}


@pytest.mark.asyncio
async def test_promote_due_moves_only_due_cascades() -> None:
    manager, redis = _manager()
    await manager.schedule_cascade(
        submission_id="sub-1",
        step="messageMultiplier",
        context={"contentCompass": {"topics": ["a"]}},
        delay_seconds=0,
    )
    await manager.schedule_cascade(
        submission_id="sub-2",
        step="contentCompass",
        context={"audienceArchitect": {"icp": "b"}},
        delay_seconds=3600,
    )

    promoted = await manager.promote_due()

    assert promoted == 1
    assert await manager.get_scheduled_size() == 1
    job = await manager.pop_next(timeout_seconds=1)
    assert job is not None
    assert job.kind == "cascade"
    assert job.step == "messageMultiplier"
    assert job.context == {"contentCompass": {"topics": ["a"]}}
    assert "sub-1:messageMultiplier" not in redis.hashes[manager._scheduled_jobs_key()]


@pytest.mark.asyncio
async def test_cancel_scheduled_cascade() -> None:
    manager, _ = _manager()
    await manager.schedule_cascade(
        submission_id="sub-1",
        step="messageMultiplier",
        context={},
        delay_seconds=5,
    )

    assert await manager.cancel_scheduled(submission_id="sub-1", step="messageMultiplier") is True
    assert await manager.cancel_scheduled(submission_id="sub-1", step="messageMultiplier") is False
    assert await manager.promote_due(now=10**12) == 0


@pytest.mark.asyncio
async def test_pop_next_drops_malformed_payloads() -> None:
    manager, redis = _manager()
    redis.lists[manager._queue_key()] = [
        "not json",
        json.dumps({"kind": "cascade", "submission_id": "sub-1"}),
        json.dumps({"kind": "explode", "submission_id": "sub-1"}),
    ]

    assert await manager.pop_next() is None
    assert await manager.pop_next() is None
    assert await manager.pop_next() is None


def test_pipeline_task_job_serialize_roundtrip() -> None:
    manager, _ = _manager()
    payload = manager._serialize_job(
        PipelineTaskJob(
            kind="cascade",
            submission_id="sub-1",
            step="landingPage",
            context={"eventFunnel": {"funnel": "x"}},
        )
    )
    decoded = manager._deserialize_job(payload)

    assert decoded.kind == "cascade"
    assert decoded.submission_id == "sub-1"
    assert decoded.step == "landingPage"
    assert decoded.context == {"eventFunnel": {"funnel": "x"}}


def test_manager_reports_configuration() -> None:
    manager = PipelineTaskManager(worker_count=0, queue_size=0, redis=_FakeRedis())  # type: ignore[arg-type]

    assert manager.worker_count == 1
    assert manager.queue_size_limit == 1


@pytest.mark.asyncio
async def test_direct_regeneration_drops_cascade_waiting_for_the_same_step() -> None:
    class _Invoker:
        async def invoke(self, invocation: StepInvocation) -> StepResponse:
            payloads: dict[str, Any] = {
                "audienceArchitect": {"icp": "ops"},
                "contentCompass": {"topics": ["pricing"]},
                "messageMultiplier": {"milestone": "activation"},
            }
            return StepResponse(status="completed", payload=payloads[invocation.step])

    manager, _ = _manager()
    store = InMemorySubmissionStore()
    orchestrator = PipelineOrchestrator(store=store, invoker=_Invoker())
    record = await orchestrator.create_submission({"targetMarket": "SMB", "product": "CRM"})
    await orchestrator.run(record.id)
    service = RegenerationService(
        store=store,
        orchestrator=orchestrator,
        scheduler=manager,
        cascade_delay_seconds=60.0,
    )

    await service.regenerate(record.id, "contentCompass")
    assert await manager.get_scheduled_size() == 1

    await service.regenerate(record.id, "messageMultiplier")

    assert await manager.get_scheduled_size() == 0
    assert await manager.promote_due(now=float("inf")) == 0


@pytest.mark.asyncio
async def test_pop_next_drops_unknown_job_kinds() -> None:
    manager, redis = _manager()
    redis.lists[manager._queue_key()] = [
        json.dumps({"kind": "regenerate", "submission_id": "sub-1", "step": "contentCompass"})
    ]

    assert await manager.pop_next(timeout_seconds=1) is None
