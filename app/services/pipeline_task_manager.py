"""Redis-backed queueing for submission chain jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from redis.asyncio import Redis

from app.config import settings
from app.core.exceptions import SubmissionNotFoundError, SubmissionQueueFullError
from app.core.ids import generate_job_id
from app.core.redis import (
    cascade_jobs_key,
    cascade_schedule_key,
    get_redis_client,
    pipeline_queue_key,
)
from app.repositories.submission_repository import get_submission_store
from app.services.pipeline_orchestrator import PipelineOrchestrator
from app.services.regeneration import RegenerationService
from app.services.retry_engine import first_incomplete_step
from app.services.submission_state import mark_pending_steps_failed

logger = logging.getLogger(__name__)

JobKind = Literal["start", "resume", "cascade"]
JOB_KINDS: frozenset[str] = frozenset({"start", "resume", "cascade"})


@dataclass(slots=True)
class PipelineTaskJob:
    """Queued submission job."""

    kind: JobKind
    submission_id: str
    step: str | None = None
    context: dict[str, Any] | None = None
    job_id: str = field(default_factory=generate_job_id)


class PipelineTaskManager:
    """Redis-backed enqueue/dequeue manager for submission jobs.

    Immediate jobs go to a list. Cascades wait in a sorted set scored by due
    time, keyed by ``submission:step`` so scheduling the same cascade again
    replaces (cancels) the one still waiting.
    """

    def __init__(
        self,
        *,
        worker_count: int,
        queue_size: int,
        redis: Redis | None = None,
    ) -> None:
        self._worker_count = max(1, worker_count)
        self._queue_size_limit = max(1, queue_size)
        self._redis = redis if redis is not None else get_redis_client()

    @property
    def worker_count(self) -> int:
        """Configured worker count."""
        return self._worker_count

    @property
    def queue_size_limit(self) -> int:
        """Configured queue size cap."""
        return self._queue_size_limit

    async def get_queue_size(self) -> int:
        """Get current queue length from Redis."""
        return int(await self._redis.llen(self._queue_key()))

    async def get_scheduled_size(self) -> int:
        return int(await self._redis.zcard(self._schedule_key()))

    async def enqueue_start(self, *, submission_id: str) -> PipelineTaskJob:
        """Queue a full chain run for a new submission."""
        job = PipelineTaskJob(kind="start", submission_id=submission_id)
        await self._enqueue(job, enforce_capacity=True)
        return job

    async def enqueue_resume(
        self,
        *,
        submission_id: str,
        start_at_step: str | None = None,
    ) -> PipelineTaskJob:
        """Queue a resume from ``start_at_step`` (first incomplete step when None)."""
        job = PipelineTaskJob(kind="resume", submission_id=submission_id, step=start_at_step)
        await self._enqueue(job, enforce_capacity=True)
        return job

    async def schedule_cascade(
        self,
        *,
        submission_id: str,
        step: str,
        context: Mapping[str, Any],
        delay_seconds: float,
    ) -> str:
        """Schedule a single-shot cascade; replaces one still waiting for the same step."""
        job = PipelineTaskJob(
            kind="cascade",
            submission_id=submission_id,
            step=step,
            context=dict(context),
        )
        member = self._cascade_member(submission_id, step)
        due_at = time.time() + max(0.0, float(delay_seconds))
        replaced = await self._redis.hget(self._scheduled_jobs_key(), member)

        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(self._scheduled_jobs_key(), member, self._serialize_job(job))
        pipe.zadd(self._schedule_key(), {member: due_at})
        await pipe.execute()

        logger.info(
            "Cascade job scheduled",
            extra={
                "submission_id": submission_id,
                "step": step,
                "job_id": job.job_id,
                "delay_seconds": delay_seconds,
                "replaced_pending": replaced is not None,
            },
        )
        return job.job_id

    async def cancel_scheduled(self, *, submission_id: str, step: str) -> bool:
        """Drop a waiting cascade; True when one was removed."""
        member = self._cascade_member(submission_id, step)
        removed = int(await self._redis.zrem(self._schedule_key(), member))
        await self._redis.hdel(self._scheduled_jobs_key(), member)
        if removed:
            logger.info(
                "Cascade job cancelled",
                extra={"submission_id": submission_id, "step": step},
            )
        return bool(removed)

    async def promote_due(self, *, now: float | None = None) -> int:
        """Move due cascades onto the work queue; returns how many moved."""
        now = time.time() if now is None else now
        due = await self._redis.zrangebyscore(self._schedule_key(), 0, now)
        promoted = 0
        for member in due:
            # Only the caller that removes the member promotes it.
            if not int(await self._redis.zrem(self._schedule_key(), member)):
                continue
            payload = await self._redis.hget(self._scheduled_jobs_key(), member)
            await self._redis.hdel(self._scheduled_jobs_key(), member)
            if payload is None:
                continue
            await self._redis.rpush(self._queue_key(), payload)
            promoted += 1
        if promoted:
            logger.info("Promoted due cascade jobs", extra={"count": promoted})
        return promoted

    async def requeue(self, job: PipelineTaskJob) -> None:
        """Requeue a job without hard-failing on configured queue caps."""
        await self._enqueue(job, enforce_capacity=False)

    async def _enqueue(
        self,
        job: PipelineTaskJob,
        *,
        enforce_capacity: bool,
    ) -> None:
        if enforce_capacity:
            pending = int(await self._redis.llen(self._queue_key()))
            if pending >= self._queue_size_limit:
                raise SubmissionQueueFullError()
        payload = self._serialize_job(job)
        queue_size = int(await self._redis.rpush(self._queue_key(), payload))
        logger.info(
            "Pipeline task queued",
            extra={
                "kind": job.kind,
                "submission_id": job.submission_id,
                "step": job.step,
                "job_id": job.job_id,
                "queue_size": queue_size,
            },
        )

    async def pop_next(self, *, timeout_seconds: int = 5) -> PipelineTaskJob | None:
        """Pop the next queued job."""
        timeout = max(1, int(timeout_seconds))
        popped = await self._redis.blpop(self._queue_key(), timeout=timeout)
        if not popped:
            return None
        _, payload = popped
        try:
            return self._deserialize_job(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning(
                "Dropping malformed pipeline job payload",
                extra={"payload": payload},
            )
            return None

    @staticmethod
    def _queue_key() -> str:
        return pipeline_queue_key()

    @staticmethod
    def _schedule_key() -> str:
        return cascade_schedule_key()

    @staticmethod
    def _scheduled_jobs_key() -> str:
        return cascade_jobs_key()

    @staticmethod
    def _cascade_member(submission_id: str, step: str) -> str:
        return f"{submission_id}:{step}"

    @staticmethod
    def _serialize_job(job: PipelineTaskJob) -> str:
        return json.dumps(
            {
                "kind": job.kind,
                "submission_id": job.submission_id,
                "step": job.step,
                "context": job.context,
                "job_id": job.job_id,
            },
            separators=(",", ":"),
            default=str,
        )

    @staticmethod
    def _deserialize_job(payload: str) -> PipelineTaskJob:
        data = json.loads(payload)
        kind = data["kind"]
        submission_id = data["submission_id"]
        step = data.get("step")
        context = data.get("context")
        if kind not in JOB_KINDS:
            raise ValueError("Invalid pipeline job kind")
        if not isinstance(submission_id, str) or not submission_id:
            raise ValueError("Invalid submission_id")
        if step is not None and not isinstance(step, str):
            raise ValueError("Invalid step")
        if kind == "cascade" and not step:
            raise ValueError(f"{kind} job requires a step")
        if context is not None and not isinstance(context, dict):
            raise ValueError("Invalid context")
        return PipelineTaskJob(
            kind=kind,
            submission_id=submission_id,
            step=step,
            context=context,
            job_id=str(data.get("job_id") or generate_job_id()),
        )


class PipelineTaskWorker:
    """Async worker pool consuming Redis jobs.

    At most one job per submission runs in this process at a time; a job for
    a busy submission is requeued after ``requeue_delay_seconds``.
    """

    def __init__(
        self,
        *,
        manager: PipelineTaskManager,
        poll_timeout_seconds: int = 5,
        requeue_delay_seconds: float = 1.0,
        promote_interval_seconds: float = 0.5,
    ) -> None:
        self.manager = manager
        self.poll_timeout_seconds = max(1, int(poll_timeout_seconds))
        self.requeue_delay_seconds = max(0.1, float(requeue_delay_seconds))
        self.promote_interval_seconds = max(0.1, float(promote_interval_seconds))
        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._submission_locks: dict[str, asyncio.Lock] = {}

    async def start(self) -> None:
        """Start worker tasks if not already running."""
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(
                self._worker_loop(index + 1),
                name=f"pipeline-worker-{index + 1}",
            )
            for index in range(self.manager.worker_count)
        ]
        self._workers.append(
            asyncio.create_task(self._promoter_loop(), name="pipeline-cascade-promoter")
        )
        logger.info(
            "Pipeline worker pool started",
            extra={"worker_count": self.manager.worker_count},
        )

    async def stop(self) -> None:
        """Stop worker tasks."""
        if not self._workers:
            return
        self._stopping.set()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Pipeline worker pool stopped")

    def _lock_for(self, submission_id: str) -> asyncio.Lock:
        lock = self._submission_locks.get(submission_id)
        if lock is None:
            lock = asyncio.Lock()
            self._submission_locks[submission_id] = lock
        return lock

    async def _promoter_loop(self) -> None:
        try:
            while not self._stopping.is_set():
                try:
                    await self.manager.promote_due()
                except Exception:
                    logger.exception("Cascade promotion failed")
                await asyncio.sleep(self.promote_interval_seconds)
        except asyncio.CancelledError:
            pass

    async def _worker_loop(self, worker_index: int) -> None:
        logger.info("Pipeline worker started", extra={"worker_index": worker_index})
        try:
            while not self._stopping.is_set():
                try:
                    job = await self.manager.pop_next(timeout_seconds=self.poll_timeout_seconds)
                except Exception:
                    logger.exception(
                        "Pipeline dequeue failed", extra={"worker_index": worker_index}
                    )
                    await asyncio.sleep(self.requeue_delay_seconds)
                    continue
                if job is None:
                    continue
                await self.handle(job, worker_index=worker_index)
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("Pipeline worker stopped", extra={"worker_index": worker_index})

    async def handle(self, job: PipelineTaskJob, *, worker_index: int = 0) -> bool:
        """Run one job; False when it was requeued or failed."""
        log_context = {
            "kind": job.kind,
            "submission_id": job.submission_id,
            "step": job.step,
            "job_id": job.job_id,
            "worker_index": worker_index,
        }
        lock = self._lock_for(job.submission_id)
        if lock.locked():
            logger.info("Submission busy, requeueing job", extra=log_context)
            await asyncio.sleep(self.requeue_delay_seconds)
            await self.manager.requeue(job)
            return False

        succeeded = True
        async with lock:
            try:
                await self._execute(job)
            except Exception as exc:
                logger.exception("Pipeline worker job failed", extra=log_context)
                await self._record_crash(job, exc)
                succeeded = False
        self._submission_locks.pop(job.submission_id, None)
        return succeeded

    async def _execute(self, job: PipelineTaskJob) -> None:
        store = get_submission_store()
        if job.kind == "start":
            await PipelineOrchestrator(store=store).run(job.submission_id)
            return
        if job.kind == "resume":
            start_at = job.step
            if start_at is None:
                record = await store.get(job.submission_id)
                start_at = first_incomplete_step(record) if record is not None else None
                if start_at is None:
                    return
            await PipelineOrchestrator(store=store).run(job.submission_id, start_at_step=start_at)
            return

        regeneration = RegenerationService(store=store, scheduler=self.manager)
        await regeneration.regenerate(
            job.submission_id,
            str(job.step),
            cascade=False,
            context_override=job.context,
        )

    async def _record_crash(self, job: PipelineTaskJob, exc: Exception) -> None:
        """Terminal shortcut: fail the submission's pending steps."""
        try:
            await get_submission_store().update(
                job.submission_id,
                lambda record: mark_pending_steps_failed(
                    record,
                    reason=str(exc),
                    details={"error_type": type(exc).__name__, "job_kind": job.kind},
                ),
            )
        except SubmissionNotFoundError:
            logger.warning(
                "Crashed job references unknown submission",
                extra={"submission_id": job.submission_id, "job_id": job.job_id},
            )


_pipeline_task_manager: PipelineTaskManager | None = None


def get_pipeline_task_manager() -> PipelineTaskManager:
    """Get singleton task manager."""
    global _pipeline_task_manager
    if _pipeline_task_manager is None:
        _pipeline_task_manager = PipelineTaskManager(
            worker_count=settings.pipeline_task_workers,
            queue_size=settings.pipeline_task_queue_size,
        )
    return _pipeline_task_manager
