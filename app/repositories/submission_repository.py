"""Submission store: the only place that reads and writes submission records."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select

from app.core.database import get_session_context
from app.core.db_retry import run_with_transient_db_retry
from app.core.exceptions import SubmissionNotFoundError
from app.core.ids import generate_cuid
from app.models.submission import Submission

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "user_id",
    "kind",
    "title",
    "inputs",
    "components",
    "status",
    "output",
    "webhook_response",
    "completed_at",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SubmissionRecord:
    """Detached snapshot of a submission row."""

    id: str
    inputs: dict[str, Any] = field(default_factory=dict)
    components: dict[str, Any] = field(default_factory=dict)
    status: str = "pending"
    user_id: str | None = None
    kind: str = "icp"
    title: str | None = None
    output: str | None = None
    webhook_response: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    def clone(self) -> SubmissionRecord:
        return SubmissionRecord(
            **{f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}
        )

    @classmethod
    def from_model(cls, row: Submission) -> SubmissionRecord:
        return cls(
            id=str(row.id),
            inputs=copy.deepcopy(row.inputs or {}),
            components=copy.deepcopy(row.components or {}),
            status=row.status,
            user_id=row.user_id,
            kind=row.kind,
            title=row.title,
            output=row.output,
            webhook_response=row.webhook_response,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )


# Mutators edit the record in place; the store persists whatever they leave behind.
SubmissionMutator = Callable[[SubmissionRecord], None]


class SubmissionStore(Protocol):
    async def create(self, record: SubmissionRecord) -> SubmissionRecord: ...

    async def get(self, submission_id: str) -> SubmissionRecord | None: ...

    async def update(
        self,
        submission_id: str,
        mutate: SubmissionMutator,
    ) -> SubmissionRecord: ...

    async def list_pending_before(self, cutoff: datetime) -> list[SubmissionRecord]: ...


class SqlAlchemySubmissionStore:
    """Postgres-backed store using short-lived sessions.

    ``update`` locks the row for the duration of the read-modify-write so
    concurrent writers on other processes serialize on the database.
    """

    def __init__(self, *, attempts: int | None = None) -> None:
        self.attempts = attempts

    async def create(self, record: SubmissionRecord) -> SubmissionRecord:
        submission_id = record.id or generate_cuid()

        async def _create_once() -> SubmissionRecord:
            async with get_session_context() as session:
                row = Submission(id=submission_id)
                for column in _RECORD_COLUMNS:
                    setattr(row, column, copy.deepcopy(getattr(record, column)))
                session.add(row)
                await session.flush()
                await session.refresh(row)
                return SubmissionRecord.from_model(row)

        return await run_with_transient_db_retry(
            _create_once,
            operation_name="submission_create",
            attempts=self.attempts,
            log_context={"submission_id": submission_id},
        )

    async def get(self, submission_id: str) -> SubmissionRecord | None:
        async def _get_once() -> SubmissionRecord | None:
            async with get_session_context(commit_on_exit=False) as session:
                row = await session.get(Submission, submission_id)
                return SubmissionRecord.from_model(row) if row is not None else None

        return await run_with_transient_db_retry(
            _get_once,
            operation_name="submission_get",
            attempts=self.attempts,
            log_context={"submission_id": submission_id},
        )

    async def update(
        self,
        submission_id: str,
        mutate: SubmissionMutator,
    ) -> SubmissionRecord:
        async def _update_once() -> SubmissionRecord:
            async with get_session_context() as session:
                stmt = (
                    select(Submission)
                    .where(Submission.id == submission_id)
                    .with_for_update()
                )
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is None:
                    raise SubmissionNotFoundError(submission_id)

                record = SubmissionRecord.from_model(row)
                mutate(record)
                for column in _RECORD_COLUMNS:
                    setattr(row, column, getattr(record, column))
                record.updated_at = row.touch()
                await session.flush()
                return record

        return await run_with_transient_db_retry(
            _update_once,
            operation_name="submission_update",
            attempts=self.attempts,
            log_context={"submission_id": submission_id},
        )

    async def list_pending_before(self, cutoff: datetime) -> list[SubmissionRecord]:
        async def _list_once() -> list[SubmissionRecord]:
            async with get_session_context(commit_on_exit=False) as session:
                stmt = (
                    select(Submission)
                    .where(Submission.status == "pending")
                    .where(Submission.created_at < cutoff)
                    .order_by(Submission.created_at)
                )
                rows = (await session.execute(stmt)).scalars().all()
                return [SubmissionRecord.from_model(row) for row in rows]

        return await run_with_transient_db_retry(
            _list_once,
            operation_name="submission_list_stale",
            attempts=self.attempts,
        )


class InMemorySubmissionStore:
    """Process-local store for tests and database-less local runs."""

    def __init__(self) -> None:
        self._records: dict[str, SubmissionRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: SubmissionRecord) -> SubmissionRecord:
        stored = record.clone()
        stored.id = stored.id or generate_cuid()
        now = utc_now()
        stored.created_at = stored.created_at or now
        stored.updated_at = stored.updated_at or now
        async with self._lock:
            self._records[stored.id] = stored
        return stored.clone()

    async def get(self, submission_id: str) -> SubmissionRecord | None:
        record = self._records.get(submission_id)
        return record.clone() if record is not None else None

    async def update(
        self,
        submission_id: str,
        mutate: SubmissionMutator,
    ) -> SubmissionRecord:
        async with self._lock:
            current = self._records.get(submission_id)
            if current is None:
                raise SubmissionNotFoundError(submission_id)
            record = current.clone()
            mutate(record)
            record.updated_at = utc_now()
            self._records[submission_id] = record
            return record.clone()

    async def list_pending_before(self, cutoff: datetime) -> list[SubmissionRecord]:
        records = [
            record.clone()
            for record in self._records.values()
            if record.status == "pending"
            and record.created_at is not None
            and record.created_at < cutoff
        ]
        return sorted(records, key=lambda record: record.created_at or cutoff)


_submission_store: SubmissionStore | None = None


def get_submission_store() -> SubmissionStore:
    """Get the process-wide store selected by ``SUBMISSION_STORE_BACKEND``."""
    global _submission_store
    if _submission_store is None:
        from app.config import settings

        if settings.submission_store_backend == "memory":
            _submission_store = InMemorySubmissionStore()
        else:
            _submission_store = SqlAlchemySubmissionStore()
        logger.info(
            "Submission store selected",
            extra={"backend": settings.submission_store_backend},
        )
    return _submission_store


def set_submission_store(store: SubmissionStore | None) -> None:
    """Replace the process-wide store (tests, alternate backends)."""
    global _submission_store
    _submission_store = store
