"""Submission aggregate persisted by the chain."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CuidPrimaryKeyMixin, CuidString, JSONDocument, TimestampMixin


class Submission(Base, CuidPrimaryKeyMixin, TimestampMixin):
    """One user request and the evolving output of its generation chain."""

    __tablename__ = "submissions"

    user_id: Mapped[str | None] = mapped_column(CuidString(), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(30), default="icp", nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)

    inputs: Mapped[dict[str, Any]] = mapped_column(JSONDocument, default=dict, nullable=False)
    components: Mapped[dict[str, Any]] = mapped_column(JSONDocument, default=dict, nullable=False)

    # Overall status, derived from components.componentStatus
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)

    # Display copy of the latest step output; not authoritative
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_response: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Submission {self.id} ({self.status})>"
