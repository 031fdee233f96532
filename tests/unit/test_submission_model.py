"""Unit tests for submission model column types and mixins."""

from __future__ import annotations

from datetime import datetime, timezone

from app.models.base import CuidString
from app.models.submission import Submission


def test_cuid_string_binds_trimmed_strings() -> None:
    column_type = CuidString()

    assert column_type.process_bind_param("  abc123  ", None) == "abc123"
    assert column_type.process_bind_param(None, None) is None
    assert column_type.process_result_value("abc123", None) == "abc123"


def test_touch_bumps_updated_at() -> None:
    row = Submission(id="sub-1", inputs={}, components={}, status="pending")
    before = datetime(2020, 1, 1, tzinfo=timezone.utc)
    row.updated_at = before

    stamped = row.touch()

    assert stamped > before
    assert row.updated_at == stamped
    assert stamped.tzinfo is not None


def test_repr_includes_status() -> None:
    row = Submission(id="sub-1", status="failed")
    assert repr(row) == "<Submission sub-1 (failed)>"
