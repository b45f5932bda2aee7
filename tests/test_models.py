"""Tests for convoy data models."""

import json
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from convoy.models import AuditEntry, AuditStatus, Err, LockRecord, Ok, partition


class TestLockRecord:
    """Tests for LockRecord."""

    def test_unlocked_record_needs_nothing_else(self) -> None:
        record = LockRecord()
        assert not record.locked
        assert json.loads(record.to_json()) == {"locked": False}

    def test_held_lock_requires_owner(self) -> None:
        with pytest.raises(ValidationError):
            LockRecord(locked=True, acquired_by="alice")

    def test_camel_case_round_trip(self) -> None:
        record = LockRecord(
            locked=True,
            message="release",
            acquired_at=datetime(2026, 1, 2, 10, 0, tzinfo=UTC),
            acquired_by="alice",
            pid=7,
            version="1.0",
        )
        data = json.loads(record.to_json())
        assert data["acquiredBy"] == "alice"
        assert data["acquiredAt"].startswith("2026-01-02T10:00:00")
        assert "acquired_by" not in data
        assert LockRecord.model_validate(data) == record

    def test_ignores_unknown_keys(self) -> None:
        record = LockRecord.model_validate(
            {"locked": True, "acquiredAt": "2026-01-02T10:00:00Z", "acquiredBy": "bob", "extra": 1}
        )
        assert record.acquired_by == "bob"


class TestAuditEntry:
    """Tests for AuditEntry."""

    def test_timestamp_defaults_to_now_utc(self) -> None:
        entry = AuditEntry(status=AuditStatus.STARTED, action="service_deploy")
        assert entry.timestamp.tzinfo is not None
        assert entry.host is None
        assert entry.message == ""

    def test_status_from_string(self) -> None:
        entry = AuditEntry.model_validate({"status": "failed", "action": "x"})
        assert entry.status == AuditStatus.FAILED

    def test_rejects_unknown_status(self) -> None:
        with pytest.raises(ValidationError):
            AuditEntry.model_validate({"status": "exploded", "action": "x"})


class TestOutcomes:
    """Tests for Ok/Err outcomes."""

    def test_err_message(self) -> None:
        assert Err("h1", RuntimeError("boom")).message == "boom"
        assert Err("h1", TimeoutError()).message == "TimeoutError"

    def test_partition_preserves_order(self) -> None:
        outcomes = [Ok("a", 1), Err("b", ValueError("x")), Ok("c", 3), Err("d", ValueError("y"))]
        oks, errs = partition(outcomes)
        assert [o.host for o in oks] == ["a", "c"]
        assert [e.host for e in errs] == ["b", "d"]
        assert all(o.success for o in oks)
        assert not any(e.success for e in errs)
