"""Unit tests for conflict detection.

Tests field-level comparison, conflict subtype classification, the record-level
timestamp window and persistence of detected conflicts in the in-memory store.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from src.crmsync.sync.detector import (
    ConflictDetector,
    classify_conflict,
    find_field_conflicts,
    parse_timestamp,
)
from src.crmsync.sync.schemas import (
    ConflictType,
    FieldConflict,
    FieldConflictType,
    ResolutionStatus,
)

T0 = "2026-01-15T10:00:00Z"
T0_PLUS_30S = "2026-01-15T10:00:30Z"
T0_PLUS_2M = "2026-01-15T10:02:00Z"


# ── find_field_conflicts ───────────────────────────────────────────────────


class TestFindFieldConflicts:
    """Test field-by-field comparison of two snapshots."""

    @pytest.mark.parametrize(
        "snapshot",
        [
            {},
            {"amount": 100},
            {"stage": "New", "tags": ["a", "b"], "meta": {"x": 1, "y": [1, 2]}},
            {"owner": None, "active": True, "updated_at": T0},
        ],
    )
    def test_identical_snapshots_have_no_conflicts(self, snapshot):
        """Comparing a snapshot with itself yields no field conflicts."""
        assert find_field_conflicts(snapshot, dict(snapshot)) == {}

    def test_bookkeeping_fields_are_ignored(self):
        """id, created_at and updated_at never count as conflicts."""
        local = {"id": "a", "created_at": T0, "updated_at": T0, "stage": "New"}
        remote = {"id": "b", "created_at": T0_PLUS_2M, "updated_at": T0_PLUS_2M, "stage": "New"}

        assert find_field_conflicts(local, remote) == {}

    def test_nested_dict_key_order_does_not_matter(self):
        """Nested dicts compare structurally, not by key order."""
        local = {"meta": {"a": 1, "b": 2}}
        remote = {"meta": {"b": 2, "a": 1}}

        assert find_field_conflicts(local, remote) == {}

    def test_integral_float_equals_int(self):
        """100 and 100.0 are the same number, at the top level and nested."""
        assert find_field_conflicts({"amount": 100}, {"amount": 100.0}) == {}
        assert (
            find_field_conflicts(
                {"deal": {"amount": 100, "lines": [1, 2]}},
                {"deal": {"amount": 100.0, "lines": [1.0, 2]}},
            )
            == {}
        )

    def test_fractional_float_still_conflicts(self):
        """Numbers that really differ are still a value_mismatch."""
        conflicts = find_field_conflicts({"amount": 100}, {"amount": 100.5})

        assert conflicts["amount"].type == FieldConflictType.VALUE_MISMATCH

    def test_value_mismatch(self):
        """Same-kind values that differ are value_mismatch."""
        conflicts = find_field_conflicts({"amount": 100}, {"amount": 150})

        assert conflicts == {
            "amount": FieldConflict(local=100, remote=150, type=FieldConflictType.VALUE_MISMATCH)
        }

    def test_type_mismatch(self):
        """Values of different primitive kinds are type_mismatch."""
        conflicts = find_field_conflicts({"amount": 100}, {"amount": "100"})

        assert conflicts["amount"].type == FieldConflictType.TYPE_MISMATCH

    def test_bool_and_number_are_different_kinds(self):
        """True and 1 are distinct kinds even though bool subclasses int."""
        conflicts = find_field_conflicts({"flag": True}, {"flag": 1})

        assert conflicts["flag"].type == FieldConflictType.TYPE_MISMATCH

    def test_missing_local(self):
        """A key absent locally is missing_local."""
        conflicts = find_field_conflicts({}, {"phone": "555-0100"})

        assert conflicts["phone"] == FieldConflict(
            local=None, remote="555-0100", type=FieldConflictType.MISSING_LOCAL
        )

    def test_missing_remote_when_null(self):
        """An explicit None on the remote side is missing_remote."""
        conflicts = find_field_conflicts({"phone": "555-0100"}, {"phone": None})

        assert conflicts["phone"].type == FieldConflictType.MISSING_REMOTE

    def test_absent_key_differs_from_explicit_none(self):
        """An absent key and an explicit None are not equal."""
        conflicts = find_field_conflicts({"owner": None}, {})

        assert set(conflicts) == {"owner"}

    @pytest.mark.parametrize(
        "local,remote",
        [
            ({"a": 1, "b": 2, "c": 3}, {"a": 1, "b": 3, "d": 4}),
            ({"id": 1, "x": [1, 2]}, {"id": 2, "x": [2, 1]}),
            ({"name": "Acme", "updated_at": T0}, {"name": "Acme", "updated_at": T0_PLUS_30S}),
            ({"n": None, "m": {}}, {"m": {"k": None}}),
        ],
    )
    def test_conflict_keys_are_exactly_the_differing_keys(self, local, remote):
        """Returned keys equal the non-bookkeeping keys whose serialized values differ."""
        def serialize(snapshot, key):
            if key not in snapshot:
                return "<absent>"
            return json.dumps(snapshot[key], sort_keys=True)

        keys = (set(local) | set(remote)) - {"id", "created_at", "updated_at"}
        expected = {key for key in keys if serialize(local, key) != serialize(remote, key)}

        assert set(find_field_conflicts(local, remote)) == expected


# ── classify_conflict ──────────────────────────────────────────────────────


class TestClassifyConflict:
    """Test the record-level conflict type."""

    def test_timestamps_within_window_are_timestamp_conflict(self):
        """updated_at values 30s apart fall inside the 60s window."""
        assert (
            classify_conflict({"updated_at": T0}, {"updated_at": T0_PLUS_30S})
            == ConflictType.TIMESTAMP_CONFLICT
        )

    def test_timestamps_outside_window_are_data_mismatch(self):
        """updated_at values 2 minutes apart are a plain data mismatch."""
        assert (
            classify_conflict({"updated_at": T0}, {"updated_at": T0_PLUS_2M})
            == ConflictType.DATA_MISMATCH
        )

    def test_window_boundary_is_exclusive(self):
        """Exactly the window apart is not a timestamp conflict."""
        base = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
        local = {"updated_at": base}
        remote = {"updated_at": base + timedelta(seconds=60)}

        assert classify_conflict(local, remote, window_seconds=60) == ConflictType.DATA_MISMATCH

    def test_missing_timestamp_is_data_mismatch(self):
        """Without updated_at on both sides the conflict is data_mismatch."""
        assert classify_conflict({"updated_at": T0}, {}) == ConflictType.DATA_MISMATCH

    def test_unparseable_timestamp_is_data_mismatch(self):
        """A garbage updated_at is treated as absent."""
        assert (
            classify_conflict({"updated_at": "yesterday"}, {"updated_at": T0})
            == ConflictType.DATA_MISMATCH
        )

    def test_parse_timestamp_accepts_zulu_suffix(self):
        """ISO strings ending in Z parse as UTC."""
        parsed = parse_timestamp(T0)

        assert parsed == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_parse_timestamp_reads_epoch_milliseconds(self):
        """Numbers are milliseconds since the epoch in UTC."""
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
        assert parse_timestamp(1500.0) == datetime(
            1970, 1, 1, 0, 0, 1, 500000, tzinfo=timezone.utc
        )

    @pytest.mark.parametrize("value", [True, False, 10**30])
    def test_parse_timestamp_rejects_bools_and_out_of_range_numbers(self, value):
        """Booleans are not timestamps and out-of-range numbers read as absent."""
        assert parse_timestamp(value) is None

    def test_epoch_timestamps_within_window_are_timestamp_conflict(self):
        """Numeric updated_at values 30s apart fall inside the 60s window."""
        base_ms = int(datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc).timestamp() * 1000)

        assert (
            classify_conflict({"updated_at": base_ms}, {"updated_at": base_ms + 30_000})
            == ConflictType.TIMESTAMP_CONFLICT
        )
        assert (
            classify_conflict({"updated_at": base_ms}, {"updated_at": T0_PLUS_30S})
            == ConflictType.TIMESTAMP_CONFLICT
        )


# ── ConflictDetector ───────────────────────────────────────────────────────


class TestConflictDetector:
    """Test detection against the in-memory store."""

    @pytest.fixture
    def detector(self, store, settings):
        return ConflictDetector(store, settings)

    async def test_detect_identical_returns_none(self, detector, store, operation, user_id):
        """detect(X, X) reports no conflict and stores nothing."""
        snapshot = {"amount": 100, "stage": "New", "updated_at": T0}

        result = await detector.detect(operation, snapshot, dict(snapshot))

        assert result is None
        assert await store.list_conflicts(user_id) == []

    async def test_detect_amount_disagreement(self, detector, operation):
        """Local 100 vs remote 150 within 30s is a timestamp_conflict on amount."""
        local = {"amount": 100, "stage": "New", "updated_at": T0}
        remote = {"amount": 150, "stage": "New", "updated_at": T0_PLUS_30S}

        conflict = await detector.detect(operation, local, remote)

        assert conflict is not None
        assert conflict.conflict_type == ConflictType.TIMESTAMP_CONFLICT
        assert conflict.field_conflicts == {
            "amount": FieldConflict(local=100, remote=150, type=FieldConflictType.VALUE_MISMATCH)
        }
        assert conflict.resolution_status == ResolutionStatus.PENDING
        assert conflict.sync_operation_id == operation.id

    async def test_detect_persists_conflict(self, detector, store, operation, user_id):
        """A detected conflict is stored as pending for the operation's user."""
        conflict = await detector.detect(operation, {"stage": "New"}, {"stage": "Won"})

        stored = await store.list_conflicts(user_id, ResolutionStatus.PENDING)
        assert [c.id for c in stored] == [conflict.id]

    async def test_detect_writes_no_audit_entry(self, detector, store, operation):
        """Detection alone produces no audit trail entry."""
        await detector.detect(operation, {"stage": "New"}, {"stage": "Won"})

        assert await store.list_audit_entries() == []

    async def test_detect_uses_configured_window(self, store, settings, operation):
        """A wider configured window turns 2 minutes apart into a timestamp conflict."""
        detector = ConflictDetector(
            store, settings.model_copy(update={"CONFLICT_TIMESTAMP_WINDOW_SECONDS": 300.0})
        )

        conflict = await detector.detect(
            operation,
            {"stage": "New", "updated_at": T0},
            {"stage": "Won", "updated_at": T0_PLUS_2M},
        )

        assert conflict.conflict_type == ConflictType.TIMESTAMP_CONFLICT

    async def test_detect_stores_datetimes_as_strings(self, detector, operation):
        """Snapshots with datetime values are stored JSON-safe."""
        updated = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)

        conflict = await detector.detect(
            operation,
            {"stage": "New", "updated_at": updated},
            {"stage": "Won", "updated_at": updated},
        )

        assert isinstance(conflict.local_data["updated_at"], str)
        assert parse_timestamp(conflict.local_data["updated_at"]) == updated
