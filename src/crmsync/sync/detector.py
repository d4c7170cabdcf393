"""Conflict detection between a local and a remote record snapshot.

Field comparison is by canonical JSON serialisation, so nested dicts compare
structurally and key order is irrelevant. Integral floats compare equal to
the matching int, so 100 and 100.0 are the same value. Bookkeeping fields
(``id``, ``created_at``, ``updated_at``) never count as conflicts.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.schemas import (
    ConflictType,
    FieldConflict,
    FieldConflictType,
    ResolutionStatus,
    SyncConflictRead,
    SyncOperationRead,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)

IGNORED_FIELDS = frozenset({"id", "created_at", "updated_at"})

_MISSING = object()


def _normalize(value: Any) -> Any:
    """Integral floats become ints, recursing into dicts and lists."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def _canonical(value: Any) -> str:
    if value is _MISSING:
        return "<missing>"
    return json.dumps(_normalize(value), sort_keys=True, default=str)


def _jsonable(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Snapshot with non-JSON values (datetimes, UUIDs) rendered as strings."""
    return json.loads(json.dumps(snapshot, default=str))


def _kind(value: Any) -> str:
    # bool is checked first since it is a subclass of int.
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, dict)):
        return "object"
    return "other"


def _field_conflict_type(local: Any, remote: Any) -> FieldConflictType:
    if local is _MISSING or local is None:
        return FieldConflictType.MISSING_LOCAL
    if remote is _MISSING or remote is None:
        return FieldConflictType.MISSING_REMOTE
    if _kind(local) != _kind(remote):
        return FieldConflictType.TYPE_MISMATCH
    return FieldConflictType.VALUE_MISMATCH


def find_field_conflicts(
    local: dict[str, Any], remote: dict[str, Any]
) -> dict[str, FieldConflict]:
    """Compare two snapshots field by field.

    Returns:
        Mapping of field name to FieldConflict for every non-bookkeeping
        field whose values differ. An absent key differs from an explicit None.
    """
    conflicts: dict[str, FieldConflict] = {}
    for field in sorted(set(local) | set(remote)):
        if field in IGNORED_FIELDS:
            continue
        local_value = local.get(field, _MISSING)
        remote_value = remote.get(field, _MISSING)
        if _canonical(local_value) == _canonical(remote_value):
            continue
        conflicts[field] = FieldConflict(
            local=None if local_value is _MISSING else local_value,
            remote=None if remote_value is _MISSING else remote_value,
            type=_field_conflict_type(local_value, remote_value),
        )
    return conflicts


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a datetime, ISO-8601 string or epoch milliseconds.

    Numbers are read as milliseconds since the epoch in UTC. Returns None if
    the value is absent or unparseable.
    """
    if isinstance(value, datetime):
        return value
    # bool is an int subclass but never a timestamp.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value:
        return None
    try:
        # fromisoformat before 3.11 rejects a trailing "Z".
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def classify_conflict(
    local: dict[str, Any],
    remote: dict[str, Any],
    window_seconds: float = 60.0,
) -> ConflictType:
    """Record-level conflict type.

    ``timestamp_conflict`` when both sides carry an ``updated_at`` strictly
    less than ``window_seconds`` apart, otherwise ``data_mismatch``.
    """
    local_ts = parse_timestamp(local.get("updated_at"))
    remote_ts = parse_timestamp(remote.get("updated_at"))
    if local_ts is None or remote_ts is None:
        return ConflictType.DATA_MISMATCH
    try:
        delta = abs((local_ts - remote_ts).total_seconds())
    except TypeError:
        # Naive vs aware datetimes cannot be compared.
        return ConflictType.DATA_MISMATCH
    if delta < window_seconds:
        return ConflictType.TIMESTAMP_CONFLICT
    return ConflictType.DATA_MISMATCH


class ConflictDetector:
    """Detects conflicts for an operation and records them as pending.

    Args:
        store: Persistence backend.
        settings: Optional settings; defaults to get_settings().
    """

    def __init__(self, store: SyncStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    async def detect(
        self,
        operation: SyncOperationRead,
        local: dict[str, Any],
        remote: dict[str, Any],
    ) -> SyncConflictRead | None:
        """Compare snapshots and persist a pending conflict if they differ.

        Returns:
            The stored SyncConflictRead, or None when the snapshots agree.
        """
        field_conflicts = find_field_conflicts(local, remote)
        if not field_conflicts:
            return None

        conflict_type = classify_conflict(
            local, remote, self._settings.CONFLICT_TIMESTAMP_WINDOW_SECONDS
        )
        conflict = await self._store.insert_conflict(
            {
                "sync_operation_id": operation.id,
                "user_id": operation.user_id,
                "conflict_type": conflict_type,
                "local_data": _jsonable(local),
                "remote_data": _jsonable(remote),
                "field_conflicts": field_conflicts,
                "resolution_status": ResolutionStatus.PENDING,
            }
        )
        logger.info(
            "sync.conflict_detected",
            conflict_id=conflict.id,
            sync_operation_id=operation.id,
            conflict_type=conflict_type.value,
            fields=sorted(field_conflicts),
        )
        return conflict
