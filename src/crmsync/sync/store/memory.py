"""In-memory sync store for tests and local runs.

Keeps every table in a plain dict keyed by string ID. An asyncio.Lock guards
the read-modify-write methods so concurrent tasks on the same event loop see
the same linearised behaviour as the row locks in PostgresSyncStore.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Any

from src.crmsync.sync.errors import (
    ConflictNotFoundError,
    EntityNotFoundError,
    OperationCompletedError,
    OperationInProgressError,
    OperationNotFoundError,
    StaleEntityError,
    SyncValidationError,
)
from src.crmsync.sync.schemas import (
    AuditEntryCreate,
    AuditEntryRead,
    EntitySnapshot,
    OperationStatus,
    ResolutionStatus,
    SyncConflictRead,
    SyncOperationCreate,
    SyncOperationRead,
    UserSyncPreferencesRead,
)
from src.crmsync.sync.store.base import (
    SyncStore,
    check_entity_fields,
    claim_is_live,
    leaves_completed,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySyncStore(SyncStore):
    """SyncStore backed by process-local dicts.

    Records are stored as Pydantic models and deep-copied on the way in and
    out, so callers can never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._operations: dict[str, SyncOperationRead] = {}
        self._conflicts: dict[str, SyncConflictRead] = {}
        self._preferences: dict[tuple[str, str], UserSyncPreferencesRead] = {}
        self._audit: list[tuple[int, AuditEntryRead]] = []
        self._entities: dict[str, dict[str, EntitySnapshot]] = {
            "account": {},
            "analysis": {},
        }
        # Insertion sequence breaks ties between entries with equal timestamps.
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()

    # ── Operations ──────────────────────────────────────────────────────────

    async def insert_operation(
        self, user_id: str, data: SyncOperationCreate
    ) -> SyncOperationRead:
        operation = SyncOperationRead(
            id=str(uuid.uuid4()),
            user_id=user_id,
            operation_status=OperationStatus.PENDING,
            retry_count=0,
            created_at=_now(),
            **data.model_dump(),
        )
        self._operations[operation.id] = operation
        return operation.model_copy(deep=True)

    async def get_operation(self, operation_id: str) -> SyncOperationRead | None:
        operation = self._operations.get(operation_id)
        return operation.model_copy(deep=True) if operation else None

    async def update_operation(
        self, operation_id: str, fields: dict[str, Any]
    ) -> SyncOperationRead:
        async with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(operation_id)
            if leaves_completed(operation.operation_status, fields):
                raise OperationCompletedError(operation_id)
            updated = operation.model_copy(update=copy.deepcopy(fields), deep=True)
            self._operations[operation_id] = updated
            return updated.model_copy(deep=True)

    async def claim_operation(
        self, operation_id: str, stale_after_seconds: float
    ) -> SyncOperationRead:
        async with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(operation_id)
            if operation.operation_status == OperationStatus.COMPLETED:
                return operation.model_copy(deep=True)
            now = _now()
            if claim_is_live(operation.claimed_at, stale_after_seconds, now):
                raise OperationInProgressError(operation_id)
            updated = operation.model_copy(
                update={
                    "operation_status": OperationStatus.PENDING,
                    "completed_at": None,
                    "claimed_at": now,
                },
                deep=True,
            )
            self._operations[operation_id] = updated
            return updated.model_copy(deep=True)

    async def record_operation_failure(
        self, operation_id: str, error_message: str
    ) -> SyncOperationRead:
        async with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(operation_id)
            if operation.operation_status == OperationStatus.COMPLETED:
                raise OperationCompletedError(operation_id)
            updated = operation.model_copy(
                update={
                    "operation_status": OperationStatus.FAILED,
                    "error_message": error_message,
                    "retry_count": operation.retry_count + 1,
                    "completed_at": None,
                    "claimed_at": None,
                },
                deep=True,
            )
            self._operations[operation_id] = updated
            return updated.model_copy(deep=True)

    async def list_operations(
        self, user_id: str, status: OperationStatus | None = None
    ) -> list[SyncOperationRead]:
        matches = [
            op
            for op in self._operations.values()
            if op.user_id == user_id and (status is None or op.operation_status == status)
        ]
        matches.sort(key=lambda op: op.created_at or _now(), reverse=True)
        return [op.model_copy(deep=True) for op in matches]

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def insert_conflict(self, data: dict[str, Any]) -> SyncConflictRead:
        conflict = SyncConflictRead(
            id=str(uuid.uuid4()),
            created_at=_now(),
            **copy.deepcopy(data),
        )
        self._conflicts[conflict.id] = conflict
        return conflict.model_copy(deep=True)

    async def get_conflict(self, conflict_id: str) -> SyncConflictRead | None:
        conflict = self._conflicts.get(conflict_id)
        return conflict.model_copy(deep=True) if conflict else None

    async def update_conflict(
        self, conflict_id: str, fields: dict[str, Any]
    ) -> SyncConflictRead:
        async with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise ConflictNotFoundError(conflict_id)
            # Round-trip through validation so enum strings become enums.
            updated = SyncConflictRead.model_validate(
                {**conflict.model_dump(), **copy.deepcopy(fields)}
            )
            self._conflicts[conflict_id] = updated
            return updated.model_copy(deep=True)

    async def list_conflicts(
        self, user_id: str, status: ResolutionStatus | None = None
    ) -> list[SyncConflictRead]:
        matches = [
            c
            for c in self._conflicts.values()
            if c.user_id == user_id and (status is None or c.resolution_status == status)
        ]
        matches.sort(key=lambda c: c.created_at or _now(), reverse=True)
        return [c.model_copy(deep=True) for c in matches]

    # ── Preferences ─────────────────────────────────────────────────────────

    async def get_preferences(
        self, user_id: str, crm_type: str
    ) -> UserSyncPreferencesRead | None:
        prefs = self._preferences.get((user_id, crm_type))
        return prefs.model_copy(deep=True) if prefs else None

    async def upsert_preferences(
        self, user_id: str, crm_type: str, fields: dict[str, Any]
    ) -> UserSyncPreferencesRead:
        async with self._lock:
            key = (user_id, crm_type)
            existing = self._preferences.get(key)
            now = _now()
            if existing is None:
                base: dict[str, Any] = {
                    "id": str(uuid.uuid4()),
                    "user_id": user_id,
                    "crm_type": crm_type,
                    "created_at": now,
                }
            else:
                base = existing.model_dump()
            prefs = UserSyncPreferencesRead.model_validate(
                {**base, **copy.deepcopy(fields), "updated_at": now}
            )
            self._preferences[key] = prefs
            return prefs.model_copy(deep=True)

    # ── Audit Trail ─────────────────────────────────────────────────────────

    async def insert_audit_entry(self, entry: AuditEntryCreate) -> AuditEntryRead:
        stored = AuditEntryRead(
            id=str(uuid.uuid4()),
            performed_at=_now(),
            **copy.deepcopy(entry.model_dump()),
        )
        self._audit.append((next(self._sequence), stored))
        return stored.model_copy(deep=True)

    async def list_audit_entries(
        self,
        *,
        sync_operation_id: str | None = None,
        action_type: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntryRead]:
        matches = [
            (seq, e)
            for seq, e in self._audit
            if (sync_operation_id is None or e.sync_operation_id == sync_operation_id)
            and (action_type is None or e.action_type == action_type)
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        matches.sort(key=lambda item: (item[1].performed_at, item[0]), reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [e.model_copy(deep=True) for _, e in matches]

    # ── Entities ────────────────────────────────────────────────────────────

    async def insert_entity(
        self, entity_type: str, data: dict[str, Any]
    ) -> EntitySnapshot:
        fields = {k: v for k, v in data.items() if k != "user_id"}
        check_entity_fields(entity_type, fields)
        if "user_id" not in data:
            raise SyncValidationError(f"{entity_type} requires a user_id")

        snapshot = EntitySnapshot(
            entity_type=entity_type,
            entity_id=str(uuid.uuid4()),
            version=1,
            data=copy.deepcopy(fields),
        )
        self._entities[entity_type][snapshot.entity_id] = snapshot
        return snapshot.model_copy(deep=True)

    async def get_entity(
        self, entity_type: str, entity_id: str
    ) -> EntitySnapshot | None:
        check_entity_fields(entity_type, {})
        snapshot = self._entities[entity_type].get(entity_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def update_entity(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> EntitySnapshot:
        check_entity_fields(entity_type, fields)
        async with self._lock:
            snapshot = self._entities[entity_type].get(entity_id)
            if snapshot is None:
                raise EntityNotFoundError(entity_type, entity_id)
            if expected_version is not None and snapshot.version != expected_version:
                raise StaleEntityError(entity_type, entity_id, expected_version)

            updated = EntitySnapshot(
                entity_type=entity_type,
                entity_id=entity_id,
                version=snapshot.version + 1,
                data={**snapshot.data, **copy.deepcopy(fields)},
            )
            self._entities[entity_type][entity_id] = updated
            return updated.model_copy(deep=True)
