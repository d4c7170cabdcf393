"""PostgreSQL sync store -- async SQLAlchemy persistence for the sync engine.

Uses the session_factory callable pattern: every method opens its own
session, so no session or transaction spans two store calls. Serialization
between SQLAlchemy models and Pydantic schemas lives in the ``_model_to_*``
helpers.

Entity writes lock the row (SELECT ... FOR UPDATE) and compare the
``version`` column before writing, which linearises concurrent operations
against the same entity. Operations are claimed under the same kind of row
lock, and a completed operation never changes status again.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.sync.errors import (
    ConflictNotFoundError,
    EntityNotFoundError,
    OperationCompletedError,
    OperationInProgressError,
    OperationNotFoundError,
    StaleEntityError,
    SyncValidationError,
)
from src.crmsync.sync.models import (
    AccountModel,
    ConversationAnalysisModel,
    SyncAuditTrailModel,
    SyncConflictModel,
    SyncOperationModel,
    UserSyncPreferencesModel,
)
from src.crmsync.sync.schemas import (
    AuditEntryCreate,
    AuditEntryRead,
    EntitySnapshot,
    FieldConflict,
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

logger = structlog.get_logger(__name__)

_ENTITY_MODELS: dict[str, type[AccountModel] | type[ConversationAnalysisModel]] = {
    "account": AccountModel,
    "analysis": ConversationAnalysisModel,
}

# Columns holding user ids on each table, converted between str and UUID.
_UUID_FIELDS = frozenset({"user_id", "resolved_by", "performed_by", "sync_operation_id"})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _as_uuid(value: str | None) -> uuid.UUID | None:
    """Parse a UUID string, returning None for missing or malformed IDs."""
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _require_uuid(value: Any, field: str) -> uuid.UUID:
    """Parse a required UUID column value.

    Raises:
        SyncValidationError: The value is missing or not a UUID.
    """
    parsed = _as_uuid(value)
    if parsed is None:
        raise SyncValidationError(f"{field} must be a UUID, got {value!r}")
    return parsed


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert schema values (enums, string ids) to column values."""
    columns: dict[str, Any] = {}
    for key, value in fields.items():
        if key in _UUID_FIELDS and value is not None:
            value = _require_uuid(value, key)
        elif hasattr(value, "value"):
            value = value.value
        elif key == "field_conflicts" and isinstance(value, dict):
            value = {
                name: (fc.model_dump(mode="json") if isinstance(fc, FieldConflict) else fc)
                for name, fc in value.items()
            }
        columns[key] = value
    return columns


def _model_to_operation(model: SyncOperationModel) -> SyncOperationRead:
    """Convert SyncOperationModel to SyncOperationRead schema."""
    return SyncOperationRead(
        id=str(model.id),
        user_id=str(model.user_id),
        sync_type=model.sync_type,
        operation_type=model.operation_type,
        source_system=model.source_system,
        source_record_id=model.source_record_id,
        target_system=model.target_system,
        target_record_id=model.target_record_id,
        operation_status=model.operation_status,
        sync_data=model.sync_data or {},
        conflict_data=model.conflict_data,
        resolution_strategy=model.resolution_strategy,
        resolved_by=_str_or_none(model.resolved_by),
        resolved_at=model.resolved_at,
        error_message=model.error_message,
        retry_count=model.retry_count or 0,
        created_at=model.created_at,
        completed_at=model.completed_at,
        claimed_at=model.claimed_at,
    )


def _model_to_conflict(model: SyncConflictModel) -> SyncConflictRead:
    """Convert SyncConflictModel to SyncConflictRead schema."""
    return SyncConflictRead(
        id=str(model.id),
        sync_operation_id=str(model.sync_operation_id),
        user_id=str(model.user_id),
        conflict_type=model.conflict_type,
        local_data=model.local_data or {},
        remote_data=model.remote_data or {},
        field_conflicts=model.field_conflicts or {},
        resolution_status=model.resolution_status,
        resolution_data=model.resolution_data,
        resolved_by=_str_or_none(model.resolved_by),
        resolved_at=model.resolved_at,
        created_at=model.created_at,
    )


def _model_to_preferences(model: UserSyncPreferencesModel) -> UserSyncPreferencesRead:
    """Convert UserSyncPreferencesModel to UserSyncPreferencesRead schema."""
    return UserSyncPreferencesRead(
        id=str(model.id),
        user_id=str(model.user_id),
        crm_type=model.crm_type,
        sync_direction=model.sync_direction,
        auto_resolve_conflicts=bool(model.auto_resolve_conflicts),
        preferred_resolution_strategy=model.preferred_resolution_strategy,
        sync_frequency_minutes=model.sync_frequency_minutes,
        enabled=bool(model.enabled),
        sync_settings=model.sync_settings or {},
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_audit_entry(model: SyncAuditTrailModel) -> AuditEntryRead:
    """Convert SyncAuditTrailModel to AuditEntryRead schema."""
    return AuditEntryRead(
        id=str(model.id),
        user_id=str(model.user_id),
        sync_operation_id=_str_or_none(model.sync_operation_id),
        action_type=model.action_type,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        before_data=model.before_data,
        after_data=model.after_data,
        metadata=model.metadata_json or {},
        performed_by=_str_or_none(model.performed_by),
        performed_at=model.performed_at,
    )


def _model_to_snapshot(
    entity_type: str, model: AccountModel | ConversationAnalysisModel
) -> EntitySnapshot:
    """Convert an entity row to an EntitySnapshot of its writable columns."""
    if isinstance(model, AccountModel):
        data = {
            "account_name": model.account_name,
            "deal_stage": model.deal_stage,
            "notes": model.notes,
        }
    else:
        data = {
            "recommendations": model.recommendations or {},
            "heat_level": model.heat_level,
        }
    return EntitySnapshot(
        entity_type=entity_type,
        entity_id=str(model.id),
        version=model.version or 1,
        data=data,
    )


# ── Store ───────────────────────────────────────────────────────────────────


class PostgresSyncStore(SyncStore):
    """SyncStore backed by PostgreSQL through async SQLAlchemy sessions.

    Args:
        session_factory: Async callable that yields AsyncSession instances
            (``src.crmsync.core.database.get_session`` in production).
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Operations ──────────────────────────────────────────────────────────

    async def insert_operation(
        self, user_id: str, data: SyncOperationCreate
    ) -> SyncOperationRead:
        async for session in self._session_factory():
            model = SyncOperationModel(
                user_id=_require_uuid(user_id, "user_id"),
                sync_type=data.sync_type.value,
                operation_type=data.operation_type,
                source_system=data.source_system,
                source_record_id=data.source_record_id,
                target_system=data.target_system,
                target_record_id=data.target_record_id,
                operation_status=OperationStatus.PENDING.value,
                sync_data=data.sync_data,
                conflict_data=data.conflict_data,
                resolution_strategy=(
                    data.resolution_strategy.value if data.resolution_strategy else None
                ),
                retry_count=0,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_operation(model)

    async def get_operation(self, operation_id: str) -> SyncOperationRead | None:
        op_uuid = _as_uuid(operation_id)
        if op_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(SyncOperationModel).where(SyncOperationModel.id == op_uuid)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_operation(model)

    async def update_operation(
        self, operation_id: str, fields: dict[str, Any]
    ) -> SyncOperationRead:
        async for session in self._session_factory():
            model = await self._lock_operation(session, operation_id)
            if leaves_completed(model.operation_status, fields):
                raise OperationCompletedError(operation_id)
            for key, value in _to_columns(fields).items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_operation(model)

    async def claim_operation(
        self, operation_id: str, stale_after_seconds: float
    ) -> SyncOperationRead:
        async for session in self._session_factory():
            model = await self._lock_operation(session, operation_id)
            if model.operation_status == OperationStatus.COMPLETED.value:
                return _model_to_operation(model)

            now = datetime.now(timezone.utc)
            if claim_is_live(model.claimed_at, stale_after_seconds, now):
                logger.info(
                    "sync_store.operation_in_progress",
                    operation_id=operation_id,
                    claimed_at=model.claimed_at.isoformat(),
                )
                raise OperationInProgressError(operation_id)

            model.operation_status = OperationStatus.PENDING.value
            model.completed_at = None
            model.claimed_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_operation(model)

    async def record_operation_failure(
        self, operation_id: str, error_message: str
    ) -> SyncOperationRead:
        async for session in self._session_factory():
            model = await self._lock_operation(session, operation_id)
            if model.operation_status == OperationStatus.COMPLETED.value:
                raise OperationCompletedError(operation_id)
            model.operation_status = OperationStatus.FAILED.value
            model.error_message = error_message
            model.retry_count = (model.retry_count or 0) + 1
            model.completed_at = None
            model.claimed_at = None
            await session.commit()
            await session.refresh(model)
            return _model_to_operation(model)

    async def list_operations(
        self, user_id: str, status: OperationStatus | None = None
    ) -> list[SyncOperationRead]:
        async for session in self._session_factory():
            stmt = select(SyncOperationModel).where(
                SyncOperationModel.user_id == _require_uuid(user_id, "user_id"),
            )
            if status is not None:
                stmt = stmt.where(SyncOperationModel.operation_status == status.value)
            stmt = stmt.order_by(SyncOperationModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_operation(m) for m in result.scalars().all()]

    async def _lock_operation(
        self, session: AsyncSession, operation_id: str
    ) -> SyncOperationModel:
        op_uuid = _as_uuid(operation_id)
        if op_uuid is None:
            raise OperationNotFoundError(operation_id)
        stmt = (
            select(SyncOperationModel)
            .where(SyncOperationModel.id == op_uuid)
            .with_for_update()
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise OperationNotFoundError(operation_id)
        return model

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def insert_conflict(self, data: dict[str, Any]) -> SyncConflictRead:
        async for session in self._session_factory():
            model = SyncConflictModel(**_to_columns(data))
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_conflict(model)

    async def get_conflict(self, conflict_id: str) -> SyncConflictRead | None:
        conflict_uuid = _as_uuid(conflict_id)
        if conflict_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(SyncConflictModel).where(SyncConflictModel.id == conflict_uuid)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_conflict(model)

    async def update_conflict(
        self, conflict_id: str, fields: dict[str, Any]
    ) -> SyncConflictRead:
        conflict_uuid = _as_uuid(conflict_id)
        if conflict_uuid is None:
            raise ConflictNotFoundError(conflict_id)
        async for session in self._session_factory():
            stmt = (
                select(SyncConflictModel)
                .where(SyncConflictModel.id == conflict_uuid)
                .with_for_update()
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise ConflictNotFoundError(conflict_id)
            for key, value in _to_columns(fields).items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_conflict(model)

    async def list_conflicts(
        self, user_id: str, status: ResolutionStatus | None = None
    ) -> list[SyncConflictRead]:
        async for session in self._session_factory():
            stmt = select(SyncConflictModel).where(
                SyncConflictModel.user_id == _require_uuid(user_id, "user_id"),
            )
            if status is not None:
                stmt = stmt.where(SyncConflictModel.resolution_status == status.value)
            stmt = stmt.order_by(SyncConflictModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_conflict(m) for m in result.scalars().all()]

    # ── Preferences ─────────────────────────────────────────────────────────

    async def get_preferences(
        self, user_id: str, crm_type: str
    ) -> UserSyncPreferencesRead | None:
        async for session in self._session_factory():
            stmt = select(UserSyncPreferencesModel).where(
                UserSyncPreferencesModel.user_id == _require_uuid(user_id, "user_id"),
                UserSyncPreferencesModel.crm_type == crm_type,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_preferences(model)

    async def upsert_preferences(
        self, user_id: str, crm_type: str, fields: dict[str, Any]
    ) -> UserSyncPreferencesRead:
        async for session in self._session_factory():
            stmt = (
                select(UserSyncPreferencesModel)
                .where(
                    UserSyncPreferencesModel.user_id == _require_uuid(user_id, "user_id"),
                    UserSyncPreferencesModel.crm_type == crm_type,
                )
                .with_for_update()
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()

            columns = _to_columns(fields)
            if model is None:
                model = UserSyncPreferencesModel(
                    user_id=_require_uuid(user_id, "user_id"),
                    crm_type=crm_type,
                    **columns,
                )
                session.add(model)
            else:
                for key, value in columns.items():
                    setattr(model, key, value)
                model.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return _model_to_preferences(model)

    # ── Audit Trail ─────────────────────────────────────────────────────────

    async def insert_audit_entry(self, entry: AuditEntryCreate) -> AuditEntryRead:
        async for session in self._session_factory():
            model = SyncAuditTrailModel(
                user_id=_require_uuid(entry.user_id, "user_id"),
                sync_operation_id=_as_uuid(entry.sync_operation_id),
                action_type=entry.action_type.value,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                before_data=entry.before_data,
                after_data=entry.after_data,
                metadata_json=entry.metadata,
                performed_by=_as_uuid(entry.performed_by),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_audit_entry(model)

    async def list_audit_entries(
        self,
        *,
        sync_operation_id: str | None = None,
        action_type: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntryRead]:
        async for session in self._session_factory():
            stmt = select(SyncAuditTrailModel)
            if sync_operation_id is not None:
                op_uuid = _as_uuid(sync_operation_id)
                if op_uuid is None:
                    return []
                stmt = stmt.where(SyncAuditTrailModel.sync_operation_id == op_uuid)
            if action_type is not None:
                stmt = stmt.where(SyncAuditTrailModel.action_type == str(action_type))
            if entity_type is not None:
                stmt = stmt.where(SyncAuditTrailModel.entity_type == entity_type)
            if entity_id is not None:
                stmt = stmt.where(SyncAuditTrailModel.entity_id == entity_id)
            stmt = stmt.order_by(SyncAuditTrailModel.performed_at.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_model_to_audit_entry(m) for m in result.scalars().all()]

    # ── Entities ────────────────────────────────────────────────────────────

    async def insert_entity(
        self, entity_type: str, data: dict[str, Any]
    ) -> EntitySnapshot:
        fields = {k: v for k, v in data.items() if k != "user_id"}
        check_entity_fields(entity_type, fields)
        if "user_id" not in data:
            raise SyncValidationError(f"{entity_type} requires a user_id")

        model_cls = _ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            model = model_cls(user_id=_require_uuid(data["user_id"], "user_id"), **fields)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_snapshot(entity_type, model)

    async def get_entity(
        self, entity_type: str, entity_id: str
    ) -> EntitySnapshot | None:
        check_entity_fields(entity_type, {})
        entity_uuid = _as_uuid(entity_id)
        if entity_uuid is None:
            return None

        model_cls = _ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            stmt = select(model_cls).where(model_cls.id == entity_uuid)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_snapshot(entity_type, model)

    async def update_entity(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> EntitySnapshot:
        check_entity_fields(entity_type, fields)
        entity_uuid = _as_uuid(entity_id)
        if entity_uuid is None:
            raise EntityNotFoundError(entity_type, entity_id)

        model_cls = _ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            stmt = select(model_cls).where(model_cls.id == entity_uuid).with_for_update()
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise EntityNotFoundError(entity_type, entity_id)

            if expected_version is not None and model.version != expected_version:
                logger.warning(
                    "sync_store.stale_entity",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    expected_version=expected_version,
                    actual_version=model.version,
                )
                raise StaleEntityError(entity_type, entity_id, expected_version)

            for key, value in fields.items():
                setattr(model, key, value)
            model.version = (model.version or 1) + 1
            model.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return _model_to_snapshot(entity_type, model)
