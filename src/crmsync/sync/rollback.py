"""Rollback coordinator -- restores pre-operation entity state from the audit trail.

Rollback reads the newest ``sync_completed`` entry for an operation and writes
its ``before_data`` back onto the entity. It never replays or inverts handler
logic, never touches the operation's own status and leaves conflicts as they
are. The restoration itself is audited as ``sync_rollback``.
"""

from __future__ import annotations

import structlog

from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.errors import (
    EntityNotFoundError,
    OperationNotFoundError,
    UnknownEntityTypeError,
)
from src.crmsync.sync.schemas import (
    AuditAction,
    AuditEntryCreate,
    AuditEntryRead,
    RollbackResult,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)

# Audit entity types mapped to the store entity they restore into.
RESTORABLE_ENTITIES: dict[str, str] = {
    "account": "account",
    "deal": "account",
    "analysis": "analysis",
}


class RollbackCoordinator:
    """Undo the effect of a completed operation.

    Args:
        store: Persistence backend.
        audit: Audit trail to read snapshots from and write sync_rollback to.
    """

    def __init__(self, store: SyncStore, audit: AuditTrail) -> None:
        self._store = store
        self._audit = audit

    async def rollback(
        self, operation_id: str, performed_by: str | None = None
    ) -> RollbackResult:
        """Restore the entity touched by an operation to its prior state.

        An operation with no sync_completed entry has nothing to undo; the
        result then has restored=False and nothing is written.

        Raises:
            OperationNotFoundError: Unknown operation ID.
            UnknownEntityTypeError: The entry names an entity with no restorer.
            EntityNotFoundError: The entity to restore no longer exists.
        """
        operation = await self._store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)

        entry = await self._audit.latest(operation_id, AuditAction.SYNC_COMPLETED)
        if entry is None:
            logger.info("sync.rollback_nothing_to_restore", operation_id=operation_id)
            return RollbackResult(operation_id=operation_id)

        restored = False
        if entry.before_data and entry.entity_id:
            await self._restore(entry)
            restored = True

        audit_result = await self._audit.record(
            AuditEntryCreate(
                user_id=operation.user_id,
                sync_operation_id=operation_id,
                action_type=AuditAction.SYNC_ROLLBACK,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                before_data=entry.after_data,
                after_data=entry.before_data,
                metadata={
                    "rollback_reason": "manual_rollback",
                    "rolled_back_entry_id": entry.id,
                    "restored": restored,
                },
                performed_by=performed_by,
            )
        )
        logger.info(
            "sync.rollback_completed",
            operation_id=operation_id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            restored=restored,
        )
        return RollbackResult(
            operation_id=operation_id,
            restored=restored,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            audit=audit_result,
        )

    async def _restore(self, entry: AuditEntryRead) -> None:
        store_type = RESTORABLE_ENTITIES.get(entry.entity_type)
        if store_type is None:
            raise UnknownEntityTypeError(entry.entity_type)

        current = await self._store.get_entity(store_type, entry.entity_id)
        if current is None:
            raise EntityNotFoundError(store_type, entry.entity_id)

        await self._store.update_entity(
            store_type,
            entry.entity_id,
            dict(entry.before_data or {}),
            expected_version=current.version,
        )
