"""Audit trail -- append-only before/after record of every sync action.

Audit writes are best-effort: a failure is logged and reported back in an
AuditWriteResult, never raised, so a missing audit entry cannot fail the
operation it describes.
"""

from __future__ import annotations

import structlog

from src.crmsync.sync.schemas import (
    AuditAction,
    AuditEntryCreate,
    AuditEntryRead,
    AuditWriteResult,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)


class AuditTrail:
    """Append and query audit entries through a SyncStore.

    Args:
        store: Persistence backend.
    """

    def __init__(self, store: SyncStore) -> None:
        self._store = store

    async def record(self, entry: AuditEntryCreate) -> AuditWriteResult:
        """Append an entry. Never raises.

        Returns:
            AuditWriteResult with ok=True and the stored entry, or ok=False
            and the error message if the write failed.
        """
        try:
            stored = await self._store.insert_audit_entry(entry)
        except Exception as exc:
            logger.warning(
                "audit.write_failed",
                action_type=entry.action_type.value,
                sync_operation_id=entry.sync_operation_id,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                error=str(exc),
            )
            return AuditWriteResult(
                ok=False, action_type=entry.action_type, error=str(exc)
            )

        logger.debug(
            "audit.recorded",
            action_type=entry.action_type.value,
            sync_operation_id=entry.sync_operation_id,
            entry_id=stored.id,
        )
        return AuditWriteResult(ok=True, action_type=entry.action_type, entry=stored)

    async def latest(
        self, sync_operation_id: str, action_type: AuditAction
    ) -> AuditEntryRead | None:
        """Most recent entry of one action type for an operation."""
        entries = await self._store.list_audit_entries(
            sync_operation_id=sync_operation_id,
            action_type=action_type.value,
            limit=1,
        )
        return entries[0] if entries else None

    async def history(
        self,
        *,
        sync_operation_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action_type: AuditAction | None = None,
        limit: int | None = None,
    ) -> list[AuditEntryRead]:
        """Entries matching all given filters, newest first."""
        return await self._store.list_audit_entries(
            sync_operation_id=sync_operation_id,
            action_type=action_type.value if action_type else None,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
        )
