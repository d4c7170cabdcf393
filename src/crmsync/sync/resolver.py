"""Conflict resolution strategies.

The merge itself (``merge_snapshots``) is a pure function of the stored
snapshots, the strategy and an optional manual payload, so resolving the same
conflict twice with the same inputs yields the same record.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.detector import parse_timestamp
from src.crmsync.sync.errors import (
    ConflictNotFoundError,
    ManualResolutionRequiredError,
    SyncValidationError,
)
from src.crmsync.sync.schemas import (
    AuditAction,
    AuditEntryCreate,
    AuditWriteResult,
    ResolutionStatus,
    ResolutionStrategy,
    SyncConflictRead,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _record_time(snapshot: dict[str, Any]) -> datetime:
    for key in ("updated_at", "created_at"):
        parsed = parse_timestamp(snapshot.get(key))
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    return _EPOCH


def merge_snapshots(
    local: dict[str, Any],
    remote: dict[str, Any],
    strategy: ResolutionStrategy,
    manual_resolution: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge a local and a remote snapshot into one record.

    Args:
        local: Local (in-product) snapshot.
        remote: Remote (CRM) snapshot.
        strategy: How to merge.
        manual_resolution: Record used verbatim for the manual strategy.

    Returns:
        The resolved record.

    Raises:
        ValueError: manual strategy without a manual_resolution payload.
    """
    if strategy == ResolutionStrategy.TIMESTAMP:
        # Ties favour the remote side.
        if _record_time(local) > _record_time(remote):
            return {**remote, **local}
        return {**local, **remote}
    if strategy == ResolutionStrategy.CRM_PRIORITY:
        return {**local, **remote}
    if strategy == ResolutionStrategy.SW_PRIORITY:
        return {**remote, **local}
    if strategy == ResolutionStrategy.MANUAL:
        if manual_resolution is None:
            raise ValueError("manual strategy requires a resolution payload")
        return dict(manual_resolution)
    raise ValueError(f"Unsupported resolution strategy: {strategy}")


class ConflictResolver:
    """Resolves or ignores stored conflicts and audits the outcome.

    Args:
        store: Persistence backend.
        audit: Audit trail for conflict_resolved / conflict_ignored entries.
    """

    def __init__(self, store: SyncStore, audit: AuditTrail) -> None:
        self._store = store
        self._audit = audit

    async def resolve(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy | str,
        manual_resolution: dict[str, Any] | None = None,
        resolved_by: str | None = None,
    ) -> SyncConflictRead:
        """Resolve a conflict with the given strategy.

        Returns:
            The conflict after resolution (status resolved).

        Raises:
            ConflictNotFoundError: Unknown conflict ID.
            SyncValidationError: Unknown strategy name.
            ManualResolutionRequiredError: manual strategy without payload.
        """
        try:
            strategy = ResolutionStrategy(strategy)
        except ValueError as exc:
            raise SyncValidationError(f"Unknown resolution strategy: {strategy}") from exc

        conflict = await self._store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)

        if strategy == ResolutionStrategy.MANUAL and manual_resolution is None:
            raise ManualResolutionRequiredError(conflict_id)

        resolved_data = merge_snapshots(
            conflict.local_data, conflict.remote_data, strategy, manual_resolution
        )
        updated = await self._store.update_conflict(
            conflict_id,
            {
                "resolution_status": ResolutionStatus.RESOLVED,
                "resolution_data": resolved_data,
                "resolved_by": resolved_by,
                "resolved_at": datetime.now(timezone.utc),
            },
        )

        await self._record(
            updated,
            AuditAction.CONFLICT_RESOLVED,
            before=conflict,
            resolved_by=resolved_by,
            metadata={
                "strategy": strategy.value,
                "resolution_method": (
                    "manual" if strategy == ResolutionStrategy.MANUAL else "automatic"
                ),
            },
        )
        logger.info(
            "sync.conflict_resolved",
            conflict_id=conflict_id,
            strategy=strategy.value,
            fields=sorted(conflict.field_conflicts),
        )
        return updated

    async def ignore(
        self, conflict_id: str, resolved_by: str | None = None
    ) -> SyncConflictRead:
        """Mark a conflict as ignored without producing a resolution."""
        conflict = await self._store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)

        updated = await self._store.update_conflict(
            conflict_id,
            {
                "resolution_status": ResolutionStatus.IGNORED,
                "resolved_by": resolved_by,
            },
        )
        await self._record(
            updated,
            AuditAction.CONFLICT_IGNORED,
            before=conflict,
            resolved_by=resolved_by,
            metadata={},
        )
        logger.info("sync.conflict_ignored", conflict_id=conflict_id)
        return updated

    async def _record(
        self,
        conflict: SyncConflictRead,
        action: AuditAction,
        *,
        before: SyncConflictRead,
        resolved_by: str | None,
        metadata: dict[str, Any],
    ) -> AuditWriteResult:
        return await self._audit.record(
            AuditEntryCreate(
                user_id=conflict.user_id,
                sync_operation_id=conflict.sync_operation_id,
                action_type=action,
                entity_type="sync_conflict",
                entity_id=conflict.id,
                before_data=before.model_dump(mode="json"),
                after_data=conflict.model_dump(mode="json"),
                metadata=metadata,
                performed_by=resolved_by,
            )
        )
