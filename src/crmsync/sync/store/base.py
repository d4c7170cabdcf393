"""Sync store abstract base class -- the persistence contract every component uses.

Every backing store (PostgreSQL via SQLAlchemy, in-memory for tests and local
runs) implements this ABC. Components receive a store instance explicitly;
nothing reaches for a module-level client.

The audit trail is append-only: the contract exposes insert and query for
audit entries, never update or delete.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from src.crmsync.sync.errors import SyncValidationError
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

# Entity types the store can read and write, with the columns a sync may write.
ENTITY_WRITABLE_FIELDS: dict[str, frozenset[str]] = {
    "account": frozenset({"account_name", "deal_stage", "notes"}),
    "analysis": frozenset({"recommendations", "heat_level"}),
}


def check_entity_fields(entity_type: str, fields: dict[str, Any]) -> None:
    """Reject unknown entity types and fields that are not writable columns."""
    writable = ENTITY_WRITABLE_FIELDS.get(entity_type)
    if writable is None:
        raise SyncValidationError(f"Unsupported entity type: {entity_type}")
    unknown = sorted(set(fields) - writable)
    if unknown:
        raise SyncValidationError(
            f"Fields not writable on {entity_type}: {', '.join(unknown)}"
        )


def leaves_completed(current: OperationStatus | str, fields: dict[str, Any]) -> bool:
    """True when ``fields`` would move a completed operation to another status."""
    if OperationStatus(current) != OperationStatus.COMPLETED:
        return False
    if "operation_status" not in fields:
        return False
    return OperationStatus(fields["operation_status"]) != OperationStatus.COMPLETED


def claim_is_live(
    claimed_at: datetime | None, stale_after_seconds: float, now: datetime
) -> bool:
    """True when a claim exists and is younger than ``stale_after_seconds``."""
    if claimed_at is None:
        return False
    if claimed_at.tzinfo is None:
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)
    return (now - claimed_at).total_seconds() < stale_after_seconds


class SyncStore(ABC):
    """Abstract interface for sync engine persistence.

    Methods:
        insert_operation / get_operation / update_operation / list_operations
        claim_operation: Atomically take an operation for one execution.
        record_operation_failure: Mark failed and atomically increment retry_count.
        insert_conflict / get_conflict / update_conflict / list_conflicts
        get_preferences / upsert_preferences
        insert_audit_entry / list_audit_entries
        insert_entity / get_entity / update_entity: Synced entity rows with
            optimistic version checks.
    """

    # ── Operations ──────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_operation(
        self, user_id: str, data: SyncOperationCreate
    ) -> SyncOperationRead:
        """Persist a new pending operation with retry_count 0."""
        ...

    @abstractmethod
    async def get_operation(self, operation_id: str) -> SyncOperationRead | None:
        """Fetch an operation by ID."""
        ...

    @abstractmethod
    async def update_operation(
        self, operation_id: str, fields: dict[str, Any]
    ) -> SyncOperationRead:
        """Overwrite the given operation fields, return the updated operation.

        Raises:
            OperationCompletedError: The operation is completed and fields
                would change its status.
        """
        ...

    @abstractmethod
    async def claim_operation(
        self, operation_id: str, stale_after_seconds: float
    ) -> SyncOperationRead:
        """Atomically take the operation for one execution attempt.

        Sets status pending, clears completed_at and stamps claimed_at. A
        completed operation is returned unchanged without a claim. A claim
        older than ``stale_after_seconds`` is taken over.

        Raises:
            OperationNotFoundError: Unknown operation ID.
            OperationInProgressError: Another execution holds a live claim.
        """
        ...

    @abstractmethod
    async def record_operation_failure(
        self, operation_id: str, error_message: str
    ) -> SyncOperationRead:
        """Set status failed, store the message, increment retry_count by one.

        Releases the claim.

        Raises:
            OperationCompletedError: The operation is already completed.
        """
        ...

    @abstractmethod
    async def list_operations(
        self, user_id: str, status: OperationStatus | None = None
    ) -> list[SyncOperationRead]:
        """List a user's operations, newest first."""
        ...

    # ── Conflicts ───────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_conflict(self, data: dict[str, Any]) -> SyncConflictRead:
        """Persist a new conflict row."""
        ...

    @abstractmethod
    async def get_conflict(self, conflict_id: str) -> SyncConflictRead | None:
        """Fetch a conflict by ID."""
        ...

    @abstractmethod
    async def update_conflict(
        self, conflict_id: str, fields: dict[str, Any]
    ) -> SyncConflictRead:
        """Overwrite the given conflict fields, return the updated conflict."""
        ...

    @abstractmethod
    async def list_conflicts(
        self, user_id: str, status: ResolutionStatus | None = None
    ) -> list[SyncConflictRead]:
        """List a user's conflicts, newest first."""
        ...

    # ── Preferences ─────────────────────────────────────────────────────────

    @abstractmethod
    async def get_preferences(
        self, user_id: str, crm_type: str
    ) -> UserSyncPreferencesRead | None:
        """Fetch preferences for a (user, CRM) pair."""
        ...

    @abstractmethod
    async def upsert_preferences(
        self, user_id: str, crm_type: str, fields: dict[str, Any]
    ) -> UserSyncPreferencesRead:
        """Insert or update preferences for a (user, CRM) pair."""
        ...

    # ── Audit Trail ─────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_audit_entry(self, entry: AuditEntryCreate) -> AuditEntryRead:
        """Append an audit entry."""
        ...

    @abstractmethod
    async def list_audit_entries(
        self,
        *,
        sync_operation_id: str | None = None,
        action_type: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntryRead]:
        """Query audit entries matching all given filters, newest first."""
        ...

    # ── Entities ────────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_entity(
        self, entity_type: str, data: dict[str, Any]
    ) -> EntitySnapshot:
        """Create a synced entity row (seeding, imports)."""
        ...

    @abstractmethod
    async def get_entity(
        self, entity_type: str, entity_id: str
    ) -> EntitySnapshot | None:
        """Fetch a synced entity row with its current version."""
        ...

    @abstractmethod
    async def update_entity(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> EntitySnapshot:
        """Write entity fields and bump its version.

        Raises:
            EntityNotFoundError: No row with that ID.
            StaleEntityError: expected_version given and the row moved on.
            SyncValidationError: A field is not a writable column.
        """
        ...
