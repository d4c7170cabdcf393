"""Pydantic schemas for the CRM sync engine.

Defines all structured types moving through the engine:
- Enums: SyncType, OperationStatus, OperationType, ConflictType, FieldConflictType,
  ResolutionStatus, ResolutionStrategy, PreferredResolutionStrategy, SyncDirection,
  AuditAction
- Operations: SyncOperationCreate/Read, SyncExecutionResult
- Typed payloads: DealUpdatePayload, ContactSyncPayload, TaskCompletionPayload,
  AnalysisUpdatePayload, joined into the SyncPayload tagged union
- Conflicts: FieldConflict, SyncConflictRead
- Preferences: UserSyncPreferencesRead/Update
- Audit: AuditEntryCreate/Read, AuditWriteResult
- Entities and rollback: EntitySnapshot, HandlerResult, RollbackResult
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncType(str, Enum):
    """Direction a single operation propagates in."""

    CRM_TO_LOCAL = "crm_to_local"
    LOCAL_TO_CRM = "local_to_crm"
    BIDIRECTIONAL = "bidirectional"


class OperationStatus(str, Enum):
    """Lifecycle state of a SyncOperation.

    The executor only moves pending -> completed and pending -> failed.
    CONFLICT is representable for records written by other tools.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"


class OperationType(str, Enum):
    """Operation types that have an entity-specific handler."""

    DEAL_UPDATE = "deal_update"
    CONTACT_SYNC = "contact_sync"
    TASK_COMPLETION = "task_completion"
    ANALYSIS_UPDATE = "analysis_update"


class ConflictType(str, Enum):
    DATA_MISMATCH = "data_mismatch"
    TIMESTAMP_CONFLICT = "timestamp_conflict"
    SCHEMA_CHANGE = "schema_change"


class FieldConflictType(str, Enum):
    MISSING_LOCAL = "missing_local"
    MISSING_REMOTE = "missing_remote"
    TYPE_MISMATCH = "type_mismatch"
    VALUE_MISMATCH = "value_mismatch"


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ResolutionStrategy(str, Enum):
    """How a conflict's local and remote snapshots are merged."""

    TIMESTAMP = "timestamp"
    CRM_PRIORITY = "crm_priority"
    SW_PRIORITY = "sw_priority"
    MANUAL = "manual"


class PreferredResolutionStrategy(str, Enum):
    """Strategies a user may pick for automatic resolution (no manual)."""

    TIMESTAMP = "timestamp"
    CRM_PRIORITY = "crm_priority"
    SW_PRIORITY = "sw_priority"


class SyncDirection(str, Enum):
    TO_CRM = "to_crm"
    FROM_CRM = "from_crm"
    BIDIRECTIONAL = "bidirectional"


class AuditAction(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    SYNC_ROLLBACK = "sync_rollback"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_IGNORED = "conflict_ignored"
    TASK_COMPLETED = "task_completed"


# ── Sync Operation Schemas ──────────────────────────────────────────────────


class SyncOperationCreate(BaseModel):
    """Caller-supplied fields for a new sync operation.

    ``operation_type`` is free-form here; an unrecognised type is accepted at
    creation and rejected when the operation is executed.
    """

    sync_type: SyncType = SyncType.BIDIRECTIONAL
    operation_type: str = Field(min_length=1)
    source_system: str = Field(min_length=1)
    source_record_id: str | None = None
    target_system: str = Field(min_length=1)
    target_record_id: str | None = None
    sync_data: dict[str, Any] = Field(default_factory=dict)
    conflict_data: dict[str, Any] | None = None
    resolution_strategy: ResolutionStrategy | None = None


class SyncOperationRead(BaseModel):
    """Full persisted view of a sync operation."""

    id: str
    user_id: str
    sync_type: SyncType = SyncType.BIDIRECTIONAL
    operation_type: str
    source_system: str
    source_record_id: str | None = None
    target_system: str
    target_record_id: str | None = None
    operation_status: OperationStatus = OperationStatus.PENDING
    sync_data: dict[str, Any] = Field(default_factory=dict)
    conflict_data: dict[str, Any] | None = None
    resolution_strategy: ResolutionStrategy | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    completed_at: datetime | None = None
    # Set while an execution holds the operation, cleared when it finishes.
    claimed_at: datetime | None = None


# ── Typed Payloads ──────────────────────────────────────────────────────────


class DealUpdatePayload(BaseModel):
    """Deal/account fields pushed from a CRM. Only provided keys are written."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["deal_update"] = "deal_update"
    stage: str | None = None
    notes: str | None = None


class ContactSyncPayload(BaseModel):
    """Contact data read from a CRM (read-only sync)."""

    model_config = ConfigDict(extra="allow")

    kind: Literal["contact_sync"] = "contact_sync"
    email: str | None = None
    name: str | None = None


class TaskCompletionPayload(BaseModel):
    """A task marked complete in the CRM."""

    model_config = ConfigDict(extra="allow")

    kind: Literal["task_completion"] = "task_completion"
    task_id: str = Field(min_length=1)


class AnalysisUpdatePayload(BaseModel):
    """CRM context merged into a conversation analysis' recommendations."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["analysis_update"] = "analysis_update"
    recommendations: dict[str, Any] = Field(default_factory=dict)
    crm_data: dict[str, Any] | None = None


SyncPayload = Annotated[
    Union[
        DealUpdatePayload,
        ContactSyncPayload,
        TaskCompletionPayload,
        AnalysisUpdatePayload,
    ],
    Field(discriminator="kind"),
]


# ── Conflict Schemas ────────────────────────────────────────────────────────


class FieldConflict(BaseModel):
    """A single field whose local and remote values disagree."""

    local: Any = None
    remote: Any = None
    type: FieldConflictType


class SyncConflictRead(BaseModel):
    """Persisted conflict between a local and a remote snapshot."""

    id: str
    sync_operation_id: str
    user_id: str
    conflict_type: ConflictType
    local_data: dict[str, Any] = Field(default_factory=dict)
    remote_data: dict[str, Any] = Field(default_factory=dict)
    field_conflicts: dict[str, FieldConflict] = Field(default_factory=dict)
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    resolution_data: dict[str, Any] | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


# ── Preference Schemas ──────────────────────────────────────────────────────


class UserSyncPreferencesRead(BaseModel):
    """Per-user, per-CRM sync configuration.

    ``id`` is None for the defaults returned when no row exists yet.
    """

    id: str | None = None
    user_id: str
    crm_type: str
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    auto_resolve_conflicts: bool = False
    preferred_resolution_strategy: PreferredResolutionStrategy = (
        PreferredResolutionStrategy.TIMESTAMP
    )
    sync_frequency_minutes: int = 15
    enabled: bool = True
    sync_settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UserSyncPreferencesUpdate(BaseModel):
    """Partial preference update -- only set fields are written."""

    sync_direction: SyncDirection | None = None
    auto_resolve_conflicts: bool | None = None
    preferred_resolution_strategy: PreferredResolutionStrategy | None = None
    sync_frequency_minutes: int | None = Field(default=None, ge=1)
    enabled: bool | None = None
    sync_settings: dict[str, Any] | None = None


# ── Audit Schemas ───────────────────────────────────────────────────────────


class AuditEntryCreate(BaseModel):
    """An audit trail entry about to be appended."""

    user_id: str
    sync_operation_id: str | None = None
    action_type: AuditAction
    entity_type: str
    entity_id: str | None = None
    before_data: dict[str, Any] | None = None
    after_data: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    performed_by: str | None = None


class AuditEntryRead(AuditEntryCreate):
    """An immutable, persisted audit trail entry."""

    id: str
    performed_at: datetime | None = None


class AuditWriteResult(BaseModel):
    """Outcome of a best-effort audit write.

    Audit writes never raise; a failed write is reported here instead so
    callers can tell "operation completed, audit missing" apart from success.
    """

    ok: bool
    action_type: AuditAction
    entry: AuditEntryRead | None = None
    error: str | None = None


# ── Entity, Execution and Rollback Schemas ──────────────────────────────────


class EntitySnapshot(BaseModel):
    """Current state of a synced entity row plus its optimistic version."""

    entity_type: str
    entity_id: str
    version: int = 1
    data: dict[str, Any] = Field(default_factory=dict)


class HandlerResult(BaseModel):
    """What an entity-specific handler changed.

    ``before_data`` is None when there is no prior state to restore (read-only
    syncs, log-only effects, or no target record).
    """

    entity_type: str
    entity_id: str | None = None
    before_data: dict[str, Any] | None = None
    after_data: dict[str, Any] | None = None


class SyncExecutionResult(BaseModel):
    """Final operation state plus any audit writes that failed along the way."""

    operation: SyncOperationRead
    audit_failures: list[AuditWriteResult] = Field(default_factory=list)


class RollbackResult(BaseModel):
    """Outcome of rolling back an operation."""

    operation_id: str
    restored: bool = False
    entity_type: str | None = None
    entity_id: str | None = None
    audit: AuditWriteResult | None = None
