"""Sync engine persistence models.

Four sync tables plus the two local entity tables that handlers write to:
- SyncOperationModel: Units of propagation work
- SyncConflictModel: Detected disagreements, tied to one operation
- UserSyncPreferencesModel: One row per (user, CRM) pair
- SyncAuditTrailModel: Append-only before/after snapshots
- AccountModel: Deal/account records updated by deal_update
- ConversationAnalysisModel: Call analyses updated by analysis_update

Cross-table references (sync_operation_id, entity ids) are application-level;
there is no cross-table transaction. Entity tables carry a ``version``
counter used for optimistic concurrency by PostgresSyncStore.update_entity.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crmsync.core.database import Base


class SyncOperationModel(Base):
    """One attempt to propagate a change between a source and a target system."""

    __tablename__ = "sync_operations"
    __table_args__ = (
        Index("idx_sync_operations_user_status", "user_id", "operation_status"),
        Index("idx_sync_operations_source_target", "source_system", "target_system"),
        CheckConstraint(
            "(operation_status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_sync_operations_completed_at",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(30), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(100), nullable=False)
    source_system: Mapped[str] = mapped_column(String(100), nullable=False)
    source_record_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    target_system: Mapped[str] = mapped_column(String(100), nullable=False)
    target_record_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    operation_status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    sync_data: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    conflict_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resolution_strategy: Mapped[str | None] = mapped_column(String(30), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SyncConflictModel(Base):
    """Field-level disagreement detected while executing an operation.

    Outlives its parent operation for audit purposes.
    """

    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index("idx_sync_conflicts_user_status", "user_id", "resolution_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    sync_operation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    conflict_type: Mapped[str] = mapped_column(String(30), nullable=False)
    local_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    remote_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    field_conflicts: Mapped[dict] = mapped_column(JSON, nullable=False)
    resolution_status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    resolution_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class UserSyncPreferencesModel(Base):
    """Sync configuration for one user against one external CRM."""

    __tablename__ = "user_sync_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "crm_type", name="uq_user_sync_preferences_user_crm"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    crm_type: Mapped[str] = mapped_column(String(50), nullable=False)
    sync_direction: Mapped[str] = mapped_column(
        String(20), default="bidirectional", server_default=text("'bidirectional'")
    )
    auto_resolve_conflicts: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    preferred_resolution_strategy: Mapped[str] = mapped_column(
        String(30), default="timestamp", server_default=text("'timestamp'")
    )
    sync_frequency_minutes: Mapped[int] = mapped_column(
        Integer, default=15, server_default=text("15")
    )
    enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    sync_settings: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class SyncAuditTrailModel(Base):
    """Append-only audit entry. Rows are inserted, never updated or deleted."""

    __tablename__ = "sync_audit_trail"
    __table_args__ = (
        Index("idx_sync_audit_trail_user_entity", "user_id", "entity_type", "entity_id"),
        Index("idx_sync_audit_trail_operation_action", "sync_operation_id", "action_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sync_operation_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    before_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    after_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        "metadata", JSON, default=dict, server_default=text("'{}'::json")
    )
    performed_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class AccountModel(Base):
    """Deal/account record that deal_update operations write to."""

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    account_name: Mapped[str] = mapped_column(String(300), nullable=False)
    deal_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ConversationAnalysisModel(Base):
    """AI analysis of a call transcript; analysis_update merges CRM context in."""

    __tablename__ = "conversation_analysis"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    transcript_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    recommendations: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    heat_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
