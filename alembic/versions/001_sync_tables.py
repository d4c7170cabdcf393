"""Create sync engine tables.

Revision ID: 001_sync_tables
Revises:
Create Date: 2026-10-17

Creates the four sync tables and the two synced entity tables:
- sync_operations: Units of propagation work between systems
- sync_conflicts: Field-level disagreements, tied to an operation
- user_sync_preferences: Per-user, per-CRM sync configuration
- sync_audit_trail: Append-only before/after snapshots
- accounts: Deal/account records written by deal_update
- conversation_analysis: Analyses written by analysis_update

No foreign key constraints (application-level references, conflicts and
audit entries outlive their operations).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # ── sync_operations table ───────────────────────────────────────────

    op.create_table(
        "sync_operations",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("sync_type", sa.String(30), nullable=False),
        sa.Column("operation_type", sa.String(100), nullable=False),
        sa.Column("source_system", sa.String(100), nullable=False),
        sa.Column("source_record_id", sa.String(200), nullable=True),
        sa.Column("target_system", sa.String(100), nullable=False),
        sa.Column("target_record_id", sa.String(200), nullable=True),
        sa.Column(
            "operation_status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column(
            "sync_data",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column("conflict_data", sa.JSON(), nullable=True),
        sa.Column("resolution_strategy", sa.String(30), nullable=True),
        sa.Column("resolved_by", UUID(as_uuid=True), nullable=True),
        _timestamp("resolved_at", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "retry_count",
            sa.Integer(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("completed_at", nullable=True),
        _timestamp("claimed_at", nullable=True),
        sa.CheckConstraint(
            "(operation_status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_sync_operations_completed_at",
        ),
    )
    op.create_index(
        "idx_sync_operations_user_status",
        "sync_operations",
        ["user_id", "operation_status"],
    )
    op.create_index(
        "idx_sync_operations_source_target",
        "sync_operations",
        ["source_system", "target_system"],
    )

    # ── sync_conflicts table ────────────────────────────────────────────

    op.create_table(
        "sync_conflicts",
        _id_column(),
        sa.Column("sync_operation_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("conflict_type", sa.String(30), nullable=False),
        sa.Column("local_data", sa.JSON(), nullable=False),
        sa.Column("remote_data", sa.JSON(), nullable=False),
        sa.Column("field_conflicts", sa.JSON(), nullable=False),
        sa.Column(
            "resolution_status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("resolution_data", sa.JSON(), nullable=True),
        sa.Column("resolved_by", UUID(as_uuid=True), nullable=True),
        _timestamp("resolved_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_sync_conflicts_user_status",
        "sync_conflicts",
        ["user_id", "resolution_status"],
    )

    # ── user_sync_preferences table ─────────────────────────────────────

    op.create_table(
        "user_sync_preferences",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("crm_type", sa.String(50), nullable=False),
        sa.Column(
            "sync_direction",
            sa.String(20),
            server_default=sa.text("'bidirectional'"),
            nullable=False,
        ),
        sa.Column(
            "auto_resolve_conflicts",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column(
            "preferred_resolution_strategy",
            sa.String(30),
            server_default=sa.text("'timestamp'"),
            nullable=False,
        ),
        sa.Column(
            "sync_frequency_minutes",
            sa.Integer(),
            server_default=sa.text("15"),
            nullable=False,
        ),
        sa.Column(
            "enabled",
            sa.Boolean(),
            server_default=sa.text("true"),
            nullable=False,
        ),
        sa.Column(
            "sync_settings",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "user_id", "crm_type", name="uq_user_sync_preferences_user_crm"
        ),
    )

    # ── sync_audit_trail table ──────────────────────────────────────────

    op.create_table(
        "sync_audit_trail",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("sync_operation_id", UUID(as_uuid=True), nullable=True),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(200), nullable=True),
        sa.Column("before_data", sa.JSON(), nullable=True),
        sa.Column("after_data", sa.JSON(), nullable=True),
        sa.Column(
            "metadata",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column("performed_by", UUID(as_uuid=True), nullable=True),
        _timestamp("performed_at"),
    )
    op.create_index(
        "idx_sync_audit_trail_user_entity",
        "sync_audit_trail",
        ["user_id", "entity_type", "entity_id"],
    )
    op.create_index(
        "idx_sync_audit_trail_operation_action",
        "sync_audit_trail",
        ["sync_operation_id", "action_type"],
    )

    # ── accounts table ──────────────────────────────────────────────────

    op.create_table(
        "accounts",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("account_name", sa.String(300), nullable=False),
        sa.Column("deal_stage", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "version",
            sa.Integer(),
            server_default=sa.text("1"),
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True),
    )

    # ── conversation_analysis table ─────────────────────────────────────

    op.create_table(
        "conversation_analysis",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("transcript_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "recommendations",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column("heat_level", sa.String(20), nullable=True),
        sa.Column(
            "version",
            sa.Integer(),
            server_default=sa.text("1"),
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True),
    )


def downgrade() -> None:
    op.drop_table("conversation_analysis")
    op.drop_table("accounts")
    op.drop_index("idx_sync_audit_trail_operation_action", table_name="sync_audit_trail")
    op.drop_index("idx_sync_audit_trail_user_entity", table_name="sync_audit_trail")
    op.drop_table("sync_audit_trail")
    op.drop_table("user_sync_preferences")
    op.drop_index("idx_sync_conflicts_user_status", table_name="sync_conflicts")
    op.drop_table("sync_conflicts")
    op.drop_index("idx_sync_operations_source_target", table_name="sync_operations")
    op.drop_index("idx_sync_operations_user_status", table_name="sync_operations")
    op.drop_table("sync_operations")
