"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-05 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

from tenantshield.core.config import EMBED_DIM

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_workspaces_tenant_id", "workspaces", ["tenant_id"])
    op.create_index("ix_workspaces_created_by", "workspaces", ["created_by"])

    op.create_table(
        "posts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("author_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_posts_tenant_id", "posts", ["tenant_id"])
    op.create_index("ix_posts_workspace_id", "posts", ["workspace_id"])
    op.create_index("ix_posts_author_id", "posts", ["author_id"])

    # Workspace children share one shape: tenant, parent workspace, payload.
    for table, columns in (
        (
            "workspace_runs",
            [
                sa.Column("triggered_by", sa.String(), nullable=True),
                sa.Column("status", sa.String(), nullable=False, server_default="completed"),
            ],
        ),
        (
            "connectors",
            [
                sa.Column("provider", sa.String(), nullable=False),
                sa.Column("credentials_ref", sa.String(), nullable=True),
            ],
        ),
        (
            "decision_cards",
            [
                sa.Column("created_by", sa.String(), nullable=True),
                sa.Column("title", sa.String(), nullable=False),
            ],
        ),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("tenant_id", sa.String(), nullable=False),
            sa.Column("workspace_id", sa.String(), sa.ForeignKey("workspaces.id"), nullable=False),
            *columns,
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index(f"ix_{table}_tenant_id", table, ["tenant_id"])
        op.create_index(f"ix_{table}_workspace_id", table, ["workspace_id"])

    op.create_table(
        "consent_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), sa.ForeignKey("workspaces.id"), nullable=True),
        sa.Column("granted_by", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("purpose", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_consent_records_tenant_id", "consent_records", ["tenant_id"])
    op.create_index("ix_consent_records_workspace_id", "consent_records", ["workspace_id"])
    op.create_index("ix_consent_records_granted_by", "consent_records", ["granted_by"])

    op.create_table(
        "vector_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("workspace_id", sa.String(), nullable=True),
        # Keep schema aligned with the embedding dimension used at runtime.
        sa.Column("embedding", Vector(EMBED_DIM), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_vector_records_tenant_id", "vector_records", ["tenant_id"])
    op.create_index("ix_vector_records_namespace", "vector_records", ["namespace"])
    op.create_index("ix_vector_records_user_id", "vector_records", ["user_id"])
    op.create_index("ix_vector_records_workspace_id", "vector_records", ["workspace_id"])
    op.create_index(
        "ix_vector_records_tenant_namespace_user",
        "vector_records",
        ["tenant_id", "namespace", "user_id"],
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
    op.create_index(
        "ix_audit_events_tenant_occurred_at",
        "audit_events",
        ["tenant_id", sa.text("occurred_at DESC")],
    )

    op.create_table(
        "legal_holds",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("scope_type", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_by_actor_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_legal_holds_tenant_id", "legal_holds", ["tenant_id"])
    op.create_index("ix_legal_holds_scope_type", "legal_holds", ["scope_type"])
    op.create_index("ix_legal_holds_is_active", "legal_holds", ["is_active"])
    op.create_index("ix_legal_holds_tenant_active", "legal_holds", ["tenant_id", "is_active"])
    op.create_index("ix_legal_holds_scope", "legal_holds", ["scope_type", "scope_id"])

    op.create_table(
        "dsr_requests",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), primary_key=True),
        sa.Column("request_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("user_email", sa.String(), nullable=True),
        sa.Column("requested_by", sa.String(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scope", sa.String(), nullable=False, server_default="user"),
        sa.Column("workspace_id", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("retention_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("result_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_dsr_requests_tenant_id", "dsr_requests", ["tenant_id"])
    op.create_index("ix_dsr_requests_user_id", "dsr_requests", ["user_id"])
    op.create_index("ix_dsr_requests_status", "dsr_requests", ["status"])
    op.create_index("ix_dsr_requests_job_id", "dsr_requests", ["job_id"])
    op.create_index("ix_dsr_requests_tenant_status", "dsr_requests", ["tenant_id", "status"])

    op.create_table(
        "deletion_reports",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("deletion_scope", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("integrity_hash", sa.String(), nullable=False),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("signing_key_id", sa.String(), nullable=False),
        sa.Column("report_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_deletion_reports_tenant_id", "deletion_reports", ["tenant_id"])
    op.create_index("ix_deletion_reports_user_id", "deletion_reports", ["user_id"])
    op.create_index(
        "ix_deletion_reports_tenant_completed",
        "deletion_reports",
        ["tenant_id", sa.text("completed_at DESC")],
    )

    op.create_table(
        "backup_deletion_markers",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("deletion_scope", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("honored_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "request_id", name="uq_backup_deletion_markers_tenant_request"),
    )
    op.create_index("ix_backup_deletion_markers_tenant_id", "backup_deletion_markers", ["tenant_id"])
    op.create_index("ix_backup_deletion_markers_user_id", "backup_deletion_markers", ["user_id"])
    op.create_index("ix_backup_deletion_markers_status", "backup_deletion_markers", ["status"])

    op.create_table(
        "log_redactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("pseudonym", sa.String(), nullable=False),
        sa.Column("identifier_kind", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id", "request_id", "pseudonym", name="uq_log_redactions_tenant_request_pseudonym"
        ),
    )
    op.create_index("ix_log_redactions_tenant_id", "log_redactions", ["tenant_id"])
    op.create_index("ix_log_redactions_request_id", "log_redactions", ["request_id"])


def downgrade() -> None:
    for table in (
        "log_redactions",
        "backup_deletion_markers",
        "deletion_reports",
        "dsr_requests",
        "legal_holds",
        "audit_events",
        "vector_records",
        "consent_records",
        "decision_cards",
        "connectors",
        "workspace_runs",
        "posts",
        "workspaces",
        "users",
    ):
        # Dropping the table drops its indexes with it.
        op.drop_table(table)
