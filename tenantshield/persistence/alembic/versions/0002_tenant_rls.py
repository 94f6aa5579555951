"""row level security keyed on the bound tenant

Revision ID: 0002_tenant_rls
Revises: 0001_init
Create Date: 2026-10-05 09:30:00.000000
"""
from __future__ import annotations

from alembic import op


revision = "0002_tenant_rls"
down_revision = "0001_init"
branch_labels = None
depends_on = None

# Every tenant-owned table; audit_events stays outside RLS because pre-auth events carry no tenant.
TENANT_TABLES = (
    "users",
    "workspaces",
    "posts",
    "workspace_runs",
    "connectors",
    "decision_cards",
    "consent_records",
    "vector_records",
    "legal_holds",
    "dsr_requests",
    "deletion_reports",
    "backup_deletion_markers",
    "log_redactions",
)


def upgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        # FORCE applies the policy to the table owner as well.
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        # missing_ok=true yields NULL when unbound, so unbound sessions see no rows.
        op.execute(
            f"""
            CREATE POLICY {table}_tenant_isolation ON {table}
            USING (tenant_id = current_setting('app.current_tenant_id', true))
            WITH CHECK (tenant_id = current_setting('app.current_tenant_id', true))
            """
        )


def downgrade() -> None:
    for table in reversed(TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
