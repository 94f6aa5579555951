from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tenantshield.adapters.backup_markers import BackupMarkerAdapter, list_pending_markers, mark_honored
from tenantshield.adapters.log_redaction import LogRedactionAdapter
from tenantshield.adapters.relational import RelationalErasureAdapter
from tenantshield.adapters.vector_pgvector import PgVectorErasureAdapter
from tenantshield.core.errors import ContextAccessDenied, SubsystemDeletionFailure
from tenantshield.core.logging import pseudonymize_identifier
from tenantshield.domain.models import LogRedaction, Post, User, VectorRecord, Workspace
from tenantshield.persistence.db import SessionLocal
from tenantshield.tenancy.context import bind_session_tenant, tenant_scope
from tenantshield.tests.utils.factories import deletion_request, seed_subject, unique_tenant


async def _count(model, tenant_id: str, *criteria) -> int:
    async with SessionLocal() as session:
        return int(
            await session.scalar(
                select(func.count()).select_from(model).where(model.tenant_id == tenant_id, *criteria)
            )
        )


@pytest.mark.asyncio
async def test_relational_user_scope_leaves_other_tenants_alone(db_schema) -> None:
    tenant_a, tenant_b = unique_tenant("a"), unique_tenant("b")
    user_a = f"u-{tenant_a}"
    await seed_subject(tenant_a, user_a)
    other_workspaces = await seed_subject(tenant_b, f"u-{tenant_b}", posts=4)
    async with SessionLocal() as session:
        # Same author id appearing inside another tenant must survive.
        session.add(Post(id=f"post-x-{tenant_b}", tenant_id=tenant_b, workspace_id=other_workspaces[0], author_id=user_a, body="x"))
        await session.commit()

    adapter = RelationalErasureAdapter(SessionLocal)
    request = deletion_request(tenant_a, user_a)
    async with tenant_scope(tenant_a):
        outcome = await adapter.delete_subject(request)
        residual = await adapter.count_residual(request)

    assert outcome.records_deleted == 15
    assert outcome.details["tables"] == {
        "posts": 10,
        "workspace_runs": 0,
        "connectors": 0,
        "decision_cards": 0,
        "consent_records": 1,
        "workspaces": 3,
        "users": 1,
    }
    assert residual == 0
    assert await _count(Post, tenant_b) == 5
    assert await _count(User, tenant_b) == 1


@pytest.mark.asyncio
async def test_relational_workspace_scope_keeps_user(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = f"u-{tenant_id}"
    workspaces = await seed_subject(tenant_id, user_id)
    adapter = RelationalErasureAdapter(SessionLocal)
    request = deletion_request(tenant_id, user_id, scope="workspace", workspace_id=workspaces[0])
    async with tenant_scope(tenant_id):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 0

    assert outcome.details["tables"]["posts"] == 4
    assert outcome.details["tables"]["workspaces"] == 1
    assert outcome.details["tables"]["users"] == 0
    assert await _count(User, tenant_id) == 1
    assert await _count(Workspace, tenant_id) == 2


@pytest.mark.asyncio
async def test_relational_tenant_scope_removes_everything(db_schema) -> None:
    tenant_id = unique_tenant()
    await seed_subject(tenant_id, f"u-{tenant_id}")
    await seed_subject(tenant_id, f"u2-{tenant_id}", workspaces=1, posts=1, consents=0)
    adapter = RelationalErasureAdapter(SessionLocal)
    async with tenant_scope(tenant_id):
        outcome = await adapter.delete_subject(deletion_request(tenant_id, f"u-{tenant_id}", scope="tenant"))
    assert outcome.details["tables"]["users"] == 2
    assert await _count(Post, tenant_id) == 0


@pytest.mark.asyncio
async def test_relational_refuses_request_for_unbound_tenant(db_schema) -> None:
    adapter = RelationalErasureAdapter(SessionLocal)
    async with tenant_scope(unique_tenant()):
        with pytest.raises(ContextAccessDenied):
            await adapter.delete_subject(deletion_request(unique_tenant(), "u1"))


@pytest.mark.asyncio
async def test_vector_adapter_walks_each_namespace(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = f"u-{tenant_id}"
    await seed_subject(tenant_id, user_id, vectors={"docs": 3, "chat": 2, "search": 0})
    await seed_subject(tenant_id, f"other-{tenant_id}", vectors={"docs": 1})
    adapter = PgVectorErasureAdapter(SessionLocal, namespaces=["docs", "chat", "search"])
    request = deletion_request(tenant_id, user_id)
    async with tenant_scope(tenant_id):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 0

    assert outcome.records_deleted == 5
    assert outcome.errors == []
    assert outcome.details["namespaces"] == {"docs": 3, "chat": 2, "search": 0}
    assert await _count(VectorRecord, tenant_id) == 1


@pytest.mark.asyncio
async def test_vector_adapter_reports_partial_namespace_failure(db_schema, monkeypatch) -> None:
    tenant_id = unique_tenant()
    user_id = f"u-{tenant_id}"
    await seed_subject(tenant_id, user_id, vectors={"docs": 2, "chat": 1})
    adapter = PgVectorErasureAdapter(SessionLocal, namespaces=["docs", "chat"])
    original = adapter._delete_namespace

    async def flaky(request, namespace):
        if namespace == "chat":
            raise OperationalError("DELETE FROM vector_records", {}, Exception("index locked"))
        return await original(request, namespace)

    monkeypatch.setattr(adapter, "_delete_namespace", flaky)
    request = deletion_request(tenant_id, user_id)
    async with tenant_scope(tenant_id):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 1

    assert outcome.records_deleted == 2
    assert outcome.errors == ["namespace chat: OperationalError"]


@pytest.mark.asyncio
async def test_vector_adapter_total_failure_raises(monkeypatch) -> None:
    adapter = PgVectorErasureAdapter(SessionLocal, namespaces=["docs"])

    async def broken(request, namespace):
        raise OperationalError("DELETE FROM vector_records", {}, Exception("connection refused"))

    monkeypatch.setattr(adapter, "_delete_namespace", broken)
    tenant_id = unique_tenant()
    async with tenant_scope(tenant_id):
        with pytest.raises(SubsystemDeletionFailure) as exc_info:
            await adapter.delete_subject(deletion_request(tenant_id, "u1"))
    assert exc_info.value.subsystem == "vector"


@pytest.mark.asyncio
async def test_backup_marker_is_written_once_and_honored(db_schema) -> None:
    tenant_id = unique_tenant()
    adapter = BackupMarkerAdapter(SessionLocal)
    request = deletion_request(tenant_id, "u1")
    async with tenant_scope(tenant_id):
        first = await adapter.delete_subject(request)
        second = await adapter.delete_subject(request)
        assert first.records_deleted == 0
        assert first.details == {"marker_status": "pending", "marker_created": True}
        assert second.details["marker_created"] is False

        async with SessionLocal() as session:
            await bind_session_tenant(session)
            pending = await list_pending_markers(session)
            assert [marker.request_id for marker in pending] == [request.request_id]
            await mark_honored(session, pending[0])
            await session.commit()
            await bind_session_tenant(session)
            assert await list_pending_markers(session) == []

        third = await adapter.delete_subject(request)
    assert third.details == {"marker_status": "honored", "marker_created": False}


@pytest.mark.asyncio
async def test_log_redaction_ledger_stores_pseudonyms_only(db_schema) -> None:
    tenant_id = unique_tenant()
    adapter = LogRedactionAdapter(SessionLocal)
    request = deletion_request(tenant_id, "u-carol", user_email="carol@example.com")
    async with tenant_scope(tenant_id):
        first = await adapter.delete_subject(request)
        second = await adapter.delete_subject(request)

    expected = sorted([pseudonymize_identifier("u-carol"), pseudonymize_identifier("carol@example.com")])
    assert first.details == {"pseudonyms": expected, "ledger_rows_added": 2}
    assert second.details["ledger_rows_added"] == 0
    async with SessionLocal() as session:
        rows = (
            await session.scalars(select(LogRedaction).where(LogRedaction.tenant_id == tenant_id))
        ).all()
    assert sorted(row.pseudonym for row in rows) == expected
    assert {row.identifier_kind for row in rows} == {"user_id", "email"}
