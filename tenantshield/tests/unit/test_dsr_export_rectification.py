from __future__ import annotations

import pytest

from tenantshield.adapters.relational import RelationalErasureAdapter
from tenantshield.core.errors import ContextVerificationFailure, RectificationInvalid, SubjectNotFound
from tenantshield.domain.models import User
from tenantshield.persistence.db import SessionLocal
from tenantshield.services.erasure.export import export_subject_data
from tenantshield.services.erasure.rectification import apply_rectification
from tenantshield.tenancy.context import bind_session_tenant, tenant_scope
from tenantshield.tests.utils.factories import deletion_request, seed_subject, unique_tenant


@pytest.mark.asyncio
async def test_export_matches_what_erasure_would_remove(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = f"u-{tenant_id}"
    await seed_subject(tenant_id, user_id)
    await seed_subject(tenant_id, f"other-{tenant_id}", workspaces=1, posts=2)
    request = deletion_request(tenant_id, user_id)

    async with tenant_scope(tenant_id):
        async with SessionLocal() as session:
            await bind_session_tenant(session)
            export = await export_subject_data(session, request)
        outcome = await RelationalErasureAdapter(SessionLocal).delete_subject(request)

    assert export["record_count"] == outcome.records_deleted == 15
    assert list(export["data"]["tables"]) == ["users", "workspaces", "consent_records", "posts"]
    assert export["data"]["tables"]["users"][0]["email"] == f"{user_id}@example.com"
    assert len(export["integrity_hash"]) == 64


@pytest.mark.asyncio
async def test_export_refuses_unbound_session(db_schema) -> None:
    tenant_id = unique_tenant()
    async with tenant_scope(tenant_id):
        async with SessionLocal() as session:
            with pytest.raises(ContextVerificationFailure):
                await export_subject_data(session, deletion_request(tenant_id, "u1"))


@pytest.mark.asyncio
async def test_rectification_reports_changed_fields(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = f"u-{tenant_id}"
    await seed_subject(tenant_id, user_id, workspaces=1, posts=0, consents=0)

    async with tenant_scope(tenant_id):
        async with SessionLocal() as session:
            await bind_session_tenant(session)
            applied = await apply_rectification(
                session,
                user_id=user_id,
                corrections={"email": "new@example.com", "display_name": user_id},
            )
            await session.commit()

    assert applied == {"email": {"changed": True}, "display_name": {"changed": False}}
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
    assert user.email == "new@example.com"


@pytest.mark.asyncio
async def test_rectification_rejects_bad_input(db_schema) -> None:
    tenant_id = unique_tenant()
    async with tenant_scope(tenant_id):
        async with SessionLocal() as session:
            await bind_session_tenant(session)
            with pytest.raises(RectificationInvalid):
                await apply_rectification(session, user_id="u1", corrections={"tenant_id": "globex"})
            with pytest.raises(RectificationInvalid):
                await apply_rectification(session, user_id="u1", corrections={})
            with pytest.raises(SubjectNotFound):
                await apply_rectification(session, user_id="missing", corrections={"email": "x@example.com"})
