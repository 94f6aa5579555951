from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.apps.api.deps import get_db, get_request_tenant, require_method_scopes_dep
from tenantshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantshield.apps.api.response import SuccessEnvelope, success_response
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.tenancy.context import bind_session_tenant, get_tenant_context, tenant_scope


router = APIRouter(prefix="/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)


class TenantContextResponse(BaseModel):
    tenant_id: str
    user_id: str | None
    identity_tenant_id: str
    super_admin: bool
    session_verified: bool


@router.get(
    "/{tenant_id}/context",
    response_model=SuccessEnvelope[TenantContextResponse],
)
async def get_bound_context(
    tenant_id: str,
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("tenants")),
    resolved_tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Echo the context the request actually ran under, after the store confirmed it.
    async with tenant_scope(resolved_tenant_id, identity=identity):
        await bind_session_tenant(db)
        context = get_tenant_context()
        payload = TenantContextResponse(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            identity_tenant_id=identity.tenant_id,
            super_admin=context.super_admin,
            session_verified=True,
        )
    return success_response(request=request, data=payload)
