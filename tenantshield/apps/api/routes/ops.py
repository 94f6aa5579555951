from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.apps.api.deps import get_db, require_roles_dep
from tenantshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantshield.apps.api.response import SuccessEnvelope, success_response
from tenantshield.services.audit import get_request_context, record_event
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.services.telemetry import counters_snapshot, phase_latency_by_subsystem, request_summary


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/erasure", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_erasure(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
    identity: AuthenticatedIdentity = Depends(require_roles_dep("admin", "super_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Per-subsystem phase latency and outcome counters, so a failing adapter shows up before an audit does.
    payload = {
        "window_s": window_s,
        "phases": phase_latency_by_subsystem(window_s),
        "requests": request_summary(window_s),
        "counters": counters_snapshot(),
    }
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=identity.tenant_id,
        actor_type="user",
        actor_id=identity.user_id,
        actor_role=",".join(sorted(identity.roles)) or None,
        event_type="ops.viewed",
        outcome="success",
        resource_type="ops",
        resource_id="erasure",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"path": request.url.path},
        commit=True,
        best_effort=True,
    )
    return success_response(request=request, data=payload)
