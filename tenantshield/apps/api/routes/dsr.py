from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.apps.api.deps import get_db, get_request_tenant, require_method_scopes_dep
from tenantshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantshield.apps.api.response import SuccessEnvelope, success_response
from tenantshield.core.errors import (
    ContextAccessDenied,
    ErasureQueueUnavailable,
    RectificationInvalid,
    TenantShieldError,
)
from tenantshield.domain.erasure import DeletionRequest, utc_now
from tenantshield.domain.models import DsrRequest, LegalHold
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.persistence.repos import deletion_reports as reports_repo
from tenantshield.persistence.repos import dsr_requests as dsr_repo
from tenantshield.services.audit import get_request_context, record_event
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.services.crypto.signing import get_report_signer
from tenantshield.services.erasure import queue as erasure_queue
from tenantshield.services.erasure.export import export_subject_data
from tenantshield.services.erasure.factory import get_erasure_orchestrator
from tenantshield.services.erasure.legal_holds import create_legal_hold, get_legal_hold, release_legal_hold
from tenantshield.services.erasure.orchestrator import ErasureOrchestrator
from tenantshield.services.erasure.proof import verify_report
from tenantshield.services.erasure.rectification import apply_rectification
from tenantshield.tenancy.context import bind_session_tenant, tenant_scope


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dsr", tags=["dsr"], responses=DEFAULT_ERROR_RESPONSES)


class DsrRequestCreate(BaseModel):
    request_id: str = Field(min_length=1, max_length=128)
    request_type: Literal["access", "deletion", "rectification", "portability"]
    user_id: str = Field(min_length=1, max_length=128)
    tenant_id: str = Field(min_length=1, max_length=64)
    user_email: str | None = None
    requested_by: str = Field(min_length=1, max_length=128)
    requested_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)
    retention_override: bool = False
    scope: Literal["user", "tenant", "workspace"] = "user"
    workspace_id: str | None = None
    corrections: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_scope(self) -> "DsrRequestCreate":
        if self.scope == "workspace" and not self.workspace_id:
            raise ValueError("workspace_id is required for workspace scope")
        return self


class DsrExportResponse(BaseModel):
    request_id: str
    request_type: str
    exported_at: str
    record_count: int
    integrity_hash: str
    data: dict[str, Any]


class DsrRectificationResponse(BaseModel):
    request_id: str
    user_id: str
    fields: dict[str, dict[str, Any]]


class DsrQueuedResponse(BaseModel):
    request_id: str
    job_id: str
    status: str


class DsrCancelResponse(BaseModel):
    job_id: str
    status: str


class ReportVerificationResponse(BaseModel):
    request_id: str
    valid: bool
    integrity_ok: bool
    signature_ok: bool
    audit_trail_ok: bool
    reasons: list[str]


class LegalHoldCreateRequest(BaseModel):
    scope_type: Literal["tenant", "user", "workspace"]
    scope_id: str | None = None
    reason: str = Field(min_length=3, max_length=500)
    expires_at: datetime | None = None


class LegalHoldResponse(BaseModel):
    id: int
    tenant_id: str
    scope_type: str
    scope_id: str | None
    reason: str
    created_by_actor_id: str | None
    created_at: str
    expires_at: str | None
    is_active: bool


def get_orchestrator() -> ErasureOrchestrator:
    return get_erasure_orchestrator()


def _ensure_body_tenant(payload: DsrRequestCreate, tenant_id: str, identity: AuthenticatedIdentity) -> None:
    # The intake body names a tenant; it must agree with the resolved request tenant.
    if payload.tenant_id != tenant_id:
        raise ContextAccessDenied(
            "Request body tenant does not match the resolved tenant",
            identity_tenant_id=identity.tenant_id,
            requested_tenant_id=payload.tenant_id,
        )


def _to_request(payload: DsrRequestCreate) -> DeletionRequest:
    return DeletionRequest(
        request_id=payload.request_id,
        subject_user_id=payload.user_id,
        tenant_id=payload.tenant_id,
        scope=payload.scope,
        requested_by=payload.requested_by,
        reason=payload.reason,
        retention_override=payload.retention_override,
        workspace_id=payload.workspace_id,
        user_email=payload.user_email,
        requested_at=payload.requested_at or utc_now(),
    )


def _hold_response(hold: LegalHold) -> LegalHoldResponse:
    return LegalHoldResponse(
        id=hold.id,
        tenant_id=hold.tenant_id,
        scope_type=hold.scope_type,
        scope_id=hold.scope_id,
        reason=hold.reason,
        created_by_actor_id=hold.created_by_actor_id,
        created_at=hold.created_at.isoformat() if hold.created_at else "",
        expires_at=hold.expires_at.isoformat() if hold.expires_at else None,
        is_active=hold.is_active,
    )


async def _record_intake(
    db: AsyncSession, payload: DsrRequestCreate, request: DeletionRequest, *, status: str
) -> DsrRequest:
    return await dsr_repo.record_request(
        db,
        request_id=request.request_id,
        request_type=payload.request_type,
        user_id=request.subject_user_id,
        requested_by=request.requested_by,
        requested_at=request.requested_at,
        status=status,
        user_email=request.user_email,
        scope=request.scope,
        workspace_id=request.workspace_id,
        reason=request.reason,
        retention_override=request.retention_override,
    )


async def _audit_dsr(
    db: AsyncSession,
    http_request: Request,
    identity: AuthenticatedIdentity,
    tenant_id: str,
    *,
    event_type: str,
    resource_id: str,
    metadata: dict[str, Any],
) -> None:
    request_ctx = get_request_context(http_request)
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_type="user",
        actor_id=identity.user_id,
        actor_role=",".join(sorted(identity.roles)) or None,
        event_type=event_type,
        outcome="success",
        resource_type="dsr_request",
        resource_id=resource_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=metadata,
        commit=False,
        best_effort=True,
    )


async def _run_deletion(
    db: AsyncSession,
    payload: DsrRequestCreate,
    identity: AuthenticatedIdentity,
    orchestrator: ErasureOrchestrator,
) -> dict[str, Any]:
    deletion = _to_request(payload)
    row = await dsr_repo.record_deletion_request(db, deletion, status="running")
    row.job_id = deletion.request_id
    # Release the intake transaction before the run opens its own sessions.
    await db.commit()
    try:
        report = await orchestrator.process(deletion, identity=identity)
    except TenantShieldError as exc:
        await bind_session_tenant(db)
        await dsr_repo.update_status(
            db,
            deletion.request_id,
            status="failed",
            error_code=exc.code,
            error_message=exc.message,
            completed_at=utc_now(),
        )
        await db.commit()
        raise
    await bind_session_tenant(db)
    await dsr_repo.update_status(
        db,
        deletion.request_id,
        status="completed",
        result_json={
            "integrity_hash": report.integrity_hash,
            "fully_verified": report.fully_verified,
            "statuses": {item.subsystem: item.status for item in report.subsystem_results},
        },
        completed_at=utc_now(),
    )
    await db.commit()
    return report.to_dict()


@router.post("/requests", response_model=SuccessEnvelope[dict[str, Any]])
async def submit_dsr_request(
    request: Request,
    payload: DsrRequestCreate,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("dsr")),
    tenant_id: str = Depends(get_request_tenant),
    orchestrator: ErasureOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Handle a data subject request synchronously.

    Deletion runs the full cascading erasure and returns the signed report;
    access and portability return a tenant-scoped export; rectification
    corrects profile fields on the subject's user row.
    """
    async with tenant_scope(tenant_id, identity=identity):
        _ensure_body_tenant(payload, tenant_id, identity)
        await bind_session_tenant(db)

        if payload.request_type == "deletion":
            data = await _run_deletion(db, payload, identity, orchestrator)
            return success_response(request=request, data=data)

        subject = _to_request(payload)
        if payload.request_type == "rectification":
            if not payload.corrections:
                raise RectificationInvalid("Rectification requests require corrections")
            fields = await apply_rectification(db, user_id=payload.user_id, corrections=payload.corrections)
            await _record_intake(db, payload, subject, status="completed")
            await _audit_dsr(
                db,
                request,
                identity,
                tenant_id,
                event_type="dsr.rectification.completed",
                resource_id=subject.request_id,
                metadata={"fields": sorted(fields)},
            )
            await db.commit()
            return success_response(
                request=request,
                data=DsrRectificationResponse(request_id=subject.request_id, user_id=payload.user_id, fields=fields),
            )

        export = await export_subject_data(db, subject)
        row = await _record_intake(db, payload, subject, status="completed")
        row.result_json = {"record_count": export["record_count"], "integrity_hash": export["integrity_hash"]}
        row.completed_at = utc_now()
        await _audit_dsr(
            db,
            request,
            identity,
            tenant_id,
            event_type=f"dsr.{payload.request_type}.completed",
            resource_id=subject.request_id,
            metadata={"record_count": export["record_count"]},
        )
        await db.commit()
        return success_response(
            request=request,
            data=DsrExportResponse(request_type=payload.request_type, **export),
        )


@router.post(
    "/requests:enqueue",
    status_code=202,
    response_model=SuccessEnvelope[DsrQueuedResponse],
)
async def enqueue_dsr_deletion(
    request: Request,
    payload: DsrRequestCreate,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("dsr")),
    tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Hand deletion off to the erasure worker; the job id is the tenant-qualified request id.
    if payload.request_type != "deletion":
        raise HTTPException(
            status_code=422,
            detail={"code": "VALIDATION_ERROR", "message": "Only deletion requests can be enqueued"},
        )
    deletion = _to_request(payload)
    async with tenant_scope(tenant_id, identity=identity):
        _ensure_body_tenant(payload, tenant_id, identity)
        await bind_session_tenant(db)
        row = await dsr_repo.record_deletion_request(db, deletion, status="queued")
        row.job_id = erasure_queue.erasure_job_id(tenant_id, deletion.request_id)
        await db.commit()

    # Inline execution binds its own tenant scope, so the handoff happens unbound.
    try:
        job_id = await erasure_queue.enqueue_erasure_job(erasure_queue.ErasureJobPayload.from_request(deletion))
    except ErasureQueueUnavailable as exc:
        async with tenant_scope(tenant_id, identity=identity):
            await bind_session_tenant(db)
            await dsr_repo.update_status(
                db,
                deletion.request_id,
                status="failed",
                error_code=exc.code,
                error_message=exc.message,
                completed_at=utc_now(),
            )
            await db.commit()
        raise

    async with tenant_scope(tenant_id, identity=identity):
        await bind_session_tenant(db)
        row = await dsr_repo.get_request(db, deletion.request_id)
        status = row.status if row is not None else "queued"
    logger.info("dsr.erasure.enqueued request_id=%s tenant_id=%s", deletion.request_id, tenant_id)
    return success_response(
        request=request,
        data=DsrQueuedResponse(request_id=deletion.request_id, job_id=job_id, status=status),
    )


@router.delete("/queue/{job_id}", response_model=SuccessEnvelope[DsrCancelResponse])
async def cancel_dsr_job(
    job_id: str,
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("dsr")),
    tenant_id: str = Depends(get_request_tenant),
) -> dict:
    async with tenant_scope(tenant_id, identity=identity):
        await erasure_queue.cancel_erasure_job(job_id)
    return success_response(request=request, data=DsrCancelResponse(job_id=job_id, status="cancelled"))


@router.get("/reports/{request_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_deletion_report(
    request_id: str,
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("dsr")),
    tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    async with tenant_scope(tenant_id, identity=identity):
        await bind_session_tenant(db)
        report = await reports_repo.get_report(db, request_id)
    return success_response(request=request, data=report.to_dict())


@router.post(
    "/reports/{request_id}/verify",
    response_model=SuccessEnvelope[ReportVerificationResponse],
)
async def verify_deletion_report(
    request_id: str,
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("dsr")),
    tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Recompute hashes and check the signature against the persisted report.
    async with tenant_scope(tenant_id, identity=identity):
        await bind_session_tenant(db)
        report = await reports_repo.get_report(db, request_id)
        verification = verify_report(report, get_report_signer())
        await _audit_dsr(
            db,
            request,
            identity,
            tenant_id,
            event_type="dsr.report.verified",
            resource_id=request_id,
            metadata={"valid": verification.valid, "reasons": list(verification.reasons)},
        )
        await db.commit()
    if not verification.valid:
        logger.warning("dsr.report.tamper_detected request_id=%s reasons=%s", request_id, verification.reasons)
    return success_response(
        request=request,
        data=ReportVerificationResponse(**verification.to_dict()),
    )


@router.post(
    "/legal-holds",
    status_code=201,
    response_model=SuccessEnvelope[LegalHoldResponse],
)
async def create_hold(
    request: Request,
    payload: LegalHoldCreateRequest,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("legal_holds")),
    tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Holds defer destructive erasure phases until released or expired.
    if payload.scope_type == "tenant" and payload.scope_id is not None:
        raise HTTPException(
            status_code=422,
            detail={"code": "VALIDATION_ERROR", "message": "scope_id must be null for tenant scope"},
        )
    if payload.scope_type != "tenant" and not payload.scope_id:
        raise HTTPException(
            status_code=422,
            detail={"code": "VALIDATION_ERROR", "message": "scope_id is required for scoped holds"},
        )
    request_ctx = get_request_context(request)
    async with tenant_scope(tenant_id, identity=identity):
        await bind_session_tenant(db)
        hold = await create_legal_hold(
            db,
            scope_type=payload.scope_type,
            scope_id=payload.scope_id,
            reason=payload.reason,
            expires_at=payload.expires_at,
            created_by_actor_id=identity.user_id,
            request_id=request_ctx["request_id"],
        )
        await db.commit()
        # The commit ends the transaction that carried the tenant binding.
        await bind_session_tenant(db)
        await db.refresh(hold)
    return success_response(request=request, data=_hold_response(hold))


@router.get(
    "/legal-holds",
    response_model=SuccessEnvelope[list[LegalHoldResponse]],
)
async def list_holds(
    request: Request,
    active: bool = Query(default=True),
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("legal_holds")),
    tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    async with tenant_scope(tenant_id, identity=identity):
        await bind_session_tenant(db)
        query = select(LegalHold).where(tenant_predicate(LegalHold))
        if active:
            query = query.where(LegalHold.is_active.is_(True))
        rows = (await db.execute(query.order_by(LegalHold.id.desc()))).scalars().all()
    return success_response(request=request, data=[_hold_response(row).model_dump() for row in rows])


@router.post(
    "/legal-holds/{hold_id}/release",
    response_model=SuccessEnvelope[LegalHoldResponse],
)
async def release_hold(
    hold_id: int,
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_method_scopes_dep("legal_holds")),
    tenant_id: str = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    request_ctx = get_request_context(request)
    async with tenant_scope(tenant_id, identity=identity):
        await bind_session_tenant(db)
        hold = await get_legal_hold(db, hold_id)
        if hold is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "NOT_FOUND", "message": "Legal hold not found"},
            )
        hold = await release_legal_hold(
            db,
            hold,
            actor_id=identity.user_id,
            request_id=request_ctx["request_id"],
        )
        await db.commit()
        # The commit ends the transaction that carried the tenant binding.
        await bind_session_tenant(db)
        await db.refresh(hold)
    return success_response(request=request, data=_hold_response(hold))
