from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.domain.erasure import DeletionRequest
from tenantshield.domain.models import DsrRequest
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import require_context


async def get_request(session: AsyncSession, request_id: str) -> DsrRequest | None:
    result = await session.execute(
        select(DsrRequest).where(tenant_predicate(DsrRequest), DsrRequest.request_id == request_id)
    )
    return result.scalar_one_or_none()


async def record_request(
    session: AsyncSession,
    *,
    request_id: str,
    request_type: str,
    user_id: str,
    requested_by: str,
    requested_at: datetime,
    status: str,
    user_email: str | None = None,
    scope: str = "user",
    workspace_id: str | None = None,
    reason: str | None = None,
    retention_override: bool = False,
) -> DsrRequest:
    # Re-submitting the same request id updates the lifecycle row instead of duplicating it.
    row = await get_request(session, request_id)
    if row is None:
        row = DsrRequest(
            request_id=request_id,
            tenant_id=require_context(),
            request_type=request_type,
            user_id=user_id,
            user_email=user_email,
            requested_by=requested_by,
            requested_at=requested_at,
            scope=scope,
            workspace_id=workspace_id,
            reason=reason,
            retention_override=retention_override,
            status=status,
        )
        session.add(row)
    else:
        row.status = status
    await session.flush()
    return row


async def record_deletion_request(session: AsyncSession, request: DeletionRequest, *, status: str) -> DsrRequest:
    return await record_request(
        session,
        request_id=request.request_id,
        request_type="deletion",
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


async def update_status(
    session: AsyncSession,
    request_id: str,
    *,
    status: str,
    job_id: str | None = None,
    result_json: dict[str, Any] | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    completed_at: datetime | None = None,
) -> DsrRequest | None:
    row = await get_request(session, request_id)
    if row is None:
        return None
    row.status = status
    if job_id is not None:
        row.job_id = job_id
    if result_json is not None:
        row.result_json = result_json
    if error_code is not None:
        row.error_code = error_code
        row.error_message = error_message
    if completed_at is not None:
        row.completed_at = completed_at
    await session.flush()
    return row


async def transition_status(
    session: AsyncSession,
    request_id: str,
    *,
    from_status: str,
    to_status: str,
    job_id: str | None = None,
    completed_at: datetime | None = None,
) -> bool:
    """Move a request between lifecycle states only if it is still in ``from_status``.

    The check and the write are one UPDATE, so a worker claiming the request
    and an operator cancelling it cannot both succeed.
    """
    values: dict[str, Any] = {"status": to_status}
    if job_id is not None:
        values["job_id"] = job_id
    if completed_at is not None:
        values["completed_at"] = completed_at
    result = await session.execute(
        update(DsrRequest)
        .where(
            tenant_predicate(DsrRequest),
            DsrRequest.request_id == request_id,
            DsrRequest.status == from_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
