from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.domain.erasure import DeletionRequest
from tenantshield.domain.models import LegalHold
from tenantshield.services.audit import record_event
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import bind_session_tenant, require_context


logger = logging.getLogger(__name__)

LEGAL_HOLD_SCOPES = ("tenant", "user", "workspace")


def _hold_scope_filter(request: DeletionRequest):
    # Tenant-wide holds always apply; narrower holds apply to their user or workspace.
    clauses = [
        LegalHold.scope_type == "tenant",
        and_(LegalHold.scope_type == "user", LegalHold.scope_id == request.subject_user_id),
    ]
    if request.workspace_id:
        clauses.append(and_(LegalHold.scope_type == "workspace", LegalHold.scope_id == request.workspace_id))
    return or_(*clauses)


async def active_hold_for(session: AsyncSession, request: DeletionRequest) -> LegalHold | None:
    now = datetime.now(timezone.utc)
    result = await session.scalars(
        select(LegalHold)
        .where(
            tenant_predicate(LegalHold),
            LegalHold.is_active.is_(True),
            or_(LegalHold.expires_at.is_(None), LegalHold.expires_at > now),
            _hold_scope_filter(request),
        )
        .order_by(LegalHold.id.asc())
        .limit(1)
    )
    return result.first()


class LegalHoldChecker:
    """Returns a skip reason when destructive erasure must be deferred, otherwise None."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def __call__(self, request: DeletionRequest) -> str | None:
        try:
            async with self._session_factory() as session:
                await bind_session_tenant(session)
                hold = await active_hold_for(session, request)
        except SQLAlchemyError as exc:
            # Destruction is irreversible; an unknown hold state defers it.
            logger.error(
                "erasure.legal_hold.check_failed request_id=%s tenant_id=%s",
                request.request_id,
                request.tenant_id,
                exc_info=exc,
            )
            return "legal_hold_check_failed"
        if hold is None:
            return None
        return f"legal_hold:{hold.scope_type}:{hold.id}"


async def create_legal_hold(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str | None,
    reason: str,
    expires_at: datetime | None,
    created_by_actor_id: str | None,
    request_id: str | None = None,
) -> LegalHold:
    # Persist hold creation and emit audit evidence for legal workflows.
    hold = LegalHold(
        tenant_id=require_context(),
        scope_type=scope_type,
        scope_id=scope_id,
        reason=reason,
        expires_at=expires_at,
        created_by_actor_id=created_by_actor_id,
        is_active=True,
    )
    session.add(hold)
    await session.flush()
    await record_event(
        session=session,
        tenant_id=hold.tenant_id,
        actor_type="user",
        actor_id=created_by_actor_id,
        event_type="dsr.legal_hold.created",
        outcome="success",
        resource_type="legal_hold",
        resource_id=str(hold.id),
        request_id=request_id,
        metadata={"scope_type": scope_type, "scope_id": scope_id},
    )
    return hold


async def get_legal_hold(session: AsyncSession, hold_id: int) -> LegalHold | None:
    return await session.scalar(select(LegalHold).where(tenant_predicate(LegalHold), LegalHold.id == hold_id))


async def release_legal_hold(
    session: AsyncSession,
    hold: LegalHold,
    *,
    actor_id: str | None,
    request_id: str | None = None,
) -> LegalHold:
    # Keep release idempotent to simplify admin retries.
    hold.is_active = False
    await session.flush()
    await record_event(
        session=session,
        tenant_id=hold.tenant_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="dsr.legal_hold.released",
        outcome="success",
        resource_type="legal_hold",
        resource_id=str(hold.id),
        request_id=request_id,
        metadata={"scope_type": hold.scope_type, "scope_id": hold.scope_id},
    )
    return hold
