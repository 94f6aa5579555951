from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.domain.models import BackupDeletionMarker
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import bind_session_tenant, require_context


logger = logging.getLogger(__name__)


class BackupMarkerAdapter:
    """Records a pending-deletion marker that restores must honor; backups themselves are never touched."""

    subsystem = "backups"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        tenant_id = require_context()
        async with self._session_factory() as session:
            async with session.begin():
                await bind_session_tenant(session)
                marker = await session.scalar(
                    select(BackupDeletionMarker).where(
                        tenant_predicate(BackupDeletionMarker),
                        BackupDeletionMarker.request_id == request.request_id,
                    )
                )
                created = marker is None
                if created:
                    marker = BackupDeletionMarker(
                        tenant_id=tenant_id,
                        request_id=request.request_id,
                        user_id=request.subject_user_id,
                        deletion_scope=request.scope,
                        workspace_id=request.workspace_id,
                        status="pending",
                    )
                    session.add(marker)
                status = marker.status
        logger.info(
            "erasure.backups.marked request_id=%s created=%s status=%s",
            request.request_id,
            created,
            status,
        )
        return DeletionOutcome(
            records_deleted=0,
            details={"marker_status": status, "marker_created": created},
        )


async def list_pending_markers(session: AsyncSession, *, limit: int = 100) -> list[BackupDeletionMarker]:
    # Caller binds the tenant; the predicate keeps the listing inside it.
    result = await session.scalars(
        select(BackupDeletionMarker)
        .where(tenant_predicate(BackupDeletionMarker), BackupDeletionMarker.status == "pending")
        .order_by(BackupDeletionMarker.created_at.asc(), BackupDeletionMarker.id.asc())
        .limit(limit)
    )
    return list(result.all())


async def mark_honored(session: AsyncSession, marker: BackupDeletionMarker) -> None:
    marker.status = "honored"
    marker.honored_at = datetime.now(timezone.utc)
    await session.flush()
