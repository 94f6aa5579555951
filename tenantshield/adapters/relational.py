from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.core.errors import ContextAccessDenied
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.domain.models import (
    ConsentRecord,
    Connector,
    DecisionCard,
    Post,
    User,
    Workspace,
    WorkspaceRun,
)
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import bind_session_tenant, require_context


logger = logging.getLogger(__name__)

# Children before parents so foreign keys never block a delete.
DELETION_ORDER: tuple[tuple[str, Any], ...] = (
    ("posts", Post),
    ("workspace_runs", WorkspaceRun),
    ("connectors", Connector),
    ("decision_cards", DecisionCard),
    ("consent_records", ConsentRecord),
    ("workspaces", Workspace),
    ("users", User),
)


def _owned_workspaces(user_id: str):
    return select(Workspace.id).where(tenant_predicate(Workspace), Workspace.created_by == user_id)


def subject_criteria(table: str, request: DeletionRequest) -> list[Any] | None:
    """Return WHERE criteria selecting the subject's rows in ``table``, or None when the scope skips it."""
    model = dict(DELETION_ORDER)[table]
    tenant = tenant_predicate(model)
    if request.scope == "tenant":
        return [tenant]

    if request.scope == "workspace":
        if table == "users":
            return None
        if table == "workspaces":
            return [tenant, Workspace.id == request.workspace_id]
        return [tenant, model.workspace_id == request.workspace_id]

    user_id = request.subject_user_id
    owned = _owned_workspaces(user_id)
    if table == "posts":
        return [tenant, or_(Post.author_id == user_id, Post.workspace_id.in_(owned))]
    if table == "workspace_runs":
        return [tenant, or_(WorkspaceRun.triggered_by == user_id, WorkspaceRun.workspace_id.in_(owned))]
    if table == "connectors":
        return [tenant, Connector.workspace_id.in_(owned)]
    if table == "decision_cards":
        return [tenant, or_(DecisionCard.created_by == user_id, DecisionCard.workspace_id.in_(owned))]
    if table == "consent_records":
        return [tenant, or_(ConsentRecord.granted_by == user_id, ConsentRecord.workspace_id.in_(owned))]
    if table == "workspaces":
        return [tenant, Workspace.created_by == user_id]
    return [tenant, User.id == user_id]


def _ensure_request_tenant(request: DeletionRequest) -> None:
    bound = require_context()
    if bound != request.tenant_id:
        raise ContextAccessDenied(
            "Deletion request tenant differs from the bound tenant context",
            identity_tenant_id=bound,
            requested_tenant_id=request.tenant_id,
        )


class RelationalErasureAdapter:
    """Deletes subject rows from the primary store in one tenant-bound transaction."""

    subsystem = "relational"
    verification_method = "sql_count"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        _ensure_request_tenant(request)
        counts: dict[str, int] = {}
        async with self._session_factory() as session:
            async with session.begin():
                await bind_session_tenant(session)
                for table, model in DELETION_ORDER:
                    criteria = subject_criteria(table, request)
                    if criteria is None:
                        counts[table] = 0
                        continue
                    result = await session.execute(
                        delete(model).where(*criteria).execution_options(synchronize_session=False)
                    )
                    counts[table] = max(0, int(result.rowcount or 0))
        total = sum(counts.values())
        logger.info(
            "erasure.relational.deleted request_id=%s tenant_id=%s total=%s",
            request.request_id,
            request.tenant_id,
            total,
        )
        return DeletionOutcome(records_deleted=total, details={"tables": counts})

    async def count_residual(self, request: DeletionRequest) -> int:
        _ensure_request_tenant(request)
        total = 0
        async with self._session_factory() as session:
            await bind_session_tenant(session)
            for table, model in DELETION_ORDER:
                criteria = subject_criteria(table, request)
                if criteria is None:
                    continue
                count = await session.scalar(select(func.count()).select_from(model).where(*criteria))
                total += int(count or 0)
        return total
