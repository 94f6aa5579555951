from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.core.config import get_settings
from tenantshield.core.errors import SubsystemDeletionFailure
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.domain.models import VectorRecord
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import bind_session_tenant


logger = logging.getLogger(__name__)


def configured_namespaces() -> list[str]:
    raw = get_settings().vector_namespaces
    return [item.strip() for item in raw.split(",") if item.strip()]


def _subject_criteria(request: DeletionRequest, namespace: str) -> list[Any]:
    criteria: list[Any] = [tenant_predicate(VectorRecord), VectorRecord.namespace == namespace]
    if request.scope == "user":
        criteria.append(VectorRecord.user_id == request.subject_user_id)
    elif request.scope == "workspace":
        criteria.append(VectorRecord.workspace_id == request.workspace_id)
    return criteria


class PgVectorErasureAdapter:
    """Deletes subject embeddings namespace by namespace; one failing namespace leaves the rest intact."""

    subsystem = "vector"
    verification_method = "vector_namespace_count"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        namespaces: list[str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._namespaces = namespaces if namespaces is not None else configured_namespaces()

    async def _delete_namespace(self, request: DeletionRequest, namespace: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                await bind_session_tenant(session)
                result = await session.execute(
                    delete(VectorRecord)
                    .where(*_subject_criteria(request, namespace))
                    .execution_options(synchronize_session=False)
                )
                return max(0, int(result.rowcount or 0))

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        per_namespace: dict[str, int] = {}
        errors: list[str] = []
        for namespace in self._namespaces:
            try:
                per_namespace[namespace] = await self._delete_namespace(request, namespace)
            except SQLAlchemyError as exc:
                logger.warning(
                    "erasure.vector.namespace_failed request_id=%s namespace=%s",
                    request.request_id,
                    namespace,
                    exc_info=exc,
                )
                errors.append(f"namespace {namespace}: {exc.__class__.__name__}")
        if self._namespaces and not per_namespace:
            raise SubsystemDeletionFailure("vector", "; ".join(errors))
        return DeletionOutcome(
            records_deleted=sum(per_namespace.values()),
            errors=errors,
            details={"namespaces": per_namespace},
        )

    async def count_residual(self, request: DeletionRequest) -> int:
        total = 0
        async with self._session_factory() as session:
            await bind_session_tenant(session)
            for namespace in self._namespaces:
                count = await session.scalar(
                    select(func.count()).select_from(VectorRecord).where(*_subject_criteria(request, namespace))
                )
                total += int(count or 0)
        return total
