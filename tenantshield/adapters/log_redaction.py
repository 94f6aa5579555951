from __future__ import annotations

import logging
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.core.errors import SubsystemDeletionFailure
from tenantshield.core.logging import register_redacted_subject, share_redacted_subjects
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.domain.models import LogRedaction
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import bind_session_tenant, require_context


logger = logging.getLogger(__name__)


def subject_identifiers(request: DeletionRequest) -> list[tuple[str, str]]:
    identifiers = [("user_id", request.subject_user_id)]
    if request.user_email:
        identifiers.append(("email", request.user_email))
    return identifiers


class LogRedactionAdapter:
    """Pseudonymizes subject identifiers in future log output; historical log sinks are not rewritten.

    With a registry client the pseudonyms are also published to the shared
    Redis hash, so API replicas and other workers redact the same subjects.
    Without one, only this process's filter learns them.
    """

    subsystem = "logs"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        registry: Any | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        raw_to_pseudonym = {value: register_redacted_subject(value) for _, value in subject_identifiers(request)}
        registered = {kind: raw_to_pseudonym[value] for kind, value in subject_identifiers(request)}
        if self._registry is not None:
            try:
                await share_redacted_subjects(self._registry, raw_to_pseudonym)
            except (RedisError, OSError) as exc:
                raise SubsystemDeletionFailure(
                    "logs", f"shared redaction registry unavailable: {exc.__class__.__name__}"
                ) from exc
        inserted = 0
        if self._session_factory is not None:
            inserted = await self._persist_ledger(request, registered)
        logger.info(
            "erasure.logs.pseudonymized request_id=%s identifiers=%s shared=%s",
            request.request_id,
            len(registered),
            self._registry is not None,
        )
        # Nothing is deleted here; pseudonyms only change what future log lines contain.
        return DeletionOutcome(
            records_deleted=0,
            details={
                "pseudonyms": sorted(registered.values()),
                "ledger_rows_added": inserted,
            },
        )

    async def _persist_ledger(self, request: DeletionRequest, registered: dict[str, str]) -> int:
        tenant_id = require_context()
        async with self._session_factory() as session:
            async with session.begin():
                await bind_session_tenant(session)
                existing = set(
                    (
                        await session.scalars(
                            select(LogRedaction.pseudonym).where(
                                tenant_predicate(LogRedaction),
                                LogRedaction.request_id == request.request_id,
                            )
                        )
                    ).all()
                )
                inserted = 0
                for kind, pseudonym in registered.items():
                    if pseudonym in existing:
                        continue
                    session.add(
                        LogRedaction(
                            tenant_id=tenant_id,
                            request_id=request.request_id,
                            pseudonym=pseudonym,
                            identifier_kind=kind,
                        )
                    )
                    inserted += 1
        return inserted
