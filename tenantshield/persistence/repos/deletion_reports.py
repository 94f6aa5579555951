from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.core.errors import ContextAccessDenied, ReportImmutable, ReportNotFound, ReportSigningFailure
from tenantshield.domain.erasure import DeletionReport
from tenantshield.domain.models import DeletionReportRecord
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import bind_session_tenant, require_context


async def get_report_record(session: AsyncSession, request_id: str) -> DeletionReportRecord | None:
    result = await session.execute(
        select(DeletionReportRecord).where(
            tenant_predicate(DeletionReportRecord),
            DeletionReportRecord.request_id == request_id,
        )
    )
    return result.scalar_one_or_none()


async def get_report(session: AsyncSession, request_id: str) -> DeletionReport:
    record = await get_report_record(session, request_id)
    if record is None:
        raise ReportNotFound(f"No deletion report for request {request_id}")
    return DeletionReport.from_dict(record.report_json)


async def save_report(session: AsyncSession, report: DeletionReport) -> DeletionReportRecord:
    # Only signed reports are complete; existing rows are never overwritten.
    if not report.signature or not report.signing_key_id:
        raise ReportSigningFailure(f"Refusing to persist unsigned report {report.request_id}")
    tenant_id = require_context()
    if report.tenant_id != tenant_id:
        raise ContextAccessDenied(
            f"Report {report.request_id} belongs to another tenant",
            identity_tenant_id=tenant_id,
            requested_tenant_id=report.tenant_id,
        )
    # Lookup stays tenant-scoped: another tenant reusing the id must neither block nor observe this row.
    if await get_report_record(session, report.request_id) is not None:
        raise ReportImmutable(f"Deletion report {report.request_id} already exists")
    record = DeletionReportRecord(
        request_id=report.request_id,
        tenant_id=report.tenant_id,
        user_id=report.user_id,
        deletion_scope=report.deletion_scope,
        started_at=report.started_at,
        completed_at=report.completed_at,
        integrity_hash=report.integrity_hash,
        signature=report.signature,
        signing_key_id=report.signing_key_id,
        report_json=report.to_dict(),
    )
    session.add(record)
    await session.flush()
    return record


class SqlReportStore:
    """Persists signed reports inside the bound tenant context."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, report: DeletionReport) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await bind_session_tenant(session)
                await save_report(session, report)

    async def get(self, request_id: str) -> DeletionReport:
        async with self._session_factory() as session:
            await bind_session_tenant(session)
            return await get_report(session, request_id)
