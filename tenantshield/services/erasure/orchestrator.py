"""Cascading erasure across every subsystem that holds tenant or subject data.

A run binds the tenant context inside its own task, drives the phases in a
fixed order, re-verifies, then hashes, signs and persists the report. Phase
failures are recorded in the report; only context acquisition and signing
failures raise. Once started, a run is shielded from caller cancellation so
a disconnecting client never leaves a half-erased subject without a report.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantshield.core.config import get_settings
from tenantshield.core.errors import ReportImmutable, ReportSigningFailure, TenantShieldError
from tenantshield.domain.erasure import (
    SUBSYSTEM_ORDER,
    AuditEntry,
    DeletionReport,
    DeletionRequest,
    SubsystemResult,
    VerificationResult,
    utc_now,
)
from tenantshield.services.audit import record_event
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.services.crypto.signing import ReportSigner
from tenantshield.services.erasure.proof import compute_integrity_hash, create_audit_entry, sign_report
from tenantshield.services.erasure.stages import DESTRUCTIVE_SUBSYSTEMS, ORCHESTRATOR_ACTOR, ErasureStage, HeldStage
from tenantshield.services.erasure.verification import VerificationEngine
from tenantshield.services.telemetry import increment_counter
from tenantshield.tenancy.context import bind_session_tenant, tenant_scope


logger = logging.getLogger(__name__)

HoldChecker = Callable[[DeletionRequest], Awaitable[str | None]]


class ReportStore(Protocol):
    async def save(self, report: DeletionReport) -> None:
        ...


def _ordered(stages: Sequence[ErasureStage]) -> list[ErasureStage]:
    seen: set[str] = set()
    for stage in stages:
        if stage.subsystem not in SUBSYSTEM_ORDER:
            raise ValueError(f"unknown erasure subsystem: {stage.subsystem}")
        if stage.subsystem in seen:
            raise ValueError(f"duplicate erasure stage: {stage.subsystem}")
        seen.add(stage.subsystem)
    return sorted(stages, key=lambda stage: SUBSYSTEM_ORDER.index(stage.subsystem))


class ErasureOrchestrator:
    def __init__(
        self,
        *,
        stages: Sequence[ErasureStage],
        verifier: VerificationEngine,
        signer: ReportSigner,
        signing_key_id: str | None = None,
        report_store: ReportStore | None = None,
        hold_checker: HoldChecker | None = None,
        audit_session_factory: async_sessionmaker[AsyncSession] | None = None,
        signing_timeout_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self._stages = _ordered(stages)
        self._verifier = verifier
        self._signer = signer
        self._signing_key_id = signing_key_id or settings.erasure_signing_key_id
        self._report_store = report_store
        self._hold_checker = hold_checker
        self._audit_session_factory = audit_session_factory
        self._signing_timeout_ms = signing_timeout_ms or settings.erasure_phase_timeout_ms

    @property
    def subsystems(self) -> list[str]:
        return [stage.subsystem for stage in self._stages]

    async def process(
        self, request: DeletionRequest, *, identity: AuthenticatedIdentity | None = None
    ) -> DeletionReport:
        # A fresh Context gives the run its own execution unit, independent of the caller's binding.
        task = asyncio.create_task(self._run(request, identity), context=contextvars.Context())
        task.add_done_callback(_log_detached_failure)
        return await asyncio.shield(task)

    async def _run(self, request: DeletionRequest, identity: AuthenticatedIdentity | None) -> DeletionReport:
        async with tenant_scope(request.tenant_id, identity=identity):
            return await self._run_bound(request)

    async def _run_bound(self, request: DeletionRequest) -> DeletionReport:
        run_start = time.monotonic()
        started_at = utc_now()
        increment_counter("erasure_runs_started_total")
        logger.info(
            "dsr.erasure.started request_id=%s tenant_id=%s scope=%s",
            request.request_id,
            request.tenant_id,
            request.scope,
        )
        await self._emit_event(request, "dsr.erasure.started", "started")

        trail: list[AuditEntry] = [
            create_audit_entry(
                "erasure.started",
                "orchestrator",
                request.requested_by,
                {
                    "request_id": request.request_id,
                    "scope": request.scope,
                    "reason": request.reason,
                    "retention_override": request.retention_override,
                },
            )
        ]

        hold_reason = await self._hold_reason(request)
        results: list[SubsystemResult] = []
        for stage in self._stages:
            effective: ErasureStage = stage
            if hold_reason and stage.subsystem in DESTRUCTIVE_SUBSYSTEMS:
                effective = HeldStage(stage, hold_reason)
            outcome = await effective.run(request, trail)
            results.append(outcome.result)
            trail.extend(outcome.entries)

        verification = await self._verifier.verify(request)
        trail.append(
            create_audit_entry(
                "verification.completed",
                "verification",
                ORCHESTRATOR_ACTOR,
                {
                    "request_id": request.request_id,
                    "verified": [item.subsystem for item in verification if item.verified],
                    "unverified": [item.subsystem for item in verification if not item.verified],
                },
            )
        )

        report = self._assemble(request, started_at, results, verification, trail)
        signed = await self._sign(report)
        await self._persist(signed)

        duration_ms = int((time.monotonic() - run_start) * 1000)
        statuses = {item.subsystem: item.status for item in results}
        increment_counter("erasure_runs_completed_total")
        logger.info(
            "dsr.erasure.completed request_id=%s tenant_id=%s duration_ms=%s verified=%s",
            request.request_id,
            request.tenant_id,
            duration_ms,
            signed.fully_verified,
        )
        await self._emit_event(
            request,
            "dsr.erasure.completed",
            "success" if signed.fully_verified else "partial",
            metadata={"statuses": statuses, "integrity_hash": signed.integrity_hash, "duration_ms": duration_ms},
        )
        return signed

    async def _hold_reason(self, request: DeletionRequest) -> str | None:
        if request.retention_override:
            return "retention_override"
        if self._hold_checker is None:
            return None
        return await self._hold_checker(request)

    def _assemble(
        self,
        request: DeletionRequest,
        started_at: datetime,
        results: list[SubsystemResult],
        verification: list[VerificationResult],
        trail: list[AuditEntry],
    ) -> DeletionReport:
        completed_at = utc_now()
        integrity_hash = compute_integrity_hash(results, verification)
        trail.append(
            create_audit_entry(
                "report.assembled",
                "proof",
                ORCHESTRATOR_ACTOR,
                {"request_id": request.request_id, "integrity_hash": integrity_hash},
            )
        )
        return DeletionReport(
            request_id=request.request_id,
            user_id=request.subject_user_id,
            tenant_id=request.tenant_id,
            deletion_scope=request.scope,
            started_at=started_at,
            completed_at=completed_at,
            subsystem_results=tuple(results),
            verification_results=tuple(verification),
            integrity_hash=integrity_hash,
            signature=None,
            audit_trail=tuple(trail),
        )

    async def _sign(self, report: DeletionReport) -> DeletionReport:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(sign_report, report, self._signer, self._signing_key_id),
                timeout=self._signing_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError as exc:
            increment_counter("erasure_signing_failed_total")
            logger.error("dsr.erasure.signing_timeout request_id=%s", report.request_id)
            raise ReportSigningFailure(
                f"Signing deletion report {report.request_id} timed out after {self._signing_timeout_ms}ms"
            ) from exc
        except ReportSigningFailure:
            increment_counter("erasure_signing_failed_total")
            raise

    async def _persist(self, report: DeletionReport) -> None:
        if self._report_store is None:
            return
        try:
            await self._report_store.save(report)
        except ReportImmutable:
            # Re-running a request keeps the first signed report as the record of proof.
            logger.warning("dsr.erasure.report_exists request_id=%s", report.request_id)
        except (SQLAlchemyError, OSError) as exc:
            increment_counter("erasure_report_persist_failed_total")
            logger.error("dsr.erasure.report_persist_failed request_id=%s", report.request_id, exc_info=exc)

    async def _emit_event(
        self,
        request: DeletionRequest,
        event_type: str,
        outcome: str,
        *,
        metadata: dict | None = None,
    ) -> None:
        if self._audit_session_factory is None:
            return
        async with self._audit_session_factory() as session:
            try:
                await bind_session_tenant(session)
            except (SQLAlchemyError, OSError) as exc:
                logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
                return
            await record_event(
                session=session,
                tenant_id=request.tenant_id,
                actor_type="system",
                actor_id=request.requested_by,
                event_type=event_type,
                outcome=outcome,
                resource_type="dsr_request",
                resource_id=request.request_id,
                request_id=request.request_id,
                metadata={"scope": request.scope, **(metadata or {})},
                commit=True,
                best_effort=True,
            )


def _log_detached_failure(task: asyncio.Task) -> None:
    # Shielded runs may outlive a cancelled caller; keep their failures visible.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, TenantShieldError):
        logger.error("dsr.erasure.run_failed", exc_info=exc)
