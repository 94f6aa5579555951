from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol, Sequence

from tenantshield.adapters.base import ErasureAdapter
from tenantshield.core.config import get_settings
from tenantshield.core.errors import SubsystemDeletionFailure
from tenantshield.domain.erasure import AuditEntry, DeletionRequest, StageOutcome, SubsystemResult
from tenantshield.services.crypto.utils import sha256_hex, stable_json
from tenantshield.services.erasure.proof import create_audit_entry
from tenantshield.services.telemetry import record_phase


logger = logging.getLogger(__name__)

ORCHESTRATOR_ACTOR = "system:erasure"
# Phases that remove data; a legal hold skips these and only these.
DESTRUCTIVE_SUBSYSTEMS = frozenset({"relational", "vector", "object", "cache"})


class ErasureStage(Protocol):
    subsystem: str

    async def run(self, request: DeletionRequest, audit_trail: Sequence[AuditEntry]) -> StageOutcome:
        ...


def _result_hash(subsystem: str, records_deleted: int, details: dict) -> str:
    return sha256_hex(stable_json({"subsystem": subsystem, "records_deleted": records_deleted, "details": details}))


class AdapterStage:
    """Runs one adapter under a timeout and converts every failure into a result."""

    def __init__(self, adapter: ErasureAdapter, *, timeout_ms: int | None = None) -> None:
        self.adapter = adapter
        self.subsystem = adapter.subsystem
        self._timeout_ms = timeout_ms

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms if self._timeout_ms is not None else get_settings().erasure_phase_timeout_ms

    async def run(self, request: DeletionRequest, audit_trail: Sequence[AuditEntry]) -> StageOutcome:
        entries = [
            create_audit_entry(
                "phase.started",
                self.subsystem,
                ORCHESTRATOR_ACTOR,
                {"request_id": request.request_id, "position": len(audit_trail)},
            )
        ]
        timeout_ms = self.timeout_ms
        start = time.monotonic()
        try:
            outcome = await asyncio.wait_for(self.adapter.delete_subject(request), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            duration_ms = int((time.monotonic() - start) * 1000)
            error = f"timeout after {timeout_ms}ms"
            result = SubsystemResult(
                subsystem=self.subsystem, status="failed", errors=(error,), duration_ms=duration_ms
            )
            logger.error("erasure.phase.timeout request_id=%s subsystem=%s", request.request_id, self.subsystem)
        except Exception as exc:
            # Fault isolation: a failing phase is reported, never raised.
            duration_ms = int((time.monotonic() - start) * 1000)
            failure = exc if isinstance(exc, SubsystemDeletionFailure) else SubsystemDeletionFailure(
                self.subsystem, f"{exc.__class__.__name__}: {exc}"
            )
            result = SubsystemResult(
                subsystem=self.subsystem, status="failed", errors=(failure.message,), duration_ms=duration_ms
            )
            logger.error(
                "erasure.phase.failed request_id=%s subsystem=%s code=%s",
                request.request_id,
                self.subsystem,
                failure.code,
                exc_info=exc,
            )
        else:
            duration_ms = int((time.monotonic() - start) * 1000)
            status = "partial" if outcome.errors else "success"
            result = SubsystemResult(
                subsystem=self.subsystem,
                status=status,
                records_deleted=outcome.records_deleted,
                errors=tuple(outcome.errors),
                duration_ms=duration_ms,
                verification_hash=_result_hash(self.subsystem, outcome.records_deleted, outcome.details),
                details=outcome.details,
            )
            logger.info(
                "erasure.phase.completed request_id=%s subsystem=%s status=%s records_deleted=%s duration_ms=%s",
                request.request_id,
                self.subsystem,
                status,
                outcome.records_deleted,
                duration_ms,
            )

        record_phase(subsystem=self.subsystem, status=result.status, duration_ms=result.duration_ms)
        entries.append(
            create_audit_entry(
                f"phase.{result.status}",
                self.subsystem,
                ORCHESTRATOR_ACTOR,
                {
                    "request_id": request.request_id,
                    "records_deleted": result.records_deleted,
                    "errors": list(result.errors),
                    "duration_ms": result.duration_ms,
                },
            )
        )
        return StageOutcome(result=result, entries=tuple(entries))


class HeldStage:
    """Stands in for a destructive stage while a legal hold or retention override applies."""

    def __init__(self, stage: ErasureStage, reason: str) -> None:
        self.stage = stage
        self.subsystem = stage.subsystem
        self.reason = reason

    async def run(self, request: DeletionRequest, audit_trail: Sequence[AuditEntry]) -> StageOutcome:
        result = SubsystemResult(
            subsystem=self.subsystem,
            status="skipped",
            details={"skipped_reason": self.reason},
        )
        record_phase(subsystem=self.subsystem, status="skipped", duration_ms=0)
        logger.warning(
            "erasure.phase.skipped request_id=%s subsystem=%s reason=%s",
            request.request_id,
            self.subsystem,
            self.reason,
        )
        entry = create_audit_entry(
            "phase.skipped",
            self.subsystem,
            ORCHESTRATOR_ACTOR,
            {"request_id": request.request_id, "reason": self.reason},
        )
        return StageOutcome(result=result, entries=(entry,))
