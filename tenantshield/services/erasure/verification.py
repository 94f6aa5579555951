from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from tenantshield.adapters.base import VerifiableAdapter
from tenantshield.core.config import get_settings
from tenantshield.core.errors import VerificationResidualFound
from tenantshield.domain.erasure import DeletionRequest, VerificationResult, utc_now
from tenantshield.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class VerificationEngine:
    """Re-queries each verifiable subsystem for residual subject data after the phases ran."""

    def __init__(self, adapters: Iterable[VerifiableAdapter], *, timeout_ms: int | None = None) -> None:
        self._adapters = [adapter for adapter in adapters if isinstance(adapter, VerifiableAdapter)]
        self._timeout_ms = timeout_ms

    @property
    def subsystems(self) -> list[str]:
        return [adapter.subsystem for adapter in self._adapters]

    async def verify(self, request: DeletionRequest) -> list[VerificationResult]:
        timeout_ms = self._timeout_ms if self._timeout_ms is not None else get_settings().erasure_verification_timeout_ms
        results: list[VerificationResult] = []
        for adapter in self._adapters:
            results.append(await self._verify_one(adapter, request, timeout_ms))
        return results

    async def _verify_one(
        self, adapter: VerifiableAdapter, request: DeletionRequest, timeout_ms: int
    ) -> VerificationResult:
        try:
            residual = await asyncio.wait_for(adapter.count_residual(request), timeout=timeout_ms / 1000.0)
        except Exception as exc:
            # An unanswerable count is unverified, not clean.
            increment_counter(f"erasure_verification_error_total.{adapter.subsystem}")
            logger.error(
                "erasure.verification.error request_id=%s subsystem=%s",
                request.request_id,
                adapter.subsystem,
                exc_info=exc,
            )
            return VerificationResult(
                subsystem=adapter.subsystem,
                verified=False,
                residual_count=-1,
                verification_method=f"{adapter.verification_method}:error",
                timestamp=utc_now(),
            )

        if residual:
            finding = VerificationResidualFound(adapter.subsystem, residual)
            increment_counter(f"erasure_residual_found_total.{adapter.subsystem}")
            logger.error(
                "erasure.verification.residual request_id=%s subsystem=%s residual_count=%s code=%s",
                request.request_id,
                adapter.subsystem,
                residual,
                finding.code,
            )
        return VerificationResult(
            subsystem=adapter.subsystem,
            verified=residual == 0,
            residual_count=int(residual),
            verification_method=adapter.verification_method,
            timestamp=utc_now(),
        )
