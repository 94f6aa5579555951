"""Audit-entry hashing, report integrity hashing, and report signing/verification.

The integrity hash covers only the subsystem and verification results; the
signature binds that hash to the request id and completion timestamp so a
report cannot be replayed against another request or time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable

from tenantshield.core.errors import ReportSigningFailure
from tenantshield.domain.erasure import (
    AuditEntry,
    DeletionReport,
    SubsystemResult,
    VerificationResult,
    isoformat,
    utc_now,
)
from tenantshield.services.crypto.signing import ReportSigner
from tenantshield.services.crypto.utils import sha256_hex, stable_json


logger = logging.getLogger(__name__)


def _entry_hash(*, timestamp: datetime, event: str, subsystem: str, actor: str, details: dict[str, Any]) -> str:
    return sha256_hex(
        stable_json(
            {
                "timestamp": isoformat(timestamp),
                "event": event,
                "subsystem": subsystem,
                "actor": actor,
                "details": details,
            }
        )
    )


def create_audit_entry(
    event: str,
    subsystem: str,
    actor: str,
    details: dict[str, Any] | None = None,
    *,
    timestamp: datetime | None = None,
) -> AuditEntry:
    ts = timestamp or utc_now()
    payload = dict(details or {})
    return AuditEntry(
        timestamp=ts,
        event=event,
        subsystem=subsystem,
        actor=actor,
        details=payload,
        hash=_entry_hash(timestamp=ts, event=event, subsystem=subsystem, actor=actor, details=payload),
    )


def audit_entry_intact(entry: AuditEntry) -> bool:
    expected = _entry_hash(
        timestamp=entry.timestamp,
        event=entry.event,
        subsystem=entry.subsystem,
        actor=entry.actor,
        details=entry.details,
    )
    return expected == entry.hash


def compute_integrity_hash(
    subsystem_results: Iterable[SubsystemResult],
    verification_results: Iterable[VerificationResult],
) -> str:
    return sha256_hex(
        stable_json(
            {
                "subsystem_results": [item.to_dict() for item in subsystem_results],
                "verification_results": [item.to_dict() for item in verification_results],
            }
        )
    )


def signing_payload(report: DeletionReport) -> bytes:
    return f"{report.request_id}:{report.integrity_hash}:{isoformat(report.completed_at)}".encode("utf-8")


def sign_report(report: DeletionReport, signer: ReportSigner, key_id: str) -> DeletionReport:
    try:
        signature = signer.sign(signing_payload(report), key_id)
    except Exception as exc:
        logger.error(
            "deletion_report_signing_failed request_id=%s provider=%s key_id=%s",
            report.request_id,
            getattr(signer, "provider", "unknown"),
            key_id,
            exc_info=exc,
        )
        raise ReportSigningFailure(f"Signing deletion report {report.request_id} failed") from exc
    if not signature:
        raise ReportSigningFailure(f"Signer returned an empty signature for {report.request_id}")
    return replace(report, signature=signature, signing_key_id=key_id)


@dataclass(frozen=True)
class ReportVerification:
    request_id: str
    integrity_ok: bool
    signature_ok: bool
    audit_trail_ok: bool
    reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def valid(self) -> bool:
        return self.integrity_ok and self.signature_ok and self.audit_trail_ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "valid": self.valid,
            "integrity_ok": self.integrity_ok,
            "signature_ok": self.signature_ok,
            "audit_trail_ok": self.audit_trail_ok,
            "reasons": list(self.reasons),
        }


def verify_report(report: DeletionReport, signer: ReportSigner) -> ReportVerification:
    reasons: list[str] = []
    recomputed = compute_integrity_hash(report.subsystem_results, report.verification_results)
    integrity_ok = recomputed == report.integrity_hash
    if not integrity_ok:
        reasons.append("integrity_hash does not match subsystem and verification results")

    signature_ok = False
    if not report.signature or not report.signing_key_id:
        reasons.append("report is unsigned")
    else:
        signature_ok = signer.verify(signing_payload(report), report.signature, report.signing_key_id)
        if not signature_ok:
            reasons.append("signature does not match request_id, integrity_hash and completed_at")

    tampered = [entry.event for entry in report.audit_trail if not audit_entry_intact(entry)]
    audit_trail_ok = not tampered
    if tampered:
        reasons.append(f"audit entries failed hash check: {', '.join(tampered)}")

    return ReportVerification(
        request_id=report.request_id,
        integrity_ok=integrity_ok,
        signature_ok=signature_ok,
        audit_trail_ok=audit_trail_ok,
        reasons=tuple(reasons),
    )
