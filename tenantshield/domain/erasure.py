from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


DeletionScope = Literal["user", "tenant", "workspace"]
SubsystemName = Literal["relational", "vector", "object", "cache", "logs", "backups"]
SubsystemStatus = Literal["success", "partial", "failed", "skipped"]

DELETION_SCOPES: tuple[str, ...] = ("user", "tenant", "workspace")
# Phase order is fixed: relational first so dependent stores never outlive their source rows.
SUBSYSTEM_ORDER: tuple[str, ...] = ("relational", "vector", "object", "cache", "logs", "backups")
SUBSYSTEM_STATUSES: tuple[str, ...] = ("success", "partial", "failed", "skipped")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class DeletionRequest:
    request_id: str
    subject_user_id: str
    tenant_id: str
    scope: DeletionScope
    requested_by: str
    reason: str | None = None
    retention_override: bool = False
    workspace_id: str | None = None
    user_email: str | None = None
    requested_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.scope not in DELETION_SCOPES:
            raise ValueError(f"unsupported deletion scope: {self.scope}")
        if self.scope == "workspace" and not self.workspace_id:
            raise ValueError("workspace_id is required for workspace-scoped deletion")
        if not self.request_id:
            raise ValueError("request_id is required")
        if not self.subject_user_id:
            raise ValueError("subject_user_id is required")

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "subject_user_id": self.subject_user_id,
            "tenant_id": self.tenant_id,
            "scope": self.scope,
            "requested_by": self.requested_by,
            "reason": self.reason,
            "retention_override": self.retention_override,
            "workspace_id": self.workspace_id,
            "user_email": self.user_email,
            "requested_at": isoformat(self.requested_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DeletionRequest":
        return cls(
            request_id=payload["request_id"],
            subject_user_id=payload["subject_user_id"],
            tenant_id=payload["tenant_id"],
            scope=payload.get("scope", "user"),
            requested_by=payload["requested_by"],
            reason=payload.get("reason"),
            retention_override=bool(payload.get("retention_override", False)),
            workspace_id=payload.get("workspace_id"),
            user_email=payload.get("user_email"),
            requested_at=parse_datetime(payload["requested_at"]) if payload.get("requested_at") else utc_now(),
        )


@dataclass(frozen=True)
class SubsystemResult:
    subsystem: SubsystemName
    status: SubsystemStatus
    records_deleted: int = 0
    errors: tuple[str, ...] = ()
    duration_ms: int = 0
    verification_hash: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.subsystem not in SUBSYSTEM_ORDER:
            raise ValueError(f"unknown subsystem: {self.subsystem}")
        if self.status not in SUBSYSTEM_STATUSES:
            raise ValueError(f"unknown subsystem status: {self.status}")
        if self.status == "partial" and not self.errors:
            raise ValueError("partial subsystem results must carry at least one error")
        if self.records_deleted < 0:
            raise ValueError("records_deleted must be non-negative")
        object.__setattr__(self, "errors", tuple(self.errors))

    def to_dict(self) -> dict[str, Any]:
        return {
            "subsystem": self.subsystem,
            "status": self.status,
            "records_deleted": self.records_deleted,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "verification_hash": self.verification_hash,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SubsystemResult":
        return cls(
            subsystem=payload["subsystem"],
            status=payload["status"],
            records_deleted=int(payload.get("records_deleted", 0)),
            errors=tuple(payload.get("errors") or ()),
            duration_ms=int(payload.get("duration_ms", 0)),
            verification_hash=payload.get("verification_hash"),
            details=dict(payload.get("details") or {}),
        )


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    event: str
    subsystem: str
    actor: str
    details: dict[str, Any]
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": isoformat(self.timestamp),
            "event": self.event,
            "subsystem": self.subsystem,
            "actor": self.actor,
            "details": self.details,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AuditEntry":
        return cls(
            timestamp=parse_datetime(payload["timestamp"]),
            event=payload["event"],
            subsystem=payload["subsystem"],
            actor=payload["actor"],
            details=dict(payload.get("details") or {}),
            hash=payload["hash"],
        )


@dataclass(frozen=True)
class VerificationResult:
    subsystem: str
    verified: bool
    residual_count: int
    verification_method: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subsystem": self.subsystem,
            "verified": self.verified,
            "residual_count": self.residual_count,
            "verification_method": self.verification_method,
            "timestamp": isoformat(self.timestamp),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "VerificationResult":
        return cls(
            subsystem=payload["subsystem"],
            verified=bool(payload["verified"]),
            residual_count=int(payload["residual_count"]),
            verification_method=payload["verification_method"],
            timestamp=parse_datetime(payload["timestamp"]),
        )


@dataclass(frozen=True)
class StageOutcome:
    result: SubsystemResult
    entries: tuple[AuditEntry, ...] = ()


@dataclass(frozen=True)
class DeletionReport:
    request_id: str
    user_id: str
    tenant_id: str
    deletion_scope: DeletionScope
    started_at: datetime
    completed_at: datetime
    subsystem_results: tuple[SubsystemResult, ...]
    verification_results: tuple[VerificationResult, ...]
    integrity_hash: str
    signature: str | None
    audit_trail: tuple[AuditEntry, ...]
    signing_key_id: str | None = None

    @property
    def is_signed(self) -> bool:
        return bool(self.signature)

    @property
    def fully_verified(self) -> bool:
        return all(item.verified for item in self.verification_results)

    def result_for(self, subsystem: str) -> SubsystemResult | None:
        for result in self.subsystem_results:
            if result.subsystem == subsystem:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "deletion_scope": self.deletion_scope,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "subsystem_results": [item.to_dict() for item in self.subsystem_results],
            "verification_results": [item.to_dict() for item in self.verification_results],
            "integrity_hash": self.integrity_hash,
            "signature": self.signature,
            "signing_key_id": self.signing_key_id,
            "audit_trail": [item.to_dict() for item in self.audit_trail],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DeletionReport":
        return cls(
            request_id=payload["request_id"],
            user_id=payload["user_id"],
            tenant_id=payload["tenant_id"],
            deletion_scope=payload["deletion_scope"],
            started_at=parse_datetime(payload["started_at"]),
            completed_at=parse_datetime(payload["completed_at"]),
            subsystem_results=tuple(SubsystemResult.from_dict(item) for item in payload["subsystem_results"]),
            verification_results=tuple(
                VerificationResult.from_dict(item) for item in payload["verification_results"]
            ),
            integrity_hash=payload["integrity_hash"],
            signature=payload.get("signature"),
            audit_trail=tuple(AuditEntry.from_dict(item) for item in payload.get("audit_trail") or ()),
            signing_key_id=payload.get("signing_key_id"),
        )
