from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from tenantshield.domain.erasure import DeletionRequest


@dataclass
class DeletionOutcome:
    # Adapters raise on total failure; recoverable per-item errors land here and make the phase partial.
    records_deleted: int = 0
    errors: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


class ErasureAdapter(Protocol):
    subsystem: str

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        ...


@runtime_checkable
class VerifiableAdapter(Protocol):
    subsystem: str
    verification_method: str

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        ...

    async def count_residual(self, request: DeletionRequest) -> int:
        ...
