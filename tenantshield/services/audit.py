from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenantshield.core.logging import pseudonymize_identifier
from tenantshield.domain.models import AuditEvent
from tenantshield.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Credentials plus the subject fields a DSR can carry; audit rows outlive the erased data.
_SENSITIVE_KEY_FRAGMENTS = (
    "authorization",
    "token",
    "secret",
    "password",
    "signature_key",
    "email",
    "phone",
    "display_name",
    "corrections",
)
_REDACTED_VALUE = "[REDACTED]"
_EMAIL_VALUE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Scrub audit metadata before it is persisted.

    Values under sensitive keys are replaced outright. Email-shaped strings
    that slip through under innocuous keys are swapped for their stable
    pseudonym so events about the same subject still correlate after erasure.
    """
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and _EMAIL_VALUE.match(value):
        return pseudonymize_identifier(value)
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def _report_failure(event_type: str, request_id: str | None, exc: Exception, *, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id, exc_info=exc)
    if not best_effort:
        raise exc


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Best-effort by default: a lost audit row must never abort an erasure in flight.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        # audit_events sits outside row level security, so an unbound session may write it.
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except (SQLAlchemyError, OSError) as exc:
                await audit_session.rollback()
                _report_failure(event_type, request_id, exc, best_effort=best_effort)
        return

    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        _report_failure(event_type, request_id, exc, best_effort=best_effort)
