from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.core.errors import (
    ContextAccessDenied,
    ContextAlreadyBound,
    ContextMissing,
    ContextValidationError,
    ContextVerificationFailure,
)
from tenantshield.persistence.tenant_session import read_session_tenant, write_session_tenant
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TENANT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

T = TypeVar("T")


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    # Identity that established the context, when one was present.
    user_id: str | None = None
    super_admin: bool = False


_current_context: ContextVar[TenantContext | None] = ContextVar("tenantshield_tenant_context", default=None)


def validate_tenant_id(tenant_id: object) -> str:
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.match(tenant_id):
        raise ContextValidationError(
            "tenant_id must be 1-64 characters of letters, digits, underscore or hyphen"
        )
    return tenant_id


def ensure_tenant_access(identity: AuthenticatedIdentity | None, tenant_id: str) -> None:
    # Only the identity claim is trusted; any other tenant id must match it unless super-admin.
    if identity is None or identity.tenant_id == tenant_id or identity.is_super_admin:
        return
    increment_counter("tenant_access_denied_total")
    logger.warning(
        "tenant.context.access_denied user_id=%s identity_tenant_id=%s requested_tenant_id=%s",
        identity.user_id,
        identity.tenant_id,
        tenant_id,
    )
    raise ContextAccessDenied(
        "Cross-tenant access denied",
        identity_tenant_id=identity.tenant_id,
        requested_tenant_id=tenant_id,
    )


class TenantContextHandle:
    """Release handle returned by :func:`set_context`.

    ``release()`` is idempotent, and the handle works as a (sync) context manager
    so callers outside of async code still clear the binding on every exit path.
    """

    def __init__(self, context: TenantContext, token: Token) -> None:
        self.context = context
        self._token = token
        self._released = False

    @property
    def tenant_id(self) -> str:
        return self.context.tenant_id

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            _current_context.reset(self._token)
        except ValueError:
            # Token was created in another execution context; clear the binding directly.
            _current_context.set(None)

    def __enter__(self) -> "TenantContextHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def set_context(tenant_id: str, *, identity: AuthenticatedIdentity | None = None) -> TenantContextHandle:
    tenant_id = validate_tenant_id(tenant_id)
    ensure_tenant_access(identity, tenant_id)
    existing = _current_context.get()
    if existing is not None:
        # Nesting would silently shadow the outer tenant; fail fast instead.
        raise ContextAlreadyBound(
            f"tenant context already bound to {existing.tenant_id}; release it before binding {tenant_id}"
        )
    context = TenantContext(
        tenant_id=tenant_id,
        user_id=identity.user_id if identity is not None else None,
        super_admin=identity.is_super_admin if identity is not None else False,
    )
    token = _current_context.set(context)
    logger.debug("tenant.context.bound tenant_id=%s", tenant_id)
    return TenantContextHandle(context, token)


def get_context() -> str | None:
    context = _current_context.get()
    return context.tenant_id if context is not None else None


def get_tenant_context() -> TenantContext | None:
    return _current_context.get()


def require_context() -> str:
    tenant_id = get_context()
    if tenant_id is None:
        raise ContextMissing("Tenant-scoped operation attempted without a tenant context")
    return tenant_id


@asynccontextmanager
async def tenant_scope(
    tenant_id: str, *, identity: AuthenticatedIdentity | None = None
) -> AsyncIterator[TenantContextHandle]:
    handle = set_context(tenant_id, identity=identity)
    try:
        yield handle
    finally:
        # Runs on return, error, and cancellation alike.
        handle.release()


async def run_in_tenant_context(
    tenant_id: str,
    fn: Callable[[], Awaitable[T]],
    *,
    identity: AuthenticatedIdentity | None = None,
) -> T:
    async with tenant_scope(tenant_id, identity=identity):
        return await fn()


async def verify_context(session: AsyncSession) -> str:
    """Confirm the database session is bound to the same tenant as the execution unit."""
    expected = require_context()
    observed = await read_session_tenant(session)
    if observed != expected:
        increment_counter("tenant_context_verification_failed_total")
        logger.critical(
            "tenant.context.verification_failed expected_tenant_id=%s observed_tenant_id=%s",
            expected,
            observed,
        )
        raise ContextVerificationFailure(
            "Database session tenant does not match the bound tenant context",
            expected=expected,
            observed=observed,
        )
    return expected


async def bind_session_tenant(session: AsyncSession) -> str:
    # Push the bound tenant into the session (RLS on PostgreSQL) and read it back.
    tenant_id = require_context()
    await write_session_tenant(session, tenant_id)
    return await verify_context(session)
