from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.core.config import get_settings
from tenantshield.core.errors import AuthorizationError, ContextAccessDenied, IdentityUnavailable
from tenantshield.persistence.db import get_session
from tenantshield.services.audit import get_request_context, record_event
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.services.authz import capabilities
from tenantshield.tenancy.resolution import resolve_request_tenant


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _split_header(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


def _identity_from_dev_headers(request: Request) -> AuthenticatedIdentity:
    # Header identity exists only for local development; production plugs in a real resolver.
    user_id = request.headers.get("X-User-Id")
    tenant_id = request.headers.get("X-User-Tenant")
    if not user_id or not tenant_id:
        raise IdentityUnavailable("X-User-Id and X-User-Tenant headers are required in dev bypass mode")
    return AuthenticatedIdentity.build(
        user_id=user_id,
        tenant_id=tenant_id,
        roles=_split_header(request.headers.get("X-Roles")),
        permissions=_split_header(request.headers.get("X-Permissions")),
        scopes=_split_header(request.headers.get("X-Scopes")),
    )


async def get_current_identity(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedIdentity:
    settings = get_settings()
    request_ctx = get_request_context(request)
    try:
        if not settings.auth_dev_bypass:
            raise IdentityUnavailable("Authentication provider not configured; set AUTH_DEV_BYPASS=true for dev access")
        identity = _identity_from_dev_headers(request)
    except IdentityUnavailable as exc:
        await record_event(
            session=db,
            tenant_id=None,
            actor_type="anonymous",
            actor_id=None,
            event_type="auth.access.failure",
            outcome="failure",
            resource_type="auth",
            request_id=request_ctx["request_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            metadata=_request_metadata(request),
            error_code=exc.code,
            commit=True,
            best_effort=True,
        )
        raise
    return identity


async def get_request_tenant(
    request: Request,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
) -> str:
    # Resolve and cross-check only; handlers bind the context for the duration of their work.
    settings = get_settings()
    try:
        return resolve_request_tenant(
            identity=identity,
            header_tenant_id=request.headers.get(settings.tenant_header),
            path_tenant_id=request.path_params.get("tenant_id"),
            host=request.headers.get("host"),
        )
    except ContextAccessDenied as exc:
        request_ctx = get_request_context(request)
        await record_event(
            session=db,
            tenant_id=identity.tenant_id,
            actor_type="user",
            actor_id=identity.user_id,
            actor_role=",".join(sorted(identity.roles)) or None,
            event_type="tenant.context.access_denied",
            outcome="failure",
            resource_type="tenant",
            resource_id=exc.requested_tenant_id,
            request_id=request_ctx["request_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            metadata=_request_metadata(request),
            error_code=exc.code,
            commit=True,
            best_effort=True,
        )
        raise


def _authz_dependency(check: Callable[[AuthenticatedIdentity, Request], None], requirement: dict):
    async def _dependency(
        request: Request,
        identity: AuthenticatedIdentity = Depends(get_current_identity),
        db: AsyncSession = Depends(get_db),
    ) -> AuthenticatedIdentity:
        try:
            check(identity, request)
        except AuthorizationError as exc:
            # Log authorization denials before the 403 leaves the service.
            request_ctx = get_request_context(request)
            await record_event(
                session=db,
                tenant_id=identity.tenant_id,
                actor_type="user",
                actor_id=identity.user_id,
                actor_role=",".join(sorted(identity.roles)) or None,
                event_type="authz.forbidden",
                outcome="failure",
                resource_type="authz",
                request_id=request_ctx["request_id"],
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                metadata={**_request_metadata(request), **requirement, "missing": exc.missing},
                error_code=exc.code,
                commit=True,
                best_effort=True,
            )
            raise
        return identity

    return _dependency


def require_roles_dep(*roles: str):
    return _authz_dependency(
        lambda identity, _request: capabilities.require_roles(identity, roles),
        {"required_roles": list(roles)},
    )


def require_permissions_dep(*permissions: str):
    return _authz_dependency(
        lambda identity, _request: capabilities.require_permissions(identity, permissions),
        {"required_permissions": list(permissions)},
    )


def require_scopes_dep(*scopes: str):
    return _authz_dependency(
        lambda identity, _request: capabilities.require_scopes(identity, scopes),
        {"required_scopes": list(scopes)},
    )


def require_method_scopes_dep(resource: str):
    # Derive the required scope from the HTTP method, e.g. GET -> `<resource>:read`.
    return _authz_dependency(
        lambda identity, request: capabilities.require_method_scopes(identity, resource, request.method),
        {"scope_resource": resource},
    )
