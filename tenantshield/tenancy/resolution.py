from __future__ import annotations

import logging

from tenantshield.core.config import get_settings
from tenantshield.core.errors import ContextAccessDenied, ContextMissing
from tenantshield.services.auth.identity import AuthenticatedIdentity
from tenantshield.services.telemetry import increment_counter
from tenantshield.tenancy.context import validate_tenant_id


logger = logging.getLogger(__name__)


def tenant_from_host(host: str | None) -> str | None:
    # Derive a tenant from `<tenant>.<base>` hosts when a subdomain base is configured.
    base = get_settings().tenant_subdomain_base.strip().lower().lstrip(".")
    if not host or not base:
        return None
    hostname = host.split(":", 1)[0].lower()
    suffix = f".{base}"
    if not hostname.endswith(suffix):
        return None
    label = hostname[: -len(suffix)]
    if not label or "." in label:
        return None
    return label


def resolve_request_tenant(
    *,
    identity: AuthenticatedIdentity | None,
    header_tenant_id: str | None = None,
    path_tenant_id: str | None = None,
    host: str | None = None,
) -> str:
    """Resolve the tenant for an inbound request.

    Precedence is identity claim, then the tenant header, then the path
    parameter, then the subdomain. Only the claim is trusted: every other
    candidate that is present must equal it unless the identity is a
    super-admin, in which case the highest-precedence explicit candidate wins.
    """
    explicit: list[tuple[str, str]] = []
    for source, value in (
        ("header", header_tenant_id),
        ("path", path_tenant_id),
        ("subdomain", tenant_from_host(host)),
    ):
        if value:
            explicit.append((source, validate_tenant_id(value)))

    if identity is None:
        if not explicit:
            raise ContextMissing("No tenant could be resolved for the request")
        return explicit[0][1]

    claim = validate_tenant_id(identity.tenant_id)
    if identity.is_super_admin:
        if explicit:
            source, tenant_id = explicit[0]
            if tenant_id != claim:
                logger.info(
                    "tenant.resolution.super_admin_override user_id=%s source=%s tenant_id=%s",
                    identity.user_id,
                    source,
                    tenant_id,
                )
            return tenant_id
        return claim

    for source, tenant_id in explicit:
        if tenant_id != claim:
            increment_counter("tenant_access_denied_total")
            logger.warning(
                "tenant.context.access_denied user_id=%s identity_tenant_id=%s requested_tenant_id=%s source=%s",
                identity.user_id,
                claim,
                tenant_id,
                source,
            )
            raise ContextAccessDenied(
                "Cross-tenant access denied",
                identity_tenant_id=claim,
                requested_tenant_id=tenant_id,
            )
    return claim
