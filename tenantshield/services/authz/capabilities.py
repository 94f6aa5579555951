from __future__ import annotations

from typing import Iterable

from tenantshield.core.errors import (
    InsufficientPermissions,
    InsufficientRoles,
    InsufficientScopes,
    UnsupportedMethod,
)
from tenantshield.services.auth.identity import AuthenticatedIdentity


_METHOD_ACTIONS: dict[str, tuple[str, ...]] = {
    "GET": ("read",),
    "HEAD": ("read",),
    "POST": ("create", "write"),
    "PUT": ("update", "write"),
    "PATCH": ("update", "write"),
    "DELETE": ("delete", "write"),
}


def scope_satisfied(granted: Iterable[str], required: str) -> bool:
    # `*` grants everything and `resource:*` grants every action on that resource.
    granted_set = set(granted)
    if "*" in granted_set or required in granted_set:
        return True
    resource, sep, _action = required.partition(":")
    return bool(sep) and f"{resource}:*" in granted_set


def require_roles(identity: AuthenticatedIdentity, required: Iterable[str]) -> None:
    required_list = list(required)
    if not required_list:
        return
    if identity.roles.isdisjoint(required_list):
        raise InsufficientRoles(
            f"One of roles {', '.join(required_list)} is required",
            required=required_list,
            missing=required_list,
        )


def require_permissions(identity: AuthenticatedIdentity, required: Iterable[str]) -> None:
    required_list = list(required)
    missing = [item for item in required_list if item not in identity.permissions]
    if missing:
        raise InsufficientPermissions(
            f"Missing permissions: {', '.join(missing)}",
            required=required_list,
            missing=missing,
        )


def require_scopes(identity: AuthenticatedIdentity, required: Iterable[str]) -> None:
    required_list = list(required)
    missing = [item for item in required_list if not scope_satisfied(identity.scopes, item)]
    if missing:
        raise InsufficientScopes(
            f"Missing scopes: {', '.join(missing)}",
            required=required_list,
            missing=missing,
        )


def require_any_scope(identity: AuthenticatedIdentity, alternatives: Iterable[str]) -> None:
    alternatives_list = list(alternatives)
    if any(scope_satisfied(identity.scopes, item) for item in alternatives_list):
        return
    raise InsufficientScopes(
        f"One of scopes {', '.join(alternatives_list)} is required",
        required=alternatives_list,
        missing=alternatives_list,
    )


def scopes_for_method(resource: str, method: str) -> list[str]:
    actions = _METHOD_ACTIONS.get(method.upper())
    if actions is None:
        raise UnsupportedMethod(f"HTTP method {method} has no scope mapping")
    return [f"{resource}:{action}" for action in actions]


def require_method_scopes(identity: AuthenticatedIdentity, resource: str, method: str) -> None:
    # Any mapped alternative suffices, e.g. `dsr:write` covers POST and DELETE alike.
    require_any_scope(identity, scopes_for_method(resource, method))
