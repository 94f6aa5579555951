from __future__ import annotations

from dataclasses import dataclass, field

from tenantshield.core.config import get_settings


# Permission that grants cross-tenant access independently of role assignment.
CROSS_TENANT_PERMISSION = "tenants:cross_tenant"


def _split_csv(value: str) -> frozenset[str]:
    return frozenset(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class AuthenticatedIdentity:
    # Produced by the authentication collaborator; consumed read-only by tenancy and authz checks.
    user_id: str
    tenant_id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    scopes: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        *,
        user_id: str,
        tenant_id: str,
        roles: list[str] | tuple[str, ...] | frozenset[str] = (),
        permissions: list[str] | tuple[str, ...] | frozenset[str] = (),
        scopes: list[str] | tuple[str, ...] | frozenset[str] = (),
    ) -> "AuthenticatedIdentity":
        return cls(
            user_id=user_id,
            tenant_id=tenant_id,
            roles=frozenset(roles),
            permissions=frozenset(permissions),
            scopes=frozenset(scopes),
        )

    @property
    def is_super_admin(self) -> bool:
        super_roles = _split_csv(get_settings().super_admin_roles)
        return bool(self.roles & super_roles) or CROSS_TENANT_PERMISSION in self.permissions
