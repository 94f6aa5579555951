from __future__ import annotations

from tenantshield.tenancy.context import require_context


def tenant_predicate(model) -> object:
    # Build tenant predicates through a single helper so no query escapes the bound context.
    return model.tenant_id == require_context()
