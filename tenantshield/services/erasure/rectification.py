from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.core.errors import RectificationInvalid, SubjectNotFound
from tenantshield.domain.models import User
from tenantshield.persistence.guards import tenant_predicate
from tenantshield.tenancy.context import verify_context


logger = logging.getLogger(__name__)

RECTIFIABLE_FIELDS = ("email", "display_name")


async def apply_rectification(
    session: AsyncSession,
    *,
    user_id: str,
    corrections: dict[str, Any],
) -> dict[str, dict[str, Any]]:
    # Returns {field: {"changed": bool}}; previous values are not echoed back.
    await verify_context(session)
    unknown = sorted(set(corrections) - set(RECTIFIABLE_FIELDS))
    if unknown:
        raise RectificationInvalid(f"Fields cannot be rectified: {', '.join(unknown)}")
    if not corrections:
        raise RectificationInvalid("No corrections supplied")
    user = await session.scalar(select(User).where(tenant_predicate(User), User.id == user_id))
    if user is None:
        raise SubjectNotFound(f"User {user_id} not found")
    applied: dict[str, dict[str, Any]] = {}
    for field_name, value in corrections.items():
        changed = getattr(user, field_name) != value
        if changed:
            setattr(user, field_name, value)
        applied[field_name] = {"changed": changed}
    await session.flush()
    logger.info("dsr.rectification.applied user_id=%s fields=%s", user_id, ",".join(sorted(applied)))
    return applied
