from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


# Session variable consulted by row-level security policies.
TENANT_SETTING = "app.current_tenant_id"
_INFO_KEY = "tenant_id"


def session_backend(session: AsyncSession) -> str:
    bind = session.get_bind()
    return bind.dialect.name


async def write_session_tenant(session: AsyncSession, tenant_id: str | None) -> None:
    # RLS: set_config is transaction-local on PostgreSQL; other dialects only track the label in session info.
    session.info[_INFO_KEY] = tenant_id
    if session_backend(session) == "postgresql":
        await session.execute(
            text("SELECT set_config(:setting, :tid, true)"),
            {"setting": TENANT_SETTING, "tid": tenant_id or ""},
        )


async def read_session_tenant(session: AsyncSession) -> str | None:
    # Ask the store itself which tenant it believes is bound rather than trusting the caller.
    if session_backend(session) == "postgresql":
        value = await session.scalar(
            text("SELECT current_setting(:setting, true)"),
            {"setting": TENANT_SETTING},
        )
        return value or None
    value = session.info.get(_INFO_KEY)
    return value or None
