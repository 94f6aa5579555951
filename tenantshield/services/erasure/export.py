from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshield.adapters.relational import DELETION_ORDER, subject_criteria
from tenantshield.domain.erasure import DeletionRequest, isoformat, utc_now
from tenantshield.services.crypto.utils import sha256_hex, stable_json
from tenantshield.tenancy.context import require_context, verify_context


def _row_to_dict(row: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for column in inspect(row).mapper.column_attrs:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = isoformat(value)
        payload[column.key] = value
    return payload


async def export_subject_data(session: AsyncSession, request: DeletionRequest) -> dict[str, Any]:
    """Collect every relational row tied to the subject for access and portability requests.

    The session must already be bound to the request tenant; rows are selected
    with the same criteria the erasure phase deletes, so an export previews
    exactly what erasure would remove.
    """
    await verify_context(session)
    tables: dict[str, list[dict[str, Any]]] = {}
    # Parents first reads naturally in an export.
    for table, model in reversed(DELETION_ORDER):
        criteria = subject_criteria(table, request)
        if criteria is None:
            continue
        result = await session.scalars(select(model).where(*criteria))
        rows = [_row_to_dict(row) for row in result.all()]
        if rows:
            tables[table] = rows
    data = {"tenant_id": require_context(), "user_id": request.subject_user_id, "tables": tables}
    return {
        "request_id": request.request_id,
        "exported_at": isoformat(utc_now()),
        "data": data,
        "record_count": sum(len(rows) for rows in tables.values()),
        "integrity_hash": sha256_hex(stable_json(data)),
    }
