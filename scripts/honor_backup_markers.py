from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import select

from tenantshield.adapters.backup_markers import list_pending_markers, mark_honored
from tenantshield.domain.models import BackupDeletionMarker
from tenantshield.persistence.db import SessionLocal
from tenantshield.services.audit import record_event
from tenantshield.tenancy.context import bind_session_tenant, tenant_scope


def _build_parser() -> argparse.ArgumentParser:
    # Run after a backup restore has replayed pending erasures for the listed tenants.
    parser = argparse.ArgumentParser(description="Mark pending backup deletion markers as honored")
    parser.add_argument("--tenant-id", action="append", default=None, help="Limit to tenant (repeatable)")
    parser.add_argument("--limit", type=int, default=100, help="Markers per tenant per run")
    parser.add_argument("--dry-run", action="store_true", help="List markers without changing them")
    return parser


async def _pending_tenants() -> list[str]:
    # Tenant discovery runs under the maintenance role, which bypasses row-level security.
    # Each tenant is then processed under its own context.
    async with SessionLocal() as session:
        result = await session.scalars(
            select(BackupDeletionMarker.tenant_id).where(BackupDeletionMarker.status == "pending").distinct()
        )
        return sorted(result.all())


async def _honor_tenant(tenant_id: str, *, limit: int, dry_run: bool) -> int:
    async with tenant_scope(tenant_id):
        async with SessionLocal() as session:
            await bind_session_tenant(session)
            markers = await list_pending_markers(session, limit=limit)
            for marker in markers:
                print(f"marker tenant_id={tenant_id} request_id={marker.request_id} user_id={marker.user_id}")
                if not dry_run:
                    await mark_honored(session, marker)
            if dry_run or not markers:
                return len(markers)
            await record_event(
                session=session,
                tenant_id=tenant_id,
                actor_type="system",
                actor_id="honor_backup_markers",
                event_type="dsr.backup_markers.honored",
                outcome="success",
                resource_type="backup_deletion_marker",
                metadata={"request_ids": [marker.request_id for marker in markers]},
            )
            await session.commit()
            return len(markers)


async def _run(args: argparse.Namespace) -> int:
    tenants = args.tenant_id or await _pending_tenants()
    total = 0
    for tenant_id in tenants:
        total += await _honor_tenant(tenant_id, limit=args.limit, dry_run=args.dry_run)
    print(f"backup_markers_{'pending' if args.dry_run else 'honored'}={total}")
    return 0


def main() -> int:
    return asyncio.run(_run(_build_parser().parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
