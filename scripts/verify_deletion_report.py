from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from tenantshield.core.errors import TenantShieldError
from tenantshield.domain.erasure import DeletionReport
from tenantshield.persistence.db import SessionLocal
from tenantshield.persistence.repos.deletion_reports import get_report
from tenantshield.services.crypto.signing import get_report_signer
from tenantshield.services.erasure.proof import ReportVerification, verify_report
from tenantshield.tenancy.context import bind_session_tenant, tenant_scope


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check a deletion report for tampering")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=Path, help="Report JSON exported from the API")
    source.add_argument("--request-id", help="Load the persisted report for this request id")
    parser.add_argument("--tenant-id", help="Tenant that owns the persisted report")
    return parser


async def _load_persisted(tenant_id: str, request_id: str) -> DeletionReport:
    async with tenant_scope(tenant_id):
        async with SessionLocal() as session:
            await bind_session_tenant(session)
            return await get_report(session, request_id)


def _load_file(path: Path) -> DeletionReport:
    payload = json.loads(path.read_text(encoding="utf-8"))
    # Accept both the bare report and the v1 response envelope.
    if isinstance(payload, dict) and "data" in payload and "meta" in payload:
        payload = payload["data"]
    return DeletionReport.from_dict(payload)


def _print_result(result: ReportVerification) -> None:
    print(json.dumps(result.to_dict(), indent=2, sort_keys=True))


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if args.request_id and not args.tenant_id:
        parser.error("--tenant-id is required with --request-id")
    try:
        if args.file is not None:
            report = _load_file(args.file)
        else:
            report = asyncio.run(_load_persisted(args.tenant_id, args.request_id))
    except (OSError, ValueError, KeyError) as exc:
        print(f"verify_deletion_report failed: {exc}", file=sys.stderr)
        return 1
    except TenantShieldError as exc:
        print(f"verify_deletion_report failed: {exc.code}: {exc.message}", file=sys.stderr)
        return 1
    result = verify_report(report, get_report_signer())
    _print_result(result)
    return 0 if result.valid else 2


if __name__ == "__main__":
    raise SystemExit(main())
