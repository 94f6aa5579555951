from __future__ import annotations

import argparse
import asyncio
import json
import sys
from uuid import uuid4

from tenantshield.core.errors import TenantShieldError
from tenantshield.core.logging import configure_logging
from tenantshield.services.erasure.queue import (
    ErasureJobPayload,
    enqueue_erasure_job,
    erasure_job_id,
    process_erasure_job,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run or enqueue a cascading erasure for one subject")
    parser.add_argument("tenant_id", help="Tenant that owns the subject")
    parser.add_argument("user_id", help="Subject user id")
    parser.add_argument("--request-id", default=None, help="DSR request id (generated when omitted)")
    parser.add_argument("--scope", choices=("user", "tenant", "workspace"), default="user")
    parser.add_argument("--workspace-id", default=None, help="Required for workspace scope")
    parser.add_argument("--email", default=None, help="Subject email, redacted from logs")
    parser.add_argument("--requested-by", default="cli:run_erasure")
    parser.add_argument("--reason", default=None)
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Hand the run to the erasure worker instead of running it in this process",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    payload = ErasureJobPayload(
        request_id=args.request_id or f"dsr_{uuid4().hex}",
        tenant_id=args.tenant_id,
        subject_user_id=args.user_id,
        scope=args.scope,
        requested_by=args.requested_by,
        reason=args.reason,
        workspace_id=args.workspace_id,
        user_email=args.email,
    )
    if args.enqueue:
        job_id = await enqueue_erasure_job(payload)
        print(f"erasure_enqueued request_id={payload.request_id} job_id={job_id}")
        return 0
    report = await process_erasure_job(payload, job_id=erasure_job_id(payload.tenant_id, payload.request_id))
    if report is None:
        print(f"erasure_skipped request_id={payload.request_id} reason=not_queued")
        return 0
    print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    # Non-zero exit flags runs that need operator follow-up.
    return 0 if report.fully_verified else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    if args.scope == "workspace" and not args.workspace_id:
        print("run_erasure failed: --workspace-id is required for workspace scope", file=sys.stderr)
        return 1
    try:
        return asyncio.run(_run(args))
    except TenantShieldError as exc:
        print(f"run_erasure failed: {exc.code}: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
