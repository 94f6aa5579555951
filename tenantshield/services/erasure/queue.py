from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Literal

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import in_progress_key_prefix, job_key_prefix
from arq.jobs import Job, JobStatus
from pydantic import BaseModel, Field
from redis.exceptions import RedisError, WatchError

from tenantshield.core.config import get_settings
from tenantshield.core.errors import (
    ContextAccessDenied,
    ErasureJobNotCancellable,
    ErasureQueueUnavailable,
    TenantShieldError,
)
from tenantshield.domain.erasure import DeletionReport, DeletionRequest
from tenantshield.persistence.db import SessionLocal
from tenantshield.persistence.repos import dsr_requests as dsr_repo
from tenantshield.services.erasure.factory import get_erasure_orchestrator
from tenantshield.tenancy.context import bind_session_tenant, require_context, tenant_scope


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()

ERASURE_JOB_FUNCTION = "run_erasure"
# How long a cancelled job keeps its in-progress fence so a worker mid-claim backs off.
_CANCEL_FENCE_MS = 60_000


class ErasureJobPayload(BaseModel):
    # Published schema for API-to-worker handoff.
    request_id: str
    tenant_id: str
    subject_user_id: str
    scope: Literal["user", "tenant", "workspace"] = "user"
    requested_by: str
    reason: str | None = None
    retention_override: bool = False
    workspace_id: str | None = None
    user_email: str | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_request(cls, request: DeletionRequest) -> "ErasureJobPayload":
        return cls.model_validate(request.to_dict())

    def to_request(self) -> DeletionRequest:
        return DeletionRequest(
            request_id=self.request_id,
            subject_user_id=self.subject_user_id,
            tenant_id=self.tenant_id,
            scope=self.scope,
            requested_by=self.requested_by,
            reason=self.reason,
            retention_override=self.retention_override,
            workspace_id=self.workspace_id,
            user_email=self.user_email,
            requested_at=self.requested_at,
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_redis_pool() -> ArqRedis:
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.erasure_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def close_redis_pool() -> None:
    global _redis_pool, _redis_pool_loop
    if _redis_pool is None:
        return
    await _redis_pool.aclose()
    _redis_pool = None
    _redis_pool_loop = None


def erasure_job_id(tenant_id: str, request_id: str) -> str:
    # Tenant ids never contain ":", so the pair is unambiguous and two tenants may share a request id.
    return f"{tenant_id}:{request_id}"


async def enqueue_erasure_job(payload: ErasureJobPayload) -> str:
    settings = get_settings()
    job_id = erasure_job_id(payload.tenant_id, payload.request_id)
    if settings.erasure_execution_mode.lower() == "inline":
        await process_erasure_job(payload, job_id=job_id)
        return job_id
    try:
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            ERASURE_JOB_FUNCTION,
            payload.model_dump(mode="json"),
            _job_id=job_id,
            _queue_name=settings.erasure_queue_name,
        )
    except (RedisError, OSError) as exc:
        raise ErasureQueueUnavailable("Erasure queue unavailable") from exc
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def _dequeue_unstarted(redis: ArqRedis, queue_name: str, job_id: str) -> bool:
    """Remove a job from the queue only while no worker holds it.

    arq keeps a running job in the queue set until it finishes, so ``zrem``
    alone cannot tell queued from started. Workers claim a job by WATCHing its
    in-progress key and setting it inside MULTI; doing the same here makes the
    claim and the removal mutually exclusive. The short-lived in-progress key
    written on success makes a worker that already read the queue skip the job.
    """
    in_progress_key = in_progress_key_prefix + job_id
    async with redis.pipeline(transaction=True) as pipe:
        await pipe.watch(in_progress_key)
        if await pipe.exists(in_progress_key):
            return False
        pipe.multi()
        pipe.zrem(queue_name, job_id)
        pipe.delete(job_key_prefix + job_id)
        pipe.psetex(in_progress_key, _CANCEL_FENCE_MS, b"cancelled")
        try:
            removed, _deleted, _fenced = await pipe.execute()
        except WatchError:
            return False
    return bool(removed)


async def cancel_erasure_job(job_id: str) -> None:
    """Cancel a queued erasure job for the bound tenant before any phase has started."""
    tenant_id = require_context()
    settings = get_settings()
    try:
        redis = await get_redis_pool()
        job = Job(job_id, redis, _queue_name=settings.erasure_queue_name)
        status = await job.status()
        info = await job.info()
    except (RedisError, OSError) as exc:
        raise ErasureQueueUnavailable("Erasure queue unavailable") from exc

    if status not in (JobStatus.queued, JobStatus.deferred) or info is None:
        raise ErasureJobNotCancellable(f"Erasure job {job_id} is {status.value}")
    payload = info.args[0] if info.args else {}
    if payload.get("tenant_id") != tenant_id:
        raise ContextAccessDenied(
            "Erasure job belongs to another tenant",
            identity_tenant_id=tenant_id,
            requested_tenant_id=payload.get("tenant_id"),
        )
    try:
        removed = await _dequeue_unstarted(redis, settings.erasure_queue_name, job_id)
    except (RedisError, OSError) as exc:
        raise ErasureQueueUnavailable("Erasure queue unavailable") from exc
    if not removed:
        raise ErasureJobNotCancellable(f"Erasure job {job_id} has already started")

    request_id = payload.get("request_id") or job_id
    async with SessionLocal() as session:
        await bind_session_tenant(session)
        cancelled = await dsr_repo.transition_status(
            session, request_id, from_status="queued", to_status="cancelled", completed_at=_utc_now()
        )
        row = None if cancelled else await dsr_repo.get_request(session, request_id)
        await session.commit()
    if row is not None:
        # A worker claimed the row first; its run owns the lifecycle from here.
        raise ErasureJobNotCancellable(f"Erasure job {job_id} is {row.status}")
    logger.info("dsr.erasure.cancelled job_id=%s tenant_id=%s", job_id, tenant_id)


async def _claim_request(request: DeletionRequest, job_id: str) -> bool:
    # Only a queued (or never recorded) request may start; cancelled or already running rows are left alone.
    async with SessionLocal() as session:
        await bind_session_tenant(session)
        row = await dsr_repo.get_request(session, request.request_id)
        if row is None:
            row = await dsr_repo.record_deletion_request(session, request, status="running")
            row.job_id = job_id
            claimed = True
        else:
            claimed = await dsr_repo.transition_status(
                session, request.request_id, from_status="queued", to_status="running", job_id=job_id
            )
        await session.commit()
    if not claimed:
        logger.info("dsr.erasure.skipped job_id=%s status=%s", job_id, row.status)
    return claimed


async def process_erasure_job(payload: ErasureJobPayload, *, job_id: str) -> DeletionReport | None:
    # Shared by the arq worker and inline mode so both record the same lifecycle.
    request = payload.to_request()
    async with tenant_scope(payload.tenant_id):
        if not await _claim_request(request, job_id):
            return None

        try:
            report = await get_erasure_orchestrator().process(request)
        except TenantShieldError as exc:
            await _mark_failed(request, exc)
            raise

        async with SessionLocal() as session:
            await bind_session_tenant(session)
            await dsr_repo.update_status(
                session,
                request.request_id,
                status="completed",
                result_json={
                    "integrity_hash": report.integrity_hash,
                    "fully_verified": report.fully_verified,
                    "statuses": {item.subsystem: item.status for item in report.subsystem_results},
                },
                completed_at=_utc_now(),
            )
            await session.commit()
    return report


async def _mark_failed(request: DeletionRequest, exc: TenantShieldError) -> None:
    async with SessionLocal() as session:
        await bind_session_tenant(session)
        await dsr_repo.update_status(
            session,
            request.request_id,
            status="failed",
            error_code=exc.code,
            error_message=exc.message,
            completed_at=_utc_now(),
        )
        await session.commit()
    logger.error("dsr.erasure.failed request_id=%s code=%s", request.request_id, exc.code)
