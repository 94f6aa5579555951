from __future__ import annotations

import logging

from arq.connections import RedisSettings

from tenantshield.core.config import get_settings
from tenantshield.core.logging import configure_shared_logging, load_redacted_subjects
from tenantshield.services.erasure.queue import ErasureJobPayload, erasure_job_id, process_erasure_job


logger = logging.getLogger(__name__)


async def run_erasure(ctx, payload: dict) -> dict | None:
    # Parse and validate payloads in the worker to enforce the handoff schema.
    job_payload = ErasureJobPayload.model_validate(payload)
    redis = ctx.get("redis")
    if redis is not None:
        # Pick up subjects other workers erased since this one started.
        await load_redacted_subjects(redis)
    job_id = ctx.get("job_id") or erasure_job_id(job_payload.tenant_id, job_payload.request_id)
    report = await process_erasure_job(job_payload, job_id=job_id)
    if report is None:
        return None
    return {
        "request_id": report.request_id,
        "integrity_hash": report.integrity_hash,
        "fully_verified": report.fully_verified,
    }


async def _startup(ctx) -> None:
    loaded = await configure_shared_logging(ctx["redis"])
    logger.info(
        "erasure_worker.started queue=%s redacted_subjects=%s",
        get_settings().erasure_queue_name,
        loaded,
    )


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.erasure_queue_name
    max_tries = settings.erasure_max_tries
    functions = [run_erasure]
    on_startup = _startup
    # Erasure can legitimately run long across six subsystems.
    job_timeout = 3600
