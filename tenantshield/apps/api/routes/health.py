from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenantshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantshield.apps.api.response import SuccessEnvelope, success_response
from tenantshield.core.config import get_settings
from tenantshield.persistence.db import SessionLocal
from tenantshield.services.erasure import queue as erasure_queue


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    execution_mode: str
    signing_provider: str
    # False means reports are signed with the public dev key.
    signing_key_configured: bool


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    settings = get_settings()
    payload = HealthResponse(
        status="ok",
        execution_mode=settings.erasure_execution_mode,
        signing_provider=settings.erasure_signing_provider,
        signing_key_configured=settings.erasure_signing_provider != "local_hmac" or bool(settings.erasure_signing_key),
    )
    return success_response(request=request, data=payload)


async def _check_database() -> str:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health.database_unreachable error=%s", exc.__class__.__name__)
        return "error"
    return "ok"


async def _check_queue() -> str:
    if get_settings().erasure_execution_mode == "inline":
        return "skipped"
    try:
        redis = await erasure_queue.get_redis_pool()
        await redis.ping()
    except (RedisError, OSError) as exc:
        logger.warning("health.queue_unreachable error=%s", exc.__class__.__name__)
        return "error"
    return "ok"


@router.get("/health/ready", response_model=SuccessEnvelope[ReadinessResponse])
async def readiness(request: Request, response: Response) -> dict:
    # Erasure needs the database for lifecycle rows and the broker for queued runs.
    checks = {"database": await _check_database(), "queue": await _check_queue()}
    ready = "error" not in checks.values()
    if not ready:
        response.status_code = 503
    payload = ReadinessResponse(status="ready" if ready else "degraded", checks=checks)
    return success_response(request=request, data=payload)
