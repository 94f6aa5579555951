from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse
from redis.asyncio import Redis
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantshield.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenantshield_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantshield.apps.api.response import API_VERSION
from tenantshield.apps.api.routes.dsr import router as dsr_router
from tenantshield.apps.api.routes.health import router as health_router
from tenantshield.apps.api.routes.ops import router as ops_router
from tenantshield.apps.api.routes.tenants import router as tenants_router
from tenantshield.core.config import get_settings
from tenantshield.core.errors import TenantShieldError
from tenantshield.core.logging import configure_logging, configure_shared_logging, refresh_redacted_subjects
from tenantshield.persistence.db import engine, vector_engine
from tenantshield.services.erasure.queue import close_redis_pool
from tenantshield.services.telemetry import record_request


logger = logging.getLogger(__name__)

# Paths that never resolve a tenant and carry no bearer requirement.
PUBLIC_PATHS = {f"/{API_VERSION}/health", f"/{API_VERSION}/health/ready"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    registry = Redis.from_url(settings.redis_url)
    loaded = await configure_shared_logging(registry)
    refresher = asyncio.create_task(refresh_redacted_subjects(registry, settings.log_redaction_refresh_s))
    logger.info(
        "api_starting execution_mode=%s signing_provider=%s redacted_subjects=%s",
        settings.erasure_execution_mode,
        settings.erasure_signing_provider,
        loaded,
    )
    try:
        yield
    finally:
        refresher.cancel()
        with suppress(asyncio.CancelledError):
            await refresher
        await registry.aclose()
        await close_redis_pool()
        await engine.dispose()
        if vector_engine is not engine:
            await vector_engine.dispose()


def _openapi_schema(app: FastAPI) -> dict:
    schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
    security_schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
    security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
    for path, operations in schema.get("paths", {}).items():
        if path in PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation.setdefault("security", [{"BearerAuth": []}])
    return schema


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="TenantShield API", lifespan=lifespan, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TenantShieldError)
    async def _tenantshield_exception_handler(request: Request, exc: TenantShieldError):
        return await tenantshield_exception_handler(request, exc)

    for router in (health_router, dsr_router, tenants_router, ops_router):
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get(f"/{API_VERSION}/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"/{API_VERSION}/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=f"/{API_VERSION}/openapi.json", title=f"{app.title} {API_VERSION}")

    def custom_openapi() -> dict:
        if app.openapi_schema is None:
            app.openapi_schema = _openapi_schema(app)
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
