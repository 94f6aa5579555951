from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantshield.apps.api.main import create_app
from tenantshield.core.config import get_settings
from tenantshield.services.erasure import queue as erasure_queue
from tenantshield.services.telemetry import record_phase
from tenantshield.tests.utils.auth import dev_headers, enable_dev_auth
from tenantshield.tests.utils.factories import unique_tenant


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped() -> None:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
    assert response.status_code == 200
    assert response.json() == {
        "data": {
            "status": "ok",
            "execution_mode": "queue",
            "signing_provider": "local_hmac",
            "signing_key_configured": False,
        },
        "meta": {"request_id": "req-health", "api_version": "v1"},
    }
    assert response.headers["X-Request-Id"] == "req-health"


class _PingingPool:
    def __init__(self, error: Exception | None = None) -> None:
        self._error = error

    async def ping(self) -> bool:
        if self._error is not None:
            raise self._error
        return True


@pytest.mark.asyncio
async def test_readiness_reports_each_dependency(db_schema, monkeypatch) -> None:
    pool = _PingingPool()

    async def fake_pool():
        return pool

    monkeypatch.setattr(erasure_queue, "get_redis_pool", fake_pool)
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        ready = await client.get("/v1/health/ready")
        assert ready.status_code == 200
        assert ready.json()["data"] == {"status": "ready", "checks": {"database": "ok", "queue": "ok"}}

        pool._error = RedisConnectionError("connection refused")
        degraded = await client.get("/v1/health/ready")
    assert degraded.status_code == 503
    assert degraded.json()["data"] == {"status": "degraded", "checks": {"database": "ok", "queue": "error"}}


@pytest.mark.asyncio
async def test_readiness_skips_broker_in_inline_mode(db_schema, monkeypatch) -> None:
    monkeypatch.setenv("ERASURE_EXECUTION_MODE", "inline")
    get_settings.cache_clear()
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/health/ready")
    assert response.status_code == 200
    assert response.json()["data"]["checks"] == {"database": "ok", "queue": "skipped"}


@pytest.mark.asyncio
async def test_tenant_context_route_binds_own_tenant(db_schema, monkeypatch) -> None:
    enable_dev_auth(monkeypatch)
    tenant_id = unique_tenant()
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        own = await client.get(f"/v1/tenants/{tenant_id}/context", headers=dev_headers(tenant_id, user_id="u-7"))
        assert own.status_code == 200
        assert own.json()["data"] == {
            "tenant_id": tenant_id,
            "user_id": "u-7",
            "identity_tenant_id": tenant_id,
            "super_admin": False,
            "session_verified": True,
        }

        other = await client.get(f"/v1/tenants/{unique_tenant()}/context", headers=dev_headers(tenant_id))
        assert other.status_code == 403
        assert other.json()["error"]["code"] == "TENANT_ACCESS_DENIED"

        no_scope = await client.get(f"/v1/tenants/{tenant_id}/context", headers=dev_headers(tenant_id, scopes="dsr:*"))
        assert no_scope.status_code == 403
        assert no_scope.json()["error"]["code"] == "INSUFFICIENT_SCOPES"


@pytest.mark.asyncio
async def test_super_admin_may_target_other_tenant(db_schema, monkeypatch) -> None:
    enable_dev_auth(monkeypatch)
    home, target = unique_tenant(), unique_tenant()
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(
            f"/v1/tenants/{target}/context",
            headers=dev_headers(home, user_id="root", roles="super_admin"),
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tenant_id"] == target
    assert data["identity_tenant_id"] == home
    assert data["super_admin"] is True


@pytest.mark.asyncio
async def test_ops_erasure_requires_admin(db_schema, monkeypatch) -> None:
    enable_dev_auth(monkeypatch)
    tenant_id = unique_tenant()
    record_phase(subsystem="vector", status="failed", duration_ms=120.0)
    record_phase(subsystem="vector", status="success", duration_ms=40.0)

    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        denied = await client.get("/v1/ops/erasure", headers=dev_headers(tenant_id))
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "INSUFFICIENT_ROLES"

        too_short = await client.get("/v1/ops/erasure?window_s=5", headers=dev_headers(tenant_id, roles="admin"))
        assert too_short.status_code == 422

        allowed = await client.get("/v1/ops/erasure?window_s=600", headers=dev_headers(tenant_id, roles="admin"))
    assert allowed.status_code == 200
    data = allowed.json()["data"]
    assert data["window_s"] == 600
    assert "vector" in data["phases"]
    assert data["requests"]["count"] >= 2
