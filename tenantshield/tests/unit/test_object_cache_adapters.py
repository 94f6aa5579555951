from __future__ import annotations

import pytest
from botocore.exceptions import EndpointConnectionError
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantshield.adapters.cache_redis import RedisCacheErasureAdapter, subject_patterns
from tenantshield.adapters.object_s3 import S3ErasureAdapter, subject_prefixes
from tenantshield.core.errors import ContextMissing, SubsystemDeletionFailure
from tenantshield.tenancy.context import tenant_scope
from tenantshield.tests.utils.factories import deletion_request
from tenantshield.tests.utils.fakes import FakeRedis, FakeS3Client


def test_object_prefixes_need_bound_tenant() -> None:
    with pytest.raises(ContextMissing):
        subject_prefixes(deletion_request("acme", "u1"))


@pytest.mark.asyncio
async def test_object_prefixes_by_scope() -> None:
    async with tenant_scope("acme"):
        assert subject_prefixes(deletion_request("acme", "u1")) == ["tenants/acme/users/u1/", "users/u1/"]
        assert subject_prefixes(deletion_request("acme", "u1", scope="workspace", workspace_id="ws1")) == [
            "tenants/acme/workspaces/ws1/"
        ]
        assert subject_prefixes(deletion_request("acme", "u1", scope="tenant")) == ["tenants/acme/", "users/u1/"]


@pytest.mark.asyncio
async def test_object_adapter_removes_versions_and_markers() -> None:
    client = FakeS3Client(
        {
            "tenants/acme/users/u1/avatar.png": ["v1", "v2", "marker-1"],
            "tenants/acme/users/u1/cv.pdf": ["v1"],
            "users/u1/legacy.txt": ["v1"],
            "tenants/acme/users/u2/avatar.png": ["v1"],
            "tenants/globex/users/u1/avatar.png": ["v1"],
        }
    )
    adapter = S3ErasureAdapter(bucket="uploads", client=client, region="eu-west-1")
    request = deletion_request("acme", "u1")
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 0

    assert outcome.records_deleted == 5
    assert outcome.errors == []
    assert outcome.details["prefixes"]["tenants/acme/users/u1/"] == {"versions": 3, "delete_markers": 1, "deleted": 4}
    assert sorted(client.objects) == ["tenants/acme/users/u2/avatar.png", "tenants/globex/users/u1/avatar.png"]


@pytest.mark.asyncio
async def test_object_adapter_partial_on_per_key_errors() -> None:
    client = FakeS3Client(
        {"tenants/acme/users/u1/a": ["v1"], "tenants/acme/users/u1/b": ["v1", "v2"]},
        fail_keys={"tenants/acme/users/u1/b"},
    )
    adapter = S3ErasureAdapter(bucket="uploads", client=client, region="eu-west-1")
    request = deletion_request("acme", "u1")
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 2

    assert outcome.records_deleted == 1
    assert len(outcome.errors) == 2
    assert all(error.endswith("AccessDenied") for error in outcome.errors)


@pytest.mark.asyncio
async def test_object_adapter_raises_when_store_unreachable() -> None:
    class UnreachableClient(FakeS3Client):
        def get_paginator(self, operation):
            raise EndpointConnectionError(endpoint_url="https://s3.example.invalid")

    adapter = S3ErasureAdapter(bucket="uploads", client=UnreachableClient(), region="eu-west-1")
    async with tenant_scope("acme"):
        with pytest.raises(SubsystemDeletionFailure) as exc_info:
            await adapter.delete_subject(deletion_request("acme", "u1"))
    assert exc_info.value.subsystem == "object"


@pytest.mark.asyncio
async def test_cache_patterns_escape_glob_characters() -> None:
    async with tenant_scope("acme"):
        patterns = subject_patterns(deletion_request("acme", "u[1]*"))
    assert "user:u\\[1\\]\\*:*" in patterns
    assert all("acme" in pattern or pattern.startswith(("user:", "session:")) for pattern in patterns)


@pytest.mark.asyncio
async def test_cache_adapter_deletes_matches_in_batches() -> None:
    keys = [f"session:u1:{index}" for index in range(5)] + [
        "user:u1:profile",
        "tenant:acme:user:u1:prefs",
        "cache:acme:u1:feed",
        "tenant:globex:user:u1:prefs",
        "user:u10:profile",
    ]
    redis = FakeRedis(keys)
    adapter = RedisCacheErasureAdapter(redis, batch_size=2)
    request = deletion_request("acme", "u1")
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 0

    assert outcome.records_deleted == 8
    assert outcome.details["patterns"]["session:u1:*"] == 5
    assert max(len(call) for call in redis.delete_calls) == 2
    assert sorted(redis.data) == ["tenant:globex:user:u1:prefs", "user:u10:profile"]


@pytest.mark.asyncio
async def test_cache_tenant_scope_sweeps_tenant_namespace() -> None:
    redis = FakeRedis(["tenant:acme:settings", "tenant:acme:user:u9:x", "tenant:globex:settings"])
    adapter = RedisCacheErasureAdapter(redis, batch_size=10)
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(deletion_request("acme", "u1", scope="tenant"))
    assert outcome.records_deleted == 2
    assert list(redis.data) == ["tenant:globex:settings"]


@pytest.mark.asyncio
async def test_object_tenant_scope_includes_subject_legacy_uploads() -> None:
    client = FakeS3Client(
        {
            "tenants/acme/users/u1/a": ["v1"],
            "tenants/acme/workspaces/ws9/b": ["v1"],
            "users/u1/legacy.txt": ["v1"],
            "users/u2/legacy.txt": ["v1"],
        }
    )
    adapter = S3ErasureAdapter(bucket="uploads", client=client, region="eu-west-1")
    request = deletion_request("acme", "u1", scope="tenant")
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 0

    assert outcome.records_deleted == 3
    assert sorted(client.objects) == ["users/u2/legacy.txt"]


@pytest.mark.asyncio
async def test_cache_tenant_scope_removes_every_tenant_namespace() -> None:
    redis = FakeRedis(
        ["cache:acme:u2:feed", "workspace:acme:ws9:draft", "tenant:acme:settings", "cache:globex:u2:x"]
    )
    adapter = RedisCacheErasureAdapter(redis, batch_size=10)
    request = deletion_request("acme", "u1", scope="tenant")
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(request)
        assert await adapter.count_residual(request) == 0

    assert outcome.records_deleted == 3
    assert list(redis.data) == ["cache:globex:u2:x"]


class _FlakyScanRedis(FakeRedis):
    def __init__(self, keys: list[str], failing_prefix: str) -> None:
        super().__init__(keys)
        self._failing_prefix = failing_prefix

    async def scan_iter(self, match=None, count=None):
        if match is not None and match.startswith(self._failing_prefix):
            raise RedisConnectionError("connection reset by peer")
        async for key in super().scan_iter(match=match, count=count):
            yield key


@pytest.mark.asyncio
async def test_cache_adapter_keeps_counts_when_one_pattern_fails() -> None:
    redis = _FlakyScanRedis(["user:u1:a", "user:u1:b", "tenant:acme:user:u1:x"], failing_prefix="tenant:")
    adapter = RedisCacheErasureAdapter(redis, batch_size=10)
    async with tenant_scope("acme"):
        outcome = await adapter.delete_subject(deletion_request("acme", "u1"))

    assert outcome.records_deleted == 2
    assert outcome.details["patterns"]["user:u1:*"] == 2
    assert outcome.errors == ["pattern tenant:acme:user:u1:*: ConnectionError"]
    assert list(redis.data) == ["tenant:acme:user:u1:x"]


@pytest.mark.asyncio
async def test_cache_adapter_raises_when_every_pattern_fails() -> None:
    redis = _FlakyScanRedis(["user:u1:a"], failing_prefix="")
    adapter = RedisCacheErasureAdapter(redis, batch_size=10)
    async with tenant_scope("acme"):
        with pytest.raises(SubsystemDeletionFailure) as exc_info:
            await adapter.delete_subject(deletion_request("acme", "u1"))
    assert exc_info.value.subsystem == "cache"
