from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import hmac
from typing import Any, AsyncIterator

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.tenancy.context import require_context


class FakeSigner:
    """Deterministic HMAC signer with a fixed key for report tests."""

    provider = "fake"

    def __init__(self, secret: bytes = b"test-signing-secret") -> None:
        self._secret = secret
        self.calls: list[tuple[bytes, str]] = []

    def sign(self, payload: bytes, key_id: str) -> str:
        self.calls.append((payload, key_id))
        return hmac.new(self._secret + key_id.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def verify(self, payload: bytes, signature: str, key_id: str) -> bool:
        expected = hmac.new(self._secret + key_id.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


class FailingSigner(FakeSigner):
    def sign(self, payload: bytes, key_id: str) -> str:
        raise RuntimeError("kms unreachable")


class InMemoryAdapter:
    """Subject data keyed by (tenant, user); deletion pops the bound tenant's entry only."""

    def __init__(
        self,
        subsystem: str,
        store: dict[tuple[str, str], list[str]] | None = None,
        *,
        calls: list[str] | None = None,
        verification_method: str = "memory_count",
        delay_s: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.subsystem = subsystem
        self.verification_method = verification_method
        self.store = store if store is not None else {}
        self.calls = calls if calls is not None else []
        self.seen_tenants: list[str] = []
        self._delay_s = delay_s
        self._error = error

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        tenant_id = require_context()
        self.calls.append(self.subsystem)
        self.seen_tenants.append(tenant_id)
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._error is not None:
            raise self._error
        items = self.store.pop((tenant_id, request.subject_user_id), [])
        return DeletionOutcome(records_deleted=len(items), details={"items": sorted(items)})

    async def count_residual(self, request: DeletionRequest) -> int:
        if self._error is not None:
            raise self._error
        return len(self.store.get((require_context(), request.subject_user_id), []))


class FakeRedis:
    """Just enough of redis.asyncio for SCAN + DEL and the hash commands."""

    def __init__(self, keys: list[str] | None = None) -> None:
        self.data: dict[str, bytes] = {key: b"1" for key in keys or []}
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.delete_calls: list[tuple[str, ...]] = []

    async def scan_iter(self, match: str | None = None, count: int | None = None) -> AsyncIterator[str]:
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def delete(self, *keys: str) -> int:
        self.delete_calls.append(tuple(keys))
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def hset(
        self, name: str, key: str | None = None, value: str | None = None, mapping: dict | None = None
    ) -> int:
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        bucket = self.hashes.setdefault(name, {})
        added = 0
        for field, item in items.items():
            field_bytes = str(field).encode("utf-8")
            added += field_bytes not in bucket
            bucket[field_bytes] = str(item).encode("utf-8")
        return added

    async def hgetall(self, name: str) -> dict[bytes, bytes]:
        return dict(self.hashes.get(name, {}))


class _FakePaginator:
    def __init__(self, client: "FakeS3Client") -> None:
        self._client = client

    def paginate(self, *, Bucket: str, Prefix: str) -> list[dict[str, Any]]:
        versions = []
        markers = []
        for key, version_ids in sorted(self._client.objects.items()):
            if not key.startswith(Prefix):
                continue
            for version_id in version_ids:
                entry = {"Key": key, "VersionId": version_id}
                if version_id.startswith("marker"):
                    markers.append(entry)
                else:
                    versions.append(entry)
        # Two pages so callers must walk the paginator.
        half = len(versions) // 2
        return [
            {"Versions": versions[:half]},
            {"Versions": versions[half:], "DeleteMarkers": markers},
        ]


class FakeS3Client:
    """Versioned bucket stand-in: key -> list of version ids (ids starting with `marker` are delete markers)."""

    def __init__(self, objects: dict[str, list[str]] | None = None, *, fail_keys: set[str] | None = None) -> None:
        self.objects: dict[str, list[str]] = {key: list(ids) for key, ids in (objects or {}).items()}
        self.fail_keys = fail_keys or set()
        self.delete_batches: list[int] = []

    def get_paginator(self, operation: str) -> _FakePaginator:
        assert operation == "list_object_versions"
        return _FakePaginator(self)

    def delete_objects(self, *, Bucket: str, Delete: dict[str, Any]) -> dict[str, Any]:
        errors = []
        self.delete_batches.append(len(Delete["Objects"]))
        for item in Delete["Objects"]:
            key, version_id = item["Key"], item["VersionId"]
            if key in self.fail_keys:
                errors.append({"Key": key, "VersionId": version_id, "Code": "AccessDenied"})
                continue
            remaining = [vid for vid in self.objects.get(key, []) if vid != version_id]
            if remaining:
                self.objects[key] = remaining
            else:
                self.objects.pop(key, None)
        return {"Errors": errors} if errors else {}
