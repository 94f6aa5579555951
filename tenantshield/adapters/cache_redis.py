from __future__ import annotations

import logging
import re
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.core.config import get_settings
from tenantshield.core.errors import SubsystemDeletionFailure
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.tenancy.context import require_context


logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _escape(value: str) -> str:
    # Identifiers must match literally inside SCAN MATCH patterns.
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def subject_patterns(request: DeletionRequest) -> list[str]:
    tenant_id = _escape(require_context())
    if request.scope == "workspace":
        workspace_id = _escape(request.workspace_id or "")
        return [f"workspace:{tenant_id}:{workspace_id}:*", f"cache:{tenant_id}:workspace:{workspace_id}:*"]
    user_id = _escape(request.subject_user_id)
    patterns = [
        f"user:{user_id}:*",
        f"tenant:{tenant_id}:user:{user_id}:*",
        f"session:{user_id}:*",
        f"workspace:{tenant_id}:{user_id}:*",
        f"cache:{tenant_id}:{user_id}:*",
    ]
    if request.scope == "tenant":
        # Every tenant-prefixed namespace, whichever user or workspace owns the key.
        patterns.extend([f"tenant:{tenant_id}:*", f"workspace:{tenant_id}:*", f"cache:{tenant_id}:*"])
    return patterns


class RedisCacheErasureAdapter:
    """SCANs subject key patterns and deletes matches in batches.

    A pattern whose SCAN or DEL fails is recorded and skipped; keys removed by
    the other patterns are still counted, so the phase reports ``partial``
    rather than losing what it already deleted.
    """

    subsystem = "cache"
    verification_method = "redis_scan"

    def __init__(self, redis: Redis | Any | None = None, batch_size: int | None = None) -> None:
        self._redis = redis
        self._batch_size = batch_size or get_settings().cache_delete_batch_size

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(get_settings().redis_url)
        return self._redis

    async def _matching_keys(self, pattern: str) -> list[Any]:
        redis = self._get_redis()
        return [key async for key in redis.scan_iter(match=pattern, count=self._batch_size)]

    async def _delete_pattern(self, pattern: str, seen: set[Any]) -> int:
        redis = self._get_redis()
        keys = [key for key in await self._matching_keys(pattern) if key not in seen]
        deleted = 0
        for start in range(0, len(keys), self._batch_size):
            batch = keys[start : start + self._batch_size]
            deleted += int(await redis.delete(*batch))
            seen.update(batch)
        return deleted

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        patterns = subject_patterns(request)
        per_pattern: dict[str, int] = {}
        errors: list[str] = []
        seen: set[Any] = set()
        for pattern in patterns:
            try:
                per_pattern[pattern] = await self._delete_pattern(pattern, seen)
            except (RedisError, OSError) as exc:
                logger.warning(
                    "erasure.cache.pattern_failed request_id=%s pattern=%s",
                    request.request_id,
                    pattern,
                    exc_info=exc,
                )
                errors.append(f"pattern {pattern}: {exc.__class__.__name__}")
        if patterns and not per_pattern:
            raise SubsystemDeletionFailure("cache", "; ".join(errors))
        total = sum(per_pattern.values())
        logger.info(
            "erasure.cache.deleted request_id=%s tenant_id=%s total=%s failed_patterns=%s",
            request.request_id,
            request.tenant_id,
            total,
            len(errors),
        )
        return DeletionOutcome(records_deleted=total, errors=errors, details={"patterns": per_pattern})

    async def count_residual(self, request: DeletionRequest) -> int:
        keys: set[Any] = set()
        for pattern in subject_patterns(request):
            keys.update(await self._matching_keys(pattern))
        return len(keys)
