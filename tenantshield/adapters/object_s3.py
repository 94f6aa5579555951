from __future__ import annotations

import asyncio
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from tenantshield.adapters.base import DeletionOutcome
from tenantshield.core.config import get_settings
from tenantshield.core.errors import SubsystemDeletionFailure
from tenantshield.domain.erasure import DeletionRequest
from tenantshield.tenancy.context import require_context


logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call.
_DELETE_BATCH = 1000


def subject_prefixes(request: DeletionRequest) -> list[str]:
    tenant_id = require_context()
    if request.scope == "workspace":
        return [f"tenants/{tenant_id}/workspaces/{request.workspace_id}/"]
    user_id = request.subject_user_id
    # Legacy uploads predate tenant prefixes and live under users/ directly.
    legacy = f"users/{user_id}/"
    if request.scope == "tenant":
        return [f"tenants/{tenant_id}/", legacy]
    return [f"tenants/{tenant_id}/users/{user_id}/", legacy]


class S3ErasureAdapter:
    """Removes every object version and delete marker under the subject's prefixes."""

    subsystem = "object"
    verification_method = "s3_list_object_versions"

    def __init__(self, bucket: str | None = None, client: Any | None = None, region: str | None = None) -> None:
        settings = get_settings()
        self._bucket = bucket or settings.object_store_bucket
        self._region = region or settings.aws_region
        self._endpoint_url = settings.object_store_endpoint_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        self._client = boto3.client("s3", region_name=self._region, endpoint_url=self._endpoint_url)
        return self._client

    def _list_versions(self, prefix: str) -> tuple[list[dict[str, str]], int, int]:
        client = self._get_client()
        paginator = client.get_paginator("list_object_versions")
        targets: list[dict[str, str]] = []
        versions = 0
        markers = 0
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for item in page.get("Versions", []) or []:
                targets.append({"Key": item["Key"], "VersionId": item["VersionId"]})
                versions += 1
            for item in page.get("DeleteMarkers", []) or []:
                targets.append({"Key": item["Key"], "VersionId": item["VersionId"]})
                markers += 1
        return targets, versions, markers

    def _delete_prefix(self, prefix: str) -> tuple[int, dict[str, int], list[str]]:
        client = self._get_client()
        targets, versions, markers = self._list_versions(prefix)
        deleted = 0
        errors: list[str] = []
        for start in range(0, len(targets), _DELETE_BATCH):
            batch = targets[start : start + _DELETE_BATCH]
            response = client.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": batch, "Quiet": True},
            )
            failed = response.get("Errors", []) or []
            deleted += len(batch) - len(failed)
            for item in failed:
                errors.append(f"{item.get('Key')}@{item.get('VersionId')}: {item.get('Code')}")
        return deleted, {"versions": versions, "delete_markers": markers}, errors

    async def delete_subject(self, request: DeletionRequest) -> DeletionOutcome:
        total = 0
        errors: list[str] = []
        per_prefix: dict[str, dict[str, int]] = {}
        for prefix in subject_prefixes(request):
            try:
                deleted, found, prefix_errors = await asyncio.to_thread(self._delete_prefix, prefix)
            except (BotoCoreError, ClientError) as exc:
                raise SubsystemDeletionFailure("object", f"prefix {prefix}: {exc}") from exc
            total += deleted
            errors.extend(prefix_errors)
            per_prefix[prefix] = {**found, "deleted": deleted}
        if errors:
            logger.warning(
                "erasure.object.partial request_id=%s bucket=%s failed=%s",
                request.request_id,
                self._bucket,
                len(errors),
            )
        return DeletionOutcome(
            records_deleted=total,
            errors=errors,
            details={"bucket": self._bucket, "prefixes": per_prefix},
        )

    async def count_residual(self, request: DeletionRequest) -> int:
        total = 0
        for prefix in subject_prefixes(request):
            targets, _versions, _markers = await asyncio.to_thread(self._list_versions, prefix)
            total += len(targets)
        return total
