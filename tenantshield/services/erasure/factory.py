from __future__ import annotations

from functools import lru_cache

from redis.asyncio import Redis

from tenantshield.adapters.backup_markers import BackupMarkerAdapter
from tenantshield.adapters.cache_redis import RedisCacheErasureAdapter
from tenantshield.adapters.log_redaction import LogRedactionAdapter
from tenantshield.adapters.object_s3 import S3ErasureAdapter
from tenantshield.adapters.relational import RelationalErasureAdapter
from tenantshield.adapters.vector_pgvector import PgVectorErasureAdapter
from tenantshield.core.config import get_settings
from tenantshield.persistence.db import SessionLocal, VectorSessionLocal
from tenantshield.persistence.repos.deletion_reports import SqlReportStore
from tenantshield.services.crypto.signing import get_report_signer
from tenantshield.services.erasure.legal_holds import LegalHoldChecker
from tenantshield.services.erasure.orchestrator import ErasureOrchestrator
from tenantshield.services.erasure.stages import AdapterStage
from tenantshield.services.erasure.verification import VerificationEngine


@lru_cache
def get_erasure_orchestrator() -> ErasureOrchestrator:
    # Adapter clients are long-lived and shared across runs.
    relational = RelationalErasureAdapter(SessionLocal)
    vector = PgVectorErasureAdapter(VectorSessionLocal)
    objects = S3ErasureAdapter()
    redis = Redis.from_url(get_settings().redis_url)
    cache = RedisCacheErasureAdapter(redis)
    logs = LogRedactionAdapter(SessionLocal, registry=redis)
    backups = BackupMarkerAdapter(SessionLocal)
    adapters = [relational, vector, objects, cache, logs, backups]
    return ErasureOrchestrator(
        stages=[AdapterStage(adapter) for adapter in adapters],
        verifier=VerificationEngine(adapters),
        signer=get_report_signer(),
        report_store=SqlReportStore(SessionLocal),
        hold_checker=LegalHoldChecker(SessionLocal),
        audit_session_factory=SessionLocal,
    )
