from __future__ import annotations

import asyncio

import pytest

from tenantshield.adapters.cache_redis import RedisCacheErasureAdapter
from tenantshield.adapters.log_redaction import LogRedactionAdapter
from tenantshield.adapters.object_s3 import S3ErasureAdapter
from tenantshield.adapters.relational import RelationalErasureAdapter
from tenantshield.core.errors import ContextAccessDenied, ReportSigningFailure
from tenantshield.core.logging import redacted_subjects
from tenantshield.domain.erasure import DeletionReport
from tenantshield.persistence.db import SessionLocal
from tenantshield.persistence.repos.deletion_reports import SqlReportStore
from tenantshield.services.erasure.orchestrator import ErasureOrchestrator
from tenantshield.services.erasure.proof import verify_report
from tenantshield.services.erasure.stages import AdapterStage
from tenantshield.services.erasure.verification import VerificationEngine
from tenantshield.services.telemetry import counters_snapshot
from tenantshield.tenancy.context import get_context, tenant_scope
from tenantshield.tests.utils.factories import deletion_request, identity_for, seed_subject, unique_tenant
from tenantshield.tests.utils.fakes import FailingSigner, FakeRedis, FakeS3Client, FakeSigner, InMemoryAdapter


class ListReportStore:
    def __init__(self) -> None:
        self.saved: list[DeletionReport] = []

    async def save(self, report: DeletionReport) -> None:
        self.saved.append(report)


def _orchestrator(adapters, signer=None, **kwargs) -> ErasureOrchestrator:
    timeouts = kwargs.pop("timeouts", {})
    return ErasureOrchestrator(
        stages=[AdapterStage(adapter, timeout_ms=timeouts.get(adapter.subsystem, 2000)) for adapter in adapters],
        verifier=VerificationEngine(adapters, timeout_ms=2000),
        signer=signer or FakeSigner(),
        signing_key_id="test-key",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_user_erasure_over_relational_and_cache(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = "u-alice"
    await seed_subject(tenant_id, user_id)
    redis = FakeRedis(
        [
            f"session:{user_id}:abc",
            f"tenant:{tenant_id}:user:{user_id}:prefs",
            "session:u-bob:def",
        ]
    )
    signer = FakeSigner()
    store = ListReportStore()
    adapters = [
        RedisCacheErasureAdapter(redis, batch_size=10),
        LogRedactionAdapter(SessionLocal),
        RelationalErasureAdapter(SessionLocal),
    ]
    orchestrator = _orchestrator(adapters, signer, report_store=store, audit_session_factory=SessionLocal)
    assert orchestrator.subsystems == ["relational", "cache", "logs"]

    report = await orchestrator.process(deletion_request(tenant_id, user_id, user_email=f"{user_id}@example.com"))

    assert [item.subsystem for item in report.subsystem_results] == ["relational", "cache", "logs"]
    relational = report.result_for("relational")
    assert relational.status == "success"
    assert relational.records_deleted == 15
    assert relational.details["tables"]["posts"] == 10
    assert relational.details["tables"]["workspaces"] == 3
    assert report.result_for("cache").records_deleted == 2
    assert report.result_for("logs").records_deleted == 0
    assert list(redis.data) == ["session:u-bob:def"]

    assert report.fully_verified
    assert {item.subsystem for item in report.verification_results} == {"relational", "cache"}
    assert all(item.residual_count == 0 for item in report.verification_results)
    assert verify_report(report, signer).valid
    assert store.saved == [report]
    assert user_id in redacted_subjects()

    events = [entry.event for entry in report.audit_trail]
    assert events[0] == "erasure.started"
    assert events[-2:] == ["verification.completed", "report.assembled"]
    assert events.count("phase.started") == 3


@pytest.mark.asyncio
async def test_failed_phase_is_reported_and_later_phases_run() -> None:
    tenant_id = unique_tenant()
    calls: list[str] = []
    relational = InMemoryAdapter("relational", {(tenant_id, "u1"): ["row-1", "row-2"]}, calls=calls)
    vector = InMemoryAdapter("vector", calls=calls, error=RuntimeError("vector store down"))
    cache = InMemoryAdapter("cache", {(tenant_id, "u1"): ["k"]}, calls=calls)
    signer = FakeSigner()

    report = await _orchestrator([relational, vector, cache], signer).process(deletion_request(tenant_id, "u1"))

    assert calls == ["relational", "vector", "cache"]
    assert report.result_for("relational").status == "success"
    failed = report.result_for("vector")
    assert failed.status == "failed"
    assert "vector store down" in failed.errors[0]
    assert failed.verification_hash is None
    assert report.result_for("cache").status == "success"

    vector_check = next(item for item in report.verification_results if item.subsystem == "vector")
    assert vector_check.verified is False
    assert vector_check.residual_count == -1
    assert vector_check.verification_method.endswith(":error")
    assert not report.fully_verified
    assert verify_report(report, signer).valid
    assert counters_snapshot()["erasure_verification_error_total.vector"] == 1


@pytest.mark.asyncio
async def test_concurrent_runs_for_different_tenants_stay_isolated() -> None:
    tenant_a, tenant_b = unique_tenant("a"), unique_tenant("b")
    rows = {(tenant_a, "u-shared"): ["a1", "a2", "a3"], (tenant_b, "u-shared"): ["b1"]}
    vectors = {(tenant_a, "u-shared"): ["va"], (tenant_b, "u-shared"): ["vb1", "vb2"]}
    relational = InMemoryAdapter("relational", rows, delay_s=0.02)
    vector = InMemoryAdapter("vector", vectors, delay_s=0.01)
    orchestrator = _orchestrator([relational, vector])

    report_a, report_b = await asyncio.gather(
        orchestrator.process(deletion_request(tenant_a, "u-shared")),
        orchestrator.process(deletion_request(tenant_b, "u-shared")),
    )

    assert report_a.tenant_id == tenant_a
    assert report_a.result_for("relational").details["items"] == ["a1", "a2", "a3"]
    assert report_a.result_for("vector").details["items"] == ["va"]
    assert report_b.tenant_id == tenant_b
    assert report_b.result_for("relational").details["items"] == ["b1"]
    assert report_b.result_for("vector").details["items"] == ["vb1", "vb2"]
    assert sorted(relational.seen_tenants) == sorted([tenant_a, tenant_b])
    assert rows == {} and vectors == {}
    assert get_context() is None


@pytest.mark.asyncio
async def test_phase_timeout_fails_only_that_phase() -> None:
    tenant_id = unique_tenant()
    slow = InMemoryAdapter("object", {(tenant_id, "u1"): ["obj"]}, delay_s=0.5)
    cache = InMemoryAdapter("cache", {(tenant_id, "u1"): ["k"]})
    report = await _orchestrator([slow, cache], timeouts={"object": 50}).process(deletion_request(tenant_id, "u1"))

    result = report.result_for("object")
    assert result.status == "failed"
    assert result.errors == ("timeout after 50ms",)
    assert report.result_for("cache").status == "success"


@pytest.mark.asyncio
async def test_legal_hold_skips_destructive_phases() -> None:
    tenant_id = unique_tenant()
    store = {(tenant_id, "u1"): ["row"]}
    relational = InMemoryAdapter("relational", store)
    logs = InMemoryAdapter("logs")
    checked: list[str] = []

    async def hold_checker(request) -> str | None:
        checked.append(request.request_id)
        return "legal_hold:user:7"

    orchestrator = _orchestrator([relational, logs], hold_checker=hold_checker)
    report = await orchestrator.process(deletion_request(tenant_id, "u1", request_id="dsr-held"))

    assert checked == ["dsr-held"]
    skipped = report.result_for("relational")
    assert skipped.status == "skipped"
    assert skipped.details == {"skipped_reason": "legal_hold:user:7"}
    assert report.result_for("logs").status == "success"
    assert relational.calls == []
    assert store == {(tenant_id, "u1"): ["row"]}
    # Held data is still present, so the report cannot claim verification.
    assert not report.fully_verified


@pytest.mark.asyncio
async def test_retention_override_skips_without_consulting_holds() -> None:
    tenant_id = unique_tenant()
    relational = InMemoryAdapter("relational")

    async def hold_checker(request) -> str | None:
        raise AssertionError("hold checker must not run")

    report = await _orchestrator([relational], hold_checker=hold_checker).process(
        deletion_request(tenant_id, "u1", retention_override=True)
    )
    assert report.result_for("relational").details["skipped_reason"] == "retention_override"


@pytest.mark.asyncio
async def test_signing_failure_raises_and_nothing_is_persisted() -> None:
    tenant_id = unique_tenant()
    store = ListReportStore()
    orchestrator = _orchestrator([InMemoryAdapter("cache")], FailingSigner(), report_store=store)
    with pytest.raises(ReportSigningFailure):
        await orchestrator.process(deletion_request(tenant_id, "u1"))
    assert store.saved == []
    assert counters_snapshot()["erasure_signing_failed_total"] == 1


@pytest.mark.asyncio
async def test_rerun_keeps_first_persisted_report(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = "u-rerun"
    await seed_subject(tenant_id, user_id, workspaces=1, posts=2)
    store = SqlReportStore(SessionLocal)
    orchestrator = _orchestrator([RelationalErasureAdapter(SessionLocal)], report_store=store)
    request = deletion_request(tenant_id, user_id)

    first = await orchestrator.process(request)
    second = await orchestrator.process(request)

    assert first.result_for("relational").records_deleted == 5
    assert second.result_for("relational").records_deleted == 0
    assert second.fully_verified
    async with tenant_scope(tenant_id):
        stored = await store.get(request.request_id)
    assert stored.integrity_hash == first.integrity_hash


@pytest.mark.asyncio
async def test_run_does_not_disturb_caller_binding() -> None:
    tenant_id = unique_tenant()
    orchestrator = _orchestrator([InMemoryAdapter("cache")])
    async with tenant_scope(tenant_id):
        report = await orchestrator.process(deletion_request(tenant_id, "u1"))
        assert get_context() == tenant_id
    assert report.tenant_id == tenant_id


@pytest.mark.asyncio
async def test_identity_from_other_tenant_cannot_start_run() -> None:
    adapter = InMemoryAdapter("cache")
    orchestrator = _orchestrator([adapter])
    with pytest.raises(ContextAccessDenied):
        await orchestrator.process(deletion_request(unique_tenant(), "u1"), identity=identity_for("tenant-other"))
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_run() -> None:
    tenant_id = unique_tenant()
    rows = {(tenant_id, "u1"): ["row"]}
    store = ListReportStore()
    orchestrator = _orchestrator([InMemoryAdapter("relational", rows, delay_s=0.1)], report_store=store)

    caller = asyncio.create_task(orchestrator.process(deletion_request(tenant_id, "u1")))
    await asyncio.sleep(0.02)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    for _ in range(50):
        if store.saved:
            break
        await asyncio.sleep(0.02)
    assert rows == {}
    assert len(store.saved) == 1
    assert store.saved[0].result_for("relational").records_deleted == 1


@pytest.mark.asyncio
async def test_relational_deletion_is_recorded_before_verification(db_schema) -> None:
    tenant_id = unique_tenant()
    user_id = "u-order"
    await seed_subject(tenant_id, user_id, workspaces=1, posts=2)
    redis = FakeRedis([f"session:{user_id}:s1"])
    orchestrator = _orchestrator([RelationalErasureAdapter(SessionLocal), RedisCacheErasureAdapter(redis)])

    report = await orchestrator.process(deletion_request(tenant_id, user_id))

    trail = list(report.audit_trail)
    relational_done = next(
        entry for entry in trail if entry.event == "phase.success" and entry.subsystem == "relational"
    )
    verified = next(entry for entry in trail if entry.event == "verification.completed")
    assert relational_done.timestamp < verified.timestamp
    assert trail.index(relational_done) < trail.index(verified)
    # Every entry is stamped no earlier than the one before it.
    stamps = [entry.timestamp for entry in trail]
    assert stamps == sorted(stamps)
    assert report.result_for("relational").records_deleted == 5
    assert report.fully_verified


@pytest.mark.asyncio
async def test_tenant_scope_run_clears_every_tenant_namespace() -> None:
    tenant_id = unique_tenant()
    other_tenant = unique_tenant()
    redis = FakeRedis(
        [
            f"cache:{tenant_id}:u-other:feed",
            f"workspace:{tenant_id}:ws1:draft",
            f"tenant:{tenant_id}:settings",
            f"cache:{other_tenant}:u-other:feed",
        ]
    )
    s3 = FakeS3Client(
        {
            f"tenants/{tenant_id}/workspaces/ws1/doc": ["v1", "v2"],
            "users/u-admin/avatar.png": ["v1"],
            f"tenants/{other_tenant}/users/u-other/doc": ["v1"],
        }
    )
    adapters = [RedisCacheErasureAdapter(redis, batch_size=10), S3ErasureAdapter(bucket="uploads", client=s3)]

    report = await _orchestrator(adapters).process(deletion_request(tenant_id, "u-admin", scope="tenant"))

    assert report.result_for("cache").records_deleted == 3
    assert report.result_for("object").records_deleted == 3
    assert list(redis.data) == [f"cache:{other_tenant}:u-other:feed"]
    assert list(s3.objects) == [f"tenants/{other_tenant}/users/u-other/doc"]
    assert report.fully_verified


@pytest.mark.asyncio
async def test_shared_request_id_yields_one_report_per_tenant(db_schema) -> None:
    store = SqlReportStore(SessionLocal)
    reports = {}
    for tenant_id in (unique_tenant(), unique_tenant()):
        adapter = InMemoryAdapter("relational", {(tenant_id, "u1"): ["row"]})
        orchestrator = _orchestrator([adapter], report_store=store)
        reports[tenant_id] = await orchestrator.process(deletion_request(tenant_id, "u1", request_id="dsr-reused"))

    for tenant_id, report in reports.items():
        async with tenant_scope(tenant_id):
            stored = await store.get("dsr-reused")
        assert stored.tenant_id == tenant_id
        assert stored.integrity_hash == report.integrity_hash
