from __future__ import annotations

import os
import tempfile

# Point the module-level engine at a throwaway SQLite file before tenantshield is imported.
_DB_DIR = tempfile.mkdtemp(prefix="tenantshield-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/tenantshield.db"
os.environ.pop("VECTOR_DATABASE_URL", None)

import pytest  # noqa: E402

from tenantshield.core.config import get_settings  # noqa: E402
from tenantshield.core.logging import clear_redacted_subjects  # noqa: E402
from tenantshield.domain.models import Base  # noqa: E402
from tenantshield.persistence.db import engine  # noqa: E402
from tenantshield.services.erasure.factory import get_erasure_orchestrator  # noqa: E402
from tenantshield.services.telemetry import reset_telemetry  # noqa: E402
from tenantshield.tenancy import context as tenant_context  # noqa: E402


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Redaction registry, counters and the tenant binding are process-wide; isolate them per test.
    tenant_context._current_context.set(None)
    clear_redacted_subjects()
    reset_telemetry()
    get_settings.cache_clear()
    get_erasure_orchestrator.cache_clear()
    yield
    tenant_context._current_context.set(None)
    clear_redacted_subjects()
    get_settings.cache_clear()
    get_erasure_orchestrator.cache_clear()


@pytest.fixture
async def db_schema() -> None:
    # Tests use unique tenant ids, so the schema is created once and rows are left in place.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
