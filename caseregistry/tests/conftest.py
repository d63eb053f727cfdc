from __future__ import annotations

import os
import tempfile

import pytest

# Point settings at a throwaway sqlite file before any caseregistry module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="caseregistry-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["BENEFICIARY_ENC_KEY"] = "11" * 32
os.environ["BENEFICIARY_HASH_KEY"] = "test-hash-key-for-match-keys"
os.environ["AUTH_ENABLED"] = "true"
os.environ["AUTH_DEV_BYPASS"] = "true"

from caseregistry.core.config import get_settings  # noqa: E402

get_settings.cache_clear()

from caseregistry.domain.models import Base  # noqa: E402
from caseregistry.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema() -> None:
    # Recreate the schema per test so row counts start from zero.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests that monkeypatch env vars must not leak cached settings into later tests.
    yield
    get_settings.cache_clear()
