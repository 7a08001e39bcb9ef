from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Configure the credential store and secrets before any sqlbroker module builds its engine.
_STORE_DIR = Path(tempfile.mkdtemp(prefix="sqlbroker-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_STORE_DIR / 'store.db'}"
os.environ["MASTER_KEY"] = "11" * 32
os.environ["TOKEN_SIGNING_SECRET"] = "test-signing-secret-with-enough-entropy"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["STARTUP_CHECK_DATABASE"] = "true"

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402

from sqlbroker.core.config import get_settings  # noqa: E402
from sqlbroker.domain.models import Base  # noqa: E402
from sqlbroker.persistence.db import engine  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def credential_store_schema() -> None:
    # Build the schema once with a sync engine so no event loop is bound at session scope.
    url = get_settings().database_url.replace("+aiosqlite", "")
    sync_engine = create_engine(url)
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
