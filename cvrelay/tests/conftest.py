from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point the app at a throwaway SQLite file before any cvrelay module builds its engine.
_DB_DIR = Path(tempfile.mkdtemp(prefix="cvrelay-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR / 'cvrelay.db'}"
os.environ["KEYRING_MASTER_KEY"] = "cvrelay-test-master-key"
os.environ["ORDER_LOOKUP_INITIAL_DELAY_MS"] = "0"
os.environ["ORDER_LOOKUP_RETRY_DELAY_MS"] = "0"

import pytest  # noqa: E402

from cvrelay.core.config import get_settings  # noqa: E402
from cvrelay.domain.models import Base  # noqa: E402
from cvrelay.persistence.db import engine  # noqa: E402
from cvrelay.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # Fresh schema per test; dispose the engine so no connection outlives its event loop.
    get_settings.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clean_telemetry() -> None:
    reset_telemetry()
    yield
    reset_telemetry()
