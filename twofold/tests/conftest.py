from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any twofold module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="twofold-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'twofold.db')}")
os.environ.setdefault("STORE_RETRY_MAX_ATTEMPTS", "3")
os.environ.setdefault("STORE_RETRY_BACKOFF_MS", "1")
os.environ.setdefault("MIGRATION_MAX_ATTEMPTS", "2")
os.environ.setdefault("MIGRATION_BACKOFF_MS", "1")
os.environ.setdefault("MIGRATE_ON_STARTUP", "false")
os.environ.setdefault("AUTH_ENABLED", "true")

import pytest  # noqa: E402

from twofold.core.config import get_settings  # noqa: E402
from twofold.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests that monkeypatch env vars get a fresh Settings instance.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
