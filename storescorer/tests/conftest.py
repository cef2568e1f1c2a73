from __future__ import annotations

import pytest

from storescorer.core.config import get_settings
from storescorer.persistence.db import create_schema, dispose_engine
from storescorer.persistence.store import EntityStore
from storescorer.tests.utils.constants import TEST_ADMIN_KEY, TEST_CRON_SECRET, TEST_WEBHOOK_SECRET


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Settings are cached per process; each test starts from its own env.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def database(tmp_path, monkeypatch) -> str:
    # File-backed SQLite per test so concurrent sessions see each other's commits.
    url = f"sqlite+aiosqlite:///{tmp_path / 'storescorer.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setenv("STRIPE_AUDIT_PRICE_ID", "price_test_audit")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setenv("CRON_SECRET", TEST_CRON_SECRET)
    monkeypatch.setenv("ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setenv("AUTO_CREATE_SCHEMA", "false")
    get_settings.cache_clear()
    await dispose_engine()
    await create_schema()
    yield url
    await dispose_engine()


@pytest.fixture
def store(database) -> EntityStore:
    return EntityStore()
