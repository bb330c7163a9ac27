from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.settings import AdapterKind, Settings, settings as global_settings
from jobflow.infra.database import Database, set_database
from jobflow.main import create_app
from jobflow.v1.adapters.registry_init import register_adapters

# Import models to ensure they're registered
from jobflow.v1.infra.jobs import models as queue_models  # noqa: F401
from jobflow.v1.runs import models as run_models  # noqa: F401

import sample_jobs


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    """Global settings pointed at a per-test SQLite file, inline adapter."""
    monkeypatch.setattr(
        global_settings, "database_url", f"sqlite+aiosqlite:///{tmp_path}/jobflow.db"
    )
    monkeypatch.setattr(global_settings, "default_adapter", AdapterKind.INLINE)
    monkeypatch.setattr(global_settings, "lock_stale_after_s", 3600)
    monkeypatch.setattr(global_settings, "job_max_attempts", 5)
    return global_settings


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Fresh schema per test, installed as the global database."""
    database = Database(settings)
    await database.create_all()
    set_database(database)
    register_adapters(database, settings)

    yield database

    set_database(None)
    await database.close()


@pytest.fixture
def queue_settings(settings, monkeypatch) -> Settings:
    monkeypatch.setattr(settings, "default_adapter", AdapterKind.QUEUE)
    return settings


@pytest.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    async with database.SessionLocal() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_sample_jobs():
    sample_jobs.calls.clear()
    sample_jobs.failures.clear()
    yield
    sample_jobs.calls.clear()
    sample_jobs.failures.clear()


@pytest.fixture
def app(database):
    """FastAPI application bound to the test database."""
    return create_app()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
