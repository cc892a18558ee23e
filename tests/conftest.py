"""Shared test fixtures for the takeoff extraction test suite.

Every test that touches the database gets its own temp-file SQLite
database (aiosqlite, foreign keys on), so nothing is shared between tests
and no PostgreSQL server is needed.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from takeoff.core.database import Base, get_db
from takeoff.main import app
from takeoff.modules.extraction import models as extraction_models  # noqa: F401
from takeoff.modules.extraction.jobs import JobOrchestrator
from takeoff.modules.extraction.router import get_orchestrator
from takeoff.modules.suppliers import models as supplier_models  # noqa: F401
from tests.fakes import FakeLLM, FakeRenderer, FakeStore

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'takeoff.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore({})


@pytest.fixture
def orchestrator(session_factory, llm, store) -> JobOrchestrator:
    return JobOrchestrator(
        session_factory,
        llm,
        store,
        FakeRenderer(),
        max_concurrent_layers=2,
        flush_batch_size=2,
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
async def client(session_factory, orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client that talks directly to the FastAPI ASGI app."""

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
