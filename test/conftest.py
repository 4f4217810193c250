"""
Pytest configuration and fixtures for consent lineage tests
"""

import os
import sys
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_JSON", "false")

from consent_lineage.database import Base  # noqa: E402
from consent_lineage.routes.consent_sync import get_validity_engine  # noqa: E402
from consent_lineage.services.expiration import ExpirationPolicy  # noqa: E402
from consent_lineage.services.lineage_log import DatabaseLineageLog  # noqa: E402
from consent_lineage.services.scope_matrix import AllowAllScopeMatrix  # noqa: E402
from consent_lineage.services.timestamp_validator import TimestampValidator  # noqa: E402
from consent_lineage.services.validity_engine import ValidityEngine  # noqa: E402
from main import app  # noqa: E402
from utils.mocks import ManualClock  # noqa: E402


@pytest.fixture
def clock() -> ManualClock:
    """Clock fixed at 2024-10-24T11:00:00Z until advanced"""
    return ManualClock()


@pytest.fixture
async def test_engine(tmp_path):
    """
    Fresh SQLite database file per test.

    A file rather than :memory: so that concurrent sessions see one database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'consent_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def lineage_log(session_factory) -> DatabaseLineageLog:
    return DatabaseLineageLog(session_factory)


@pytest.fixture
def expiration_policy() -> ExpirationPolicy:
    """No expiry unless a test overrides this fixture"""
    return ExpirationPolicy()


@pytest.fixture
def scope_matrix():
    return AllowAllScopeMatrix()


@pytest.fixture
def validity_engine(session_factory, lineage_log, clock, expiration_policy, scope_matrix) -> ValidityEngine:
    return ValidityEngine(
        session_factory=session_factory,
        lineage_log=lineage_log,
        validator=TimestampValidator(clock=clock),
        expiration=expiration_policy,
        scope_matrix=scope_matrix,
        clock=clock,
    )


@pytest.fixture
async def api_client(validity_engine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app wired to the test engine"""
    app.dependency_overrides[get_validity_engine] = lambda: validity_engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
