"""
Shared fixtures: an in-memory SQLite mirror and settings isolated from any
local .env file.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database.connection import Base, build_session_factory
import database.ledger_models  # noqa: F401  (registers tables)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        SYNC_INTERVAL_MS=0,
        TALLY_MIN_REQUEST_INTERVAL_MS=0,
        SENTRY_DSN="",
        LOG_JSON=False,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
