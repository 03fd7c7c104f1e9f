"""Test fixtures: a throwaway SQLite database per test.

1. Each test gets its own database file (aiosqlite) with the schema created
   from the ORM metadata, so nothing leaks between tests.
2. session_factory hands out independent sessions on that file, which is
   what the worker and the concurrency tests need: every job and every
   racing caller runs in its own session, just like in production.
3. `clock` is a controllable UTC clock. Services take it as `clock=`, so
   tests move time forward instead of sleeping.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

# Point the module-level engine at SQLite before switchboard is imported
os.environ.setdefault(
    "SWITCHBOARD_DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='switchboard-')}/app.db",
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from switchboard.db.engine import build_engine, get_db  # noqa: E402
from switchboard.db.models import Base  # noqa: E402
from switchboard.main import app  # noqa: E402
from switchboard.services.directory import AgentDirectory  # noqa: E402


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """Session factory bound to a fresh database file."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def make_agent(db_session, clock):
    """Register agents by name: `await make_agent("forge")`."""

    async def _make(name: str, role: str = "engineer"):
        return await AgentDirectory(db_session, clock=clock).register(name, role=role)

    return _make


def _override_db(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    return override_get_db


@pytest_asyncio.fixture()
async def client(session_factory):
    """HTTP client with get_db and auth overridden for testing.

    get_current_user returns an all-scopes identity, so protected routes
    work without minting API keys first.
    """
    from switchboard.auth.dependencies import CurrentIdentity, get_current_user

    def override_get_current_user():
        return CurrentIdentity(name="test", scopes=["all"])

    app.dependency_overrides[get_db] = _override_db(session_factory)
    app.dependency_overrides[get_current_user] = override_get_current_user

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauthenticated_client(session_factory):
    """HTTP client WITHOUT the auth override, for real API-key flows."""
    app.dependency_overrides[get_db] = _override_db(session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
