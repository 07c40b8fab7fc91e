"""
Pytest configuration and shared fixtures for backend tests.
"""
import asyncio
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/playlist_sync_test_config"

# Ensure test config directory exists
Path("/tmp/playlist_sync_test_config").mkdir(parents=True, exist_ok=True)

from config import Settings
from database import Base
from models import (  # noqa: F401 - registers tables
    Playlist, Category, Channel, EpgFile, EpgGroup, ChannelLineup, SyncJob, ImportJob,
)
from source_records import ParsedSource


class FakeSourceAdapter:
    """
    SourceAdapter stand-in that serves canned ParsedSources.

    ``sources`` maps (kind, url) to a ParsedSource or to an exception to raise.
    ``gate`` (an asyncio.Event) holds fetch() until a test releases it;
    ``category_gate`` does the same for fetch_categories(), setting
    ``category_waiting`` once the call is parked.
    """

    def __init__(self):
        self.sources = {}
        self.categories = {}
        self.gate = None
        self.category_gate = None
        self.category_waiting = asyncio.Event()
        self.fetched = []

    def set_source(self, kind, url, parsed):
        self.sources[(kind, url)] = parsed

    async def fetch(self, descriptor):
        from source_adapter import RawPayload
        self.fetched.append(descriptor)
        if self.gate is not None:
            await self.gate.wait()
        result = self.sources.get((descriptor.kind, descriptor.url))
        if isinstance(result, Exception):
            raise result
        if result is None:
            result = ParsedSource(records=[], categories=[])
        return RawPayload(url=descriptor.url, prefetched=result)

    async def parse(self, payload, descriptor):
        return payload.prefetched

    async def fetch_categories(self, descriptor):
        if self.category_gate is not None:
            self.category_waiting.set()
            await self.category_gate.wait()
        result = self.categories.get(descriptor.url, [])
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    # expire_on_commit=False allows accessing object attributes after commit/close
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(stuck_job_timeout_minutes=5, http_timeout_seconds=5.0, epg_timeout_seconds=5.0)


@pytest.fixture
def fake_adapter():
    return FakeSourceAdapter()


@pytest.fixture
def job_manager(fake_adapter, session_factory, test_settings):
    """JobManager wired to the in-memory database and the fake adapter."""
    from job_manager import JobManager
    return JobManager(adapter=fake_adapter, session_factory=session_factory, settings=test_settings)


@pytest.fixture(scope="function")
async def async_client(test_engine, session_factory, job_manager):
    """
    Create an async test client for the FastAPI app.

    Patches database module internals for endpoints that call get_session()
    directly and installs the test JobManager on app.state (the lifespan
    handler does not run under ASGITransport).
    """
    from httpx import AsyncClient, ASGITransport
    import database
    from main import app

    original_session_local = database._SessionLocal
    original_engine = database._engine
    database._SessionLocal = session_factory
    database._engine = test_engine
    app.state.job_manager = job_manager

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        # Cancel background jobs still running before the engine is torn down
        for task in list(job_manager.registry._tasks.values()):
            if not task.done():
                task.cancel()
        database._SessionLocal = original_session_local
        database._engine = original_engine
