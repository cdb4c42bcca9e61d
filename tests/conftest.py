"""Shared fixtures for famsync tests.

Uses SQLite (aiosqlite) in memory, fresh tables per test.
Set TEST_DATABASE_URL to override (e.g. for CI with real PostgreSQL).
"""

import os
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from famsync.database import Base
from famsync.errors import NetworkUnavailable
from famsync.schemas.sync import RemoteMembership, RemoteRecord
from famsync.services.code_generator import CodeGenerator
from famsync.services.data_service import DataService
from famsync.services.error_classifier import ErrorClassifier, ErrorThrottle
from famsync.services.family_creation import FamilyCreationService
from famsync.services.identity import Identity, SessionIdentityProvider
from famsync.services.sync_coordinator import SyncCoordinator

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeRemoteBackend:
    """In-memory remote backend.

    ``failures`` is a list of exceptions raised by successive ``save`` calls
    before saves start succeeding; ``offline`` makes every call fail.
    ``codes`` holds join codes taken on other devices.
    """

    def __init__(self) -> None:
        self.saved: dict[uuid.UUID, RemoteRecord] = {}
        self.save_calls = 0
        self.failures: list[Exception] = []
        self.offline = False
        self.memberships: list[RemoteMembership] = []
        self.fetch_error: Exception | None = None
        self.codes: set[str] = set()
        self.code_checks: list[str] = []
        self.code_check_error: Exception | None = None

    async def save(self, record: RemoteRecord) -> str:
        self.save_calls += 1
        if self.offline:
            raise NetworkUnavailable()
        if self.failures:
            raise self.failures.pop(0)
        self.saved[record.id] = record
        return f"remote-{record.record_type}-{record.id}"

    async def fetch_active_memberships(self, family_id: uuid.UUID) -> list[RemoteMembership]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return [m for m in self.memberships if m.family_id == family_id]

    async def family_code_exists(self, code: str) -> bool:
        self.code_checks.append(code)
        if self.offline:
            raise NetworkUnavailable()
        if self.code_check_error is not None:
            raise self.code_check_error
        saved = {r.fields.get("code") for r in self.saved.values() if r.record_type == "family"}
        return code in self.codes or code in saved


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def session_factory():
    import famsync.models  # noqa: F401

    engine_kwargs = {}
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine_kwargs = {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, **engine_kwargs)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
def remote():
    return FakeRemoteBackend()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def classifier(clock):
    return ErrorClassifier(throttle=ErrorThrottle(window_seconds=60.0, clock=clock))


@pytest.fixture()
def sleeps():
    """Delays requested by the code under test; nothing actually sleeps."""
    calls: list[float] = []

    async def _sleep(delay: float) -> None:
        calls.append(delay)

    _sleep.calls = calls
    return _sleep


@pytest.fixture()
def data(session_factory, remote):
    return DataService(session_factory, remote=remote)


@pytest.fixture()
def local_data(session_factory):
    """Data layer without a remote backend."""
    return DataService(session_factory)


@pytest.fixture()
def sync(data, remote, classifier, sleeps):
    return SyncCoordinator(data, remote, classifier, max_attempts=3, base_delay=2.0, sleep=sleeps)


@pytest.fixture()
def identity_provider():
    return SessionIdentityProvider(Identity(subject="auth0|smith-parent", display_name="Pat Smith"))


@pytest.fixture()
def service(data, sync, classifier, identity_provider, sleeps):
    return FamilyCreationService(
        data=data,
        code_generator=CodeGenerator(),
        sync=sync,
        classifier=classifier,
        identity_provider=identity_provider,
        max_auto_retries=3,
        sleep=sleeps,
    )


@pytest.fixture()
def make_user(data):
    counter = iter(range(1, 1000))

    async def _make(name: str = "Member"):
        n = next(counter)
        return await data.create_user_profile(f"{name} {n}", f"{n:02d}" + "a" * 62)

    return _make


# ---------------------------------------------------------------------------
# HTTP test client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def client(data, sync, classifier, remote):
    from famsync.core.dependencies import EngineComponents
    from famsync.main import app

    app.state.components = EngineComponents(
        data=data,
        classifier=classifier,
        code_generator=CodeGenerator(),
        sync=sync,
        remote=remote,
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app.state.components


@pytest.fixture()
def identity_headers():
    def _headers(subject: str, name: str | None = None) -> dict[str, str]:
        headers = {"X-Identity-Subject": subject}
        if name:
            headers["X-Display-Name"] = name
        return headers

    return _headers
