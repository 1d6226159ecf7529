import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from deckterm.services.registry import SessionRegistry
from deckterm.services.terminal_manager import TerminalManager
from tests.mocks.fake_terminal import FakeClock, FakeSpawner

ALICE = {"X-Auth-Request-User": "alice", "X-Auth-Request-Email": "alice@example.com"}
BOB = {"X-Auth-Request-User": "bob", "X-Auth-Request-Email": "bob@example.com"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def registry(spawner, clock):
    return SessionRegistry(shell=["/bin/sh", "-il"], spawner=spawner, clock=clock)


@pytest.fixture
def manager(registry, clock):
    return TerminalManager(
        registry=registry,
        max_sessions=10,
        max_sessions_per_owner=10,
        rate_limit_window=60.0,
        rate_limit_max=20,
        idle_timeout=1800.0,
        idle_sweep_interval=60.0,
        clock=clock,
    )


@pytest.fixture
def app(manager):
    """The FastAPI app with a terminal manager backed by fake processes."""
    from deckterm.main import app

    app.state.terminal_manager = manager
    app.state.upstream_client = None
    app.state.started_at = 0.0
    yield app


@pytest_asyncio.fixture
async def alice_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=ALICE) as client:
        yield client


@pytest_asyncio.fixture
async def bob_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=BOB) as client:
        yield client


@pytest_asyncio.fixture
async def anon_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
