import os
import tempfile
import uuid
from datetime import timedelta
from pathlib import Path

from httpx import ASGITransport, AsyncClient
import pytest
import pytest_asyncio


# Point the app at a throwaway SQLite file before anything imports the engine
_test_db_dir = Path(tempfile.mkdtemp(prefix="boxoffice-test-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_db_dir / 'boxoffice_test.db'}"
os.environ["HOLD_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["SPATIAL_BACKEND"] = "auto"

from boxoffice.db import Base, EventStatus, async_session_maker, engine, utcnow  # noqa: E402
from boxoffice.geo_search import GeoSearchService  # noqa: E402
from boxoffice.catalog import CatalogService  # noqa: E402
from boxoffice.inventory import InventoryService  # noqa: E402
from boxoffice.main import app  # noqa: E402
from boxoffice.orders import OrderService  # noqa: E402


@pytest_asyncio.fixture(scope="function")
async def tables():
    """Fresh schema per test; the engine is disposed so no connection outlives its loop."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(tables):
    async with async_session_maker() as session:
        yield session


@pytest.fixture
def session_factory(tables):
    return async_session_maker


@pytest.fixture
def geo_search():
    return GeoSearchService(backend="haversine")


@pytest.fixture
def catalog(geo_search):
    return CatalogService(geo_search)


@pytest.fixture
def inventory():
    return InventoryService()


@pytest.fixture
def orders(inventory):
    return OrderService(inventory)


@pytest.fixture
def make_event(session_factory, catalog):
    """Create a live public event one day out; keyword arguments override columns."""

    async def _make_event(title="Show", **fields):
        start_at = fields.pop("start_at", utcnow() + timedelta(days=1))
        end_at = fields.pop("end_at", start_at + timedelta(hours=3))
        fields.setdefault("status", EventStatus.LIVE.value)
        async with session_factory() as session:
            return await catalog.create_event(session, title, start_at, end_at, **fields)

    return _make_event


@pytest.fixture
def make_ticket_type(session_factory, catalog):
    async def _make_ticket_type(event_id, capacity=1, kind="GA", price_cents=2500, name="General Admission"):
        async with session_factory() as session:
            return await catalog.add_ticket_type(
                session, event_id, name=name, kind=kind, capacity=capacity, price_cents=price_cents
            )

    return _make_ticket_type


@pytest.fixture
def buyer_id():
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest_asyncio.fixture(scope="function")
async def async_client(tables):
    """ASGI client bound to the app; requests use the app's own session factory."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
