"""
Shared fixtures.

Each test gets its own SQLite files for the catalog and orders databases.
The order service talks to the real catalog FastAPI app through
httpx.ASGITransport; Redis is an AsyncMock.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CATALOG_SERVICE_URL", "http://catalog")

from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.catalog.app import commands as catalog_commands
from services.catalog.app import main as catalog_main
from services.catalog.app import queries as catalog_queries
from services.catalog.app.schema import metadata as catalog_metadata
from services.order.app.catalog_client import CatalogClient
from services.order.app.schema import metadata as order_metadata
from services.order.app.transitions import TransitionEngine
from services.order.app.workflow import OrderWorkflow

STREAM = "order_events"


async def _session_factory(url, metadata):
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def catalog_sessions(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", catalog_metadata
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def order_sessions(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", order_metadata
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def order_session(order_sessions):
    async with order_sessions() as session:
        yield session


@pytest.fixture
def catalog_app(catalog_sessions):
    async def override_session():
        async with catalog_sessions() as session:
            yield session

    catalog_main.app.dependency_overrides[catalog_main.get_session] = override_session
    yield catalog_main.app
    catalog_main.app.dependency_overrides.clear()


@pytest.fixture
async def catalog_http(catalog_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=catalog_app), base_url="http://catalog"
    ) as client:
        yield client


@pytest.fixture
def catalog(catalog_http):
    return CatalogClient(catalog_http)


@pytest.fixture
async def catalog_down():
    """Catalog client whose every request fails to connect."""

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(refuse), base_url="http://catalog"
    ) as client:
        yield CatalogClient(client)


@pytest.fixture
def redis():
    mock = AsyncMock()
    mock.xadd.return_value = "1-0"
    return mock


@pytest.fixture
def workflow(catalog, redis):
    return OrderWorkflow(catalog, redis, STREAM)


@pytest.fixture
def transitions(catalog, redis):
    return TransitionEngine(catalog, redis, STREAM)


@pytest.fixture
def add_product(catalog_sessions):
    async def _add(stock: int, price: str = "10.00", is_active: bool = True) -> str:
        product_id = str(uuid4())
        async with catalog_sessions() as session:
            await catalog_commands.create_product(
                session,
                product_id,
                f"Product {product_id[:8]}",
                Decimal(price),
                stock,
                is_active,
            )
        return product_id

    return _add


@pytest.fixture
def stock_of(catalog_sessions):
    async def _stock(product_id: str) -> int:
        async with catalog_sessions() as session:
            product = await catalog_queries.get_product(session, product_id)
        return product["stock"]

    return _stock
