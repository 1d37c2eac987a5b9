"""
Tests for the order creation saga: reservation, compensation and publishing.
"""

import asyncio
import json
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from services.order.app import queries
from services.order.app.catalog_client import CatalogClient
from services.order.app.errors import (
    CatalogUnavailable,
    InsufficientStock,
    OrderValidationError,
    ProductInactive,
    ProductNotFound,
)
from services.order.app.schema import orders, outbox_events, pending_releases
from services.order.app.workflow import LineRequest, OrderWorkflow

STREAM = "order_events"


async def count_rows(session, table) -> int:
    return (await session.execute(select(func.count()).select_from(table))).scalar_one()


class TestCreateOrder:
    async def test_creates_pending_order_and_reserves_stock(
        self, workflow, order_session, add_product, stock_of
    ):
        mug = await add_product(stock=10, price="12.50")
        tea = await add_product(stock=3, price="4.00")

        order = await workflow.create_order(
            order_session,
            "user-1",
            [LineRequest(mug, 2), LineRequest(tea, 3)],
            "leave at the door",
        )

        assert order.status.value == "Pending"
        assert order.total == Decimal("37.00")
        assert await stock_of(mug) == 8
        assert await stock_of(tea) == 0

        stored = await queries.load_order(order_session, order.id)
        assert stored.total == order.total
        assert stored.customer_notes == "leave at the door"
        assert [(line.product_id, line.quantity) for line in stored.lines] == [
            (mug, 2),
            (tea, 3),
        ]

    async def test_publishes_order_created_after_commit(
        self, workflow, redis, order_session, add_product
    ):
        product = await add_product(stock=5)
        order = await workflow.create_order(order_session, "user-1", [LineRequest(product, 1)])

        redis.xadd.assert_awaited_once()
        stream, fields = redis.xadd.await_args.args
        assert stream == STREAM
        assert fields["event_type"] == "OrderCreated"
        payload = json.loads(fields["data"])
        assert payload["order_id"] == order.id
        assert payload["order_number"] == order.order_number
        assert payload["user_id"] == "user-1"
        assert Decimal(payload["total"]) == order.total
        assert payload["event_id"] == fields["event_id"]

        row = (await order_session.execute(select(outbox_events))).one()
        assert row.published_at is not None

    async def test_unit_price_comes_from_catalog_snapshot(
        self, workflow, order_session, add_product
    ):
        product = await add_product(stock=5, price="3.33")
        order = await workflow.create_order(order_session, "user-1", [LineRequest(product, 3)])
        assert order.lines[0].unit_price == Decimal("3.33")
        assert order.total == Decimal("9.99")

    async def test_failed_line_compensates_earlier_reservations(
        self, workflow, redis, order_session, add_product, stock_of
    ):
        p1 = await add_product(stock=2)
        p2 = await add_product(stock=0)

        with pytest.raises(InsufficientStock) as exc_info:
            await workflow.create_order(
                order_session, "user-1", [LineRequest(p1, 2), LineRequest(p2, 1)]
            )

        assert exc_info.value.details["product_id"] == p2
        assert await stock_of(p1) == 2
        assert await stock_of(p2) == 0
        assert await count_rows(order_session, orders) == 0
        assert await count_rows(order_session, outbox_events) == 0
        redis.xadd.assert_not_awaited()

        releases = (await order_session.execute(select(pending_releases))).fetchall()
        assert len(releases) == 1
        assert releases[0].product_id == p1
        assert releases[0].released_at is not None

    async def test_compensation_covers_many_lines(
        self, workflow, order_session, add_product, stock_of
    ):
        products = [await add_product(stock=4) for _ in range(3)]
        short = await add_product(stock=1)

        with pytest.raises(InsufficientStock):
            await workflow.create_order(
                order_session,
                "user-1",
                [LineRequest(p, 4) for p in products] + [LineRequest(short, 2)],
            )

        for product in products:
            assert await stock_of(product) == 4
        assert await stock_of(short) == 1

    async def test_unknown_product_aborts_without_reserving(
        self, workflow, order_session, add_product, stock_of
    ):
        product = await add_product(stock=5)
        with pytest.raises(ProductNotFound):
            await workflow.create_order(
                order_session,
                "user-1",
                [LineRequest(product, 1), LineRequest(str(uuid4()), 1)],
            )
        assert await stock_of(product) == 5
        assert await count_rows(order_session, pending_releases) == 0

    async def test_inactive_product_aborts(self, workflow, order_session, add_product, stock_of):
        active = await add_product(stock=5)
        inactive = await add_product(stock=5, is_active=False)
        with pytest.raises(ProductInactive):
            await workflow.create_order(
                order_session, "user-1", [LineRequest(active, 1), LineRequest(inactive, 1)]
            )
        assert await stock_of(active) == 5
        assert await stock_of(inactive) == 5

    async def test_rejects_invalid_requests(self, workflow, order_session, add_product):
        product = await add_product(stock=5)
        with pytest.raises(OrderValidationError):
            await workflow.create_order(order_session, "user-1", [])
        with pytest.raises(OrderValidationError):
            await workflow.create_order(order_session, "user-1", [LineRequest(product, 0)])

    async def test_catalog_unreachable(self, catalog_down, redis, order_session):
        workflow = OrderWorkflow(catalog_down, redis, STREAM)
        with pytest.raises(CatalogUnavailable):
            await workflow.create_order(order_session, "user-1", [LineRequest(str(uuid4()), 1)])
        assert await count_rows(order_session, orders) == 0

    async def test_lost_reserve_response_is_compensated(
        self, catalog_app, redis, order_session, add_product, stock_of
    ):
        """The catalog applies the reservation but the response never arrives."""
        product = await add_product(stock=5)
        inner = httpx.ASGITransport(app=catalog_app)

        class LosesReserveResponse(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request):
                response = await inner.handle_async_request(request)
                if request.url.path.endswith("/reserve"):
                    await response.aread()
                    raise httpx.ReadTimeout("response lost", request=request)
                return response

        async with httpx.AsyncClient(
            transport=LosesReserveResponse(), base_url="http://catalog"
        ) as client:
            workflow = OrderWorkflow(CatalogClient(client), redis, STREAM)
            with pytest.raises(CatalogUnavailable):
                await workflow.create_order(order_session, "user-1", [LineRequest(product, 3)])

        assert await stock_of(product) == 5

    async def test_publish_failure_keeps_the_order(
        self, workflow, redis, order_session, add_product, stock_of
    ):
        product = await add_product(stock=5)
        redis.xadd.side_effect = RedisConnectionError("broker down")

        order = await workflow.create_order(order_session, "user-1", [LineRequest(product, 2)])

        assert await queries.load_order(order_session, order.id) is not None
        assert await stock_of(product) == 3
        row = (await order_session.execute(select(outbox_events))).one()
        assert row.event_type == "OrderCreated"
        assert row.published_at is None


class TestConcurrentOrders:
    async def test_competing_orders_for_limited_stock(
        self, workflow, order_sessions, add_product, stock_of
    ):
        product = await add_product(stock=5)

        async def place(quantity):
            async with order_sessions() as session:
                try:
                    return await workflow.create_order(
                        session, f"user-{quantity}", [LineRequest(product, quantity)]
                    )
                except InsufficientStock as e:
                    return e

        results = await asyncio.gather(place(3), place(4))

        failures = [r for r in results if isinstance(r, InsufficientStock)]
        successes = [r for r in results if not isinstance(r, InsufficientStock)]
        assert len(successes) == 1
        assert len(failures) == 1
        reserved = successes[0].lines[0].quantity
        assert await stock_of(product) == 5 - reserved
