"""
Tests for cancellation and admin status transitions.
"""

import json

import pytest
from sqlalchemy import select

from services.order.app import queries
from services.order.app.aggregate import OrderStatus
from services.order.app.errors import ConcurrencyConflict, InvalidTransition, OrderNotFound
from services.order.app.outbox import OutboxRelay
from services.order.app.schema import outbox_events, pending_releases
from services.order.app.transitions import TransitionEngine
from services.order.app.workflow import LineRequest


@pytest.fixture
def place_order(workflow, order_session, add_product):
    async def _place(*stocks_and_quantities, user_id="user-1"):
        lines = []
        products = []
        for stock, quantity in stocks_and_quantities:
            product = await add_product(stock=stock)
            products.append(product)
            lines.append(LineRequest(product, quantity))
        order = await workflow.create_order(order_session, user_id, lines)
        return order, products

    return _place


class TestCustomerCancel:
    async def test_cancel_pending_releases_reserved_stock(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (p1, p2) = await place_order((5, 2), (3, 3))
        assert await stock_of(p1) == 3
        assert await stock_of(p2) == 0

        cancelled = await transitions.cancel_order(order_session, order.id, "user-1")

        assert cancelled.status == OrderStatus.CANCELLED
        assert await stock_of(p1) == 5
        assert await stock_of(p2) == 3
        stored = await queries.load_order(order_session, order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.updated_at is not None

    async def test_second_cancel_is_rejected_and_releases_nothing(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((4, 4))
        await transitions.cancel_order(order_session, order.id, "user-1")

        with pytest.raises(InvalidTransition):
            await transitions.cancel_order(order_session, order.id, "user-1")
        assert await stock_of(product) == 4

    async def test_cancel_shipped_order_is_rejected(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        await transitions.update_status(order_session, order.id, OrderStatus.SHIPPED)
        before = await queries.load_order(order_session, order.id)

        with pytest.raises(InvalidTransition):
            await transitions.cancel_order(order_session, order.id, "user-1")

        after = await queries.load_order(order_session, order.id)
        assert after.status == OrderStatus.SHIPPED
        assert after.updated_at == before.updated_at
        assert after.version == before.version
        assert await stock_of(product) == 3

    async def test_cannot_cancel_someone_elses_order(
        self, transitions, order_session, place_order
    ):
        order, _ = await place_order((5, 1), user_id="owner")
        with pytest.raises(OrderNotFound):
            await transitions.cancel_order(order_session, order.id, "intruder")

    async def test_cancel_publishes_status_changed(
        self, transitions, redis, order_session, place_order
    ):
        order, _ = await place_order((5, 1))
        redis.xadd.reset_mock()

        await transitions.cancel_order(order_session, order.id, "user-1")

        _stream, fields = redis.xadd.await_args.args
        assert fields["event_type"] == "OrderStatusChanged"
        payload = json.loads(fields["data"])
        assert payload["old_status"] == "Pending"
        assert payload["new_status"] == "Cancelled"
        assert payload["order_number"] == order.order_number

    async def test_release_retried_when_catalog_is_down(
        self, catalog, catalog_down, redis, order_session, order_sessions, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        offline = TransitionEngine(catalog_down, redis, "order_events")

        cancelled = await offline.cancel_order(order_session, order.id, "user-1")
        assert cancelled.status == OrderStatus.CANCELLED
        assert await stock_of(product) == 3

        row = (await order_session.execute(select(pending_releases))).one()
        assert row.released_at is None
        assert row.attempts == 1

        relay = OutboxRelay(order_sessions, redis, catalog, "order_events")
        assert await relay.retry_releases() == 1
        assert await relay.retry_releases() == 0
        assert await stock_of(product) == 5


class TestAdminTransitions:
    async def test_forward_transition_with_note(self, transitions, order_session, place_order):
        order, _ = await place_order((5, 1))

        updated = await transitions.update_status(
            order_session, order.id, OrderStatus.PROCESSING, "picked"
        )

        assert updated.status == OrderStatus.PROCESSING
        stored = await queries.load_order(order_session, order.id)
        assert stored.admin_notes == "picked"
        assert stored.version == 2

    async def test_backward_transition_is_rejected(
        self, transitions, order_session, place_order
    ):
        order, _ = await place_order((5, 1))
        await transitions.update_status(order_session, order.id, OrderStatus.SHIPPED)
        before = await queries.load_order(order_session, order.id)

        with pytest.raises(InvalidTransition):
            await transitions.update_status(order_session, order.id, OrderStatus.CONFIRMED)

        after = await queries.load_order(order_session, order.id)
        assert after.status == OrderStatus.SHIPPED
        assert after.updated_at == before.updated_at

    async def test_terminal_state_is_final(self, transitions, order_session, place_order):
        order, _ = await place_order((5, 1))
        await transitions.update_status(order_session, order.id, OrderStatus.REFUNDED)
        with pytest.raises(InvalidTransition):
            await transitions.update_status(order_session, order.id, OrderStatus.DELIVERED)

    async def test_admin_cancel_before_shipping_releases_stock(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        await transitions.update_status(order_session, order.id, OrderStatus.CONFIRMED)
        await transitions.update_status(order_session, order.id, OrderStatus.CANCELLED)
        assert await stock_of(product) == 5

    async def test_admin_cancel_after_shipping_keeps_stock(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        await transitions.update_status(order_session, order.id, OrderStatus.SHIPPED)
        await transitions.update_status(order_session, order.id, OrderStatus.CANCELLED)
        assert await stock_of(product) == 3

    async def test_refund_before_shipping_releases_stock(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        await transitions.update_status(order_session, order.id, OrderStatus.PROCESSING)
        await transitions.update_status(order_session, order.id, OrderStatus.REFUNDED)
        assert await stock_of(product) == 5

    async def test_refund_after_shipping_keeps_stock(
        self, transitions, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        await transitions.update_status(order_session, order.id, OrderStatus.SHIPPED)
        await transitions.update_status(order_session, order.id, OrderStatus.REFUNDED)
        assert await stock_of(product) == 3

    async def test_same_status_update_keeps_status_and_stores_note(
        self, transitions, redis, order_session, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))
        await transitions.update_status(order_session, order.id, OrderStatus.SHIPPED)
        before = await queries.load_order(order_session, order.id)
        redis.xadd.reset_mock()

        updated = await transitions.update_status(
            order_session, order.id, OrderStatus.SHIPPED, "tracking 42"
        )

        assert updated.status == OrderStatus.SHIPPED
        stored = await queries.load_order(order_session, order.id)
        assert stored.status == OrderStatus.SHIPPED
        assert stored.admin_notes == "tracking 42"
        assert stored.version == before.version + 1
        assert stored.updated_at >= before.updated_at
        assert await stock_of(product) == 3

        _stream, fields = redis.xadd.await_args.args
        payload = json.loads(fields["data"])
        assert payload["old_status"] == payload["new_status"] == "Shipped"

    async def test_unknown_order(self, transitions, order_session):
        with pytest.raises(OrderNotFound):
            await transitions.update_status(
                order_session, "00000000-0000-0000-0000-000000000000", OrderStatus.CONFIRMED
            )

    async def test_each_transition_writes_an_outbox_event(
        self, transitions, order_session, place_order
    ):
        order, _ = await place_order((5, 1))
        await transitions.update_status(order_session, order.id, OrderStatus.CONFIRMED)
        await transitions.update_status(order_session, order.id, OrderStatus.DELIVERED)

        types = (
            await order_session.execute(
                select(outbox_events.c.event_type).order_by(outbox_events.c.created_at)
            )
        ).scalars().all()
        assert types == ["OrderCreated", "OrderStatusChanged", "OrderStatusChanged"]


class TestConcurrentTransitions:
    async def test_stale_version_loses(
        self, transitions, order_sessions, place_order, stock_of
    ):
        order, (product,) = await place_order((5, 2))

        async with order_sessions() as admin_session, order_sessions() as customer_session:
            admin_view = await queries.load_order(admin_session, order.id)
            customer_view = await queries.load_order(customer_session, order.id)

            await transitions.apply(
                admin_session, admin_view, OrderStatus.SHIPPED, by_admin=True
            )
            with pytest.raises(ConcurrencyConflict):
                await transitions.apply(
                    customer_session, customer_view, OrderStatus.CANCELLED, by_admin=False
                )

        async with order_sessions() as session:
            stored = await queries.load_order(session, order.id)
        assert stored.status == OrderStatus.SHIPPED
        assert await stock_of(product) == 3
