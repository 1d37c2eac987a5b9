"""
Order Service — 状態遷移エンジン

顧客のキャンセルと管理者による状態変更を処理する。

1. 遷移表で検証 (不正なら InvalidTransition、何も変更しない)
2. version 付き UPDATE + OrderStatusChanged(outbox) + 在庫解放の記録をコミット
3. 出荷前のキャンセルなら、記録した在庫解放を Catalog に適用
4. イベントを発行
"""

import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, outbox, queries
from .aggregate import OrderAggregate, OrderStatus
from .catalog_client import CatalogClient
from .errors import OrderNotFound
from .events import OrderStatusChanged

logger = logging.getLogger(__name__)


class TransitionEngine:
    def __init__(
        self,
        catalog: CatalogClient,
        redis: aioredis.Redis,
        stream: str,
    ) -> None:
        self.catalog = catalog
        self.redis = redis
        self.stream = stream

    async def cancel_order(
        self, session: AsyncSession, order_id: str, user_id: str
    ) -> OrderAggregate:
        """顧客によるキャンセル。PENDING の自分の注文だけが対象。"""
        order = await queries.load_order(session, order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFound(order_id)
        return await self.apply(session, order, OrderStatus.CANCELLED, by_admin=False)

    async def update_status(
        self,
        session: AsyncSession,
        order_id: str,
        target: OrderStatus,
        admin_notes: str | None = None,
    ) -> OrderAggregate:
        """管理者による状態変更"""
        order = await queries.load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return await self.apply(
            session, order, target, by_admin=True, admin_notes=admin_notes
        )

    async def apply(
        self,
        session: AsyncSession,
        order: OrderAggregate,
        target: OrderStatus,
        by_admin: bool,
        admin_notes: str | None = None,
    ) -> OrderAggregate:
        expected_version = order.version
        releases = order.lines if order.releases_stock_on(target) else []
        old_status = order.apply_transition(target, by_admin, admin_notes)

        event = OrderStatusChanged.from_transition(order, old_status)
        await commands.save_transition(session, order, expected_version, event, releases)
        logger.info(
            "Order %s: %s -> %s (%s)",
            order.order_number, old_status.value, target.value,
            "admin" if by_admin else "customer",
        )

        for line in releases:
            await outbox.release_now(
                session, self.catalog, line.reservation_id, line.product_id, line.quantity
            )

        await outbox.publish_now(session, self.redis, self.stream, event)
        return order
