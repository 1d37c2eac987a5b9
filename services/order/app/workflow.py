"""
Order Service — 注文作成ワークフロー (Saga オーケストレーター)

Saga パターン(オーケストレーション型):
  分散トランザクションの代わりに、各ステップに補償処理を持たせる。

  フロー:
  ┌──────────────────────────────────────────────────────────┐
  │  1. 全明細の商品スナップショットを Catalog から取得        │
  │     └─ 失敗 → 在庫に触れずに中止                         │
  │  2. 明細ごとに在庫を引き当て (適用済みリストに記録)        │
  │     └─ 失敗 → 適用済みの引き当てをすべて解放 (補償)       │
  │  3. 注文 + OrderCreated(outbox) を1トランザクションで保存  │
  │     └─ 失敗 → 補償して InternalError                     │
  │  4. コミット後にイベントを発行 (失敗しても注文は有効)      │
  └──────────────────────────────────────────────────────────┘

補償は1か所 (_compensate) にまとめ、明細の数に関係なく同じ経路で
ロールバックする。
"""

import logging
from dataclasses import dataclass
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, outbox
from .aggregate import OrderAggregate, OrderLine
from .catalog_client import CatalogClient
from .errors import CatalogUnavailable, InternalError, OrderError, OrderValidationError
from .events import OrderCreated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineRequest:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class AppliedReservation:
    reservation_id: str
    product_id: str
    quantity: int


class OrderWorkflow:
    """注文作成 Saga のオーケストレーター"""

    def __init__(
        self,
        catalog: CatalogClient,
        redis: aioredis.Redis,
        stream: str,
    ) -> None:
        self.catalog = catalog
        self.redis = redis
        self.stream = stream

    async def create_order(
        self,
        session: AsyncSession,
        user_id: str,
        line_requests: list[LineRequest],
        customer_notes: str | None = None,
    ) -> OrderAggregate:
        """
        注文を作成する。

        失敗時は必ず補償を終えてから例外を送出するので、
        どの失敗経路でも在庫は呼び出し前と同じ状態に戻る。
        """
        if not line_requests:
            raise OrderValidationError("An order needs at least one line")
        for req in line_requests:
            if req.quantity < 1:
                raise OrderValidationError(
                    f"Quantity for product {req.product_id} must be at least 1"
                )

        # ── Step 1: 商品スナップショット ────────────
        snapshots = [await self.catalog.get_snapshot(req.product_id) for req in line_requests]

        # ── Step 2: 在庫引き当て ─────────────────────
        applied: list[AppliedReservation] = []
        try:
            lines: list[OrderLine] = []
            for req, snapshot in zip(line_requests, snapshots):
                reservation = AppliedReservation(str(uuid4()), req.product_id, req.quantity)
                try:
                    await self.catalog.reserve(
                        reservation.product_id, reservation.quantity, reservation.reservation_id
                    )
                except CatalogUnavailable:
                    # 適用されたか不明。解放は reservation_id 単位なので安全に取り消せる
                    applied.append(reservation)
                    raise
                applied.append(reservation)
                lines.append(
                    OrderLine.from_snapshot(snapshot, req.quantity, reservation.reservation_id)
                )

            # ── Step 3: 注文を保存 ──────────────────
            order = OrderAggregate.place(user_id, lines, customer_notes)
            event = OrderCreated.from_order(order)
            await commands.insert_order(session, order, event)
        except OrderError as e:
            logger.info("Order for user %s aborted: %s", user_id, e.message)
            await self._compensate(session, applied)
            raise
        except Exception as e:
            logger.exception("Unexpected failure while creating order for user %s", user_id)
            await self._compensate(session, applied)
            raise InternalError("Order could not be created") from e

        logger.info(
            "Order created: %s (%d line(s), total=%s)",
            order.order_number, len(order.lines), order.total,
        )

        # ── Step 4: イベント発行 ────────────────────
        await outbox.publish_now(session, self.redis, self.stream, event)
        return order

    async def _compensate(
        self, session: AsyncSession, applied: list[AppliedReservation]
    ) -> None:
        """
        適用済みの引き当てを逆順に解放する。

        Catalog に届かなかった解放は pending_releases に残し、
        OutboxRelay が再試行する。
        """
        if not applied:
            return
        await session.rollback()
        try:
            for reservation in reversed(applied):
                await outbox.enqueue_release(
                    session,
                    reservation.reservation_id,
                    reservation.product_id,
                    reservation.quantity,
                )
            await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not record pending releases, releasing directly")
            await session.rollback()
            await self._release_directly(applied)
            return

        for reservation in reversed(applied):
            await outbox.release_now(
                session,
                self.catalog,
                reservation.reservation_id,
                reservation.product_id,
                reservation.quantity,
            )
        logger.info("Compensated %d reservation(s)", len(applied))

    async def _release_directly(self, applied: list[AppliedReservation]) -> None:
        for reservation in reversed(applied):
            try:
                await self.catalog.release(
                    reservation.product_id, reservation.quantity, reservation.reservation_id
                )
            except OrderError as e:
                logger.error(
                    "Reservation %s (product %s x%d) could not be released: %s",
                    reservation.reservation_id,
                    reservation.product_id,
                    reservation.quantity,
                    e.message,
                )
