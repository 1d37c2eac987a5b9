"""
Order Service — コマンド (書き込み側)

注文の永続化は必ずイベント(outbox)と同じトランザクションで行う。
状態の更新は version による楽観的ロックで、同時更新を検知する。
"""

from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import outbox
from .aggregate import OrderAggregate, OrderLine
from .errors import ConcurrencyConflict
from .events import IntegrationEvent
from .schema import order_lines, orders


async def insert_order(
    session: AsyncSession,
    order: OrderAggregate,
    event: IntegrationEvent,
) -> None:
    """
    注文作成コマンド

    1. 注文と明細を INSERT
    2. OrderCreated を outbox に追記
    3. まとめてコミット
    """
    await session.execute(
        insert(orders).values(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status.value,
            total=order.total,
            customer_notes=order.customer_notes,
            admin_notes=order.admin_notes,
            created_at=order.created_at,
            updated_at=order.updated_at,
            version=order.version,
        )
    )
    await session.execute(
        insert(order_lines),
        [
            {
                "id": line.id,
                "order_id": order.id,
                "product_id": line.product_id,
                "product_name": line.product_name,
                "unit_price": line.unit_price,
                "quantity": line.quantity,
                "subtotal": line.subtotal,
                "reservation_id": line.reservation_id,
                "position": position,
            }
            for position, line in enumerate(order.lines)
        ],
    )
    await outbox.append_event(session, event)
    await session.commit()


async def save_transition(
    session: AsyncSession,
    order: OrderAggregate,
    expected_version: int,
    event: IntegrationEvent,
    releases: list[OrderLine],
) -> None:
    """
    状態遷移コマンド

    expected_version が一致した場合だけ更新する。
    0 行更新 = 他のリクエストが先に更新した → ConcurrencyConflict。
    在庫解放が必要な明細は pending_releases に同じトランザクションで記録する。
    """
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order.id, orders.c.version == expected_version)
        .values(
            status=order.status.value,
            admin_notes=order.admin_notes,
            updated_at=order.updated_at,
            version=order.version,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConcurrencyConflict(order.id)

    await outbox.append_event(session, event)
    for line in releases:
        await outbox.enqueue_release(
            session, line.reservation_id, line.product_id, line.quantity, order.id
        )
    await session.commit()
