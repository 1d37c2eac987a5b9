"""
Order Service — クエリ (読み取り側)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate, OrderStatus
from .schema import order_lines, orders


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    """注文と明細を読み出して集約を組み立てる。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    lines = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == order_id)
        .order_by(order_lines.c.position)
    )
    return OrderAggregate.from_rows(row, lines.fetchall())


async def list_user_orders(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザー自身の注文一覧 (サマリー)"""
    item_count = (
        select(func.count(order_lines.c.id))
        .where(order_lines.c.order_id == orders.c.id)
        .scalar_subquery()
    )
    result = await session.execute(
        select(
            orders.c.id,
            orders.c.order_number,
            orders.c.status,
            orders.c.total,
            orders.c.created_at,
            item_count.label("item_count"),
        )
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc())
    )
    return [
        {
            "id": row.id,
            "order_number": row.order_number,
            "status": row.status,
            "total": row.total,
            "order_date": row.created_at.isoformat() if row.created_at else None,
            "item_count": row.item_count,
        }
        for row in result.fetchall()
    ]


async def list_orders(
    session: AsyncSession, status: OrderStatus | None = None
) -> list[OrderAggregate]:
    """全注文 (管理者用)。status を指定するとその状態だけ返す。"""
    query = select(orders).order_by(orders.c.created_at.desc())
    if status is not None:
        query = query.where(orders.c.status == status.value)
    rows = (await session.execute(query)).fetchall()
    if not rows:
        return []

    lines_by_order: dict[str, list] = {row.id: [] for row in rows}
    lines = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id.in_(list(lines_by_order)))
        .order_by(order_lines.c.position)
    )
    for line in lines.fetchall():
        lines_by_order[line.order_id].append(line)
    return [OrderAggregate.from_rows(row, lines_by_order[row.id]) for row in rows]
