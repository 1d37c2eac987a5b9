"""
Catalog Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import inventory


def _to_dict(row) -> dict:
    return {
        "id": row.product_id,
        "name": row.name,
        "price": row.price,
        "stock": row.stock,
        "is_active": row.is_active,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        select(inventory).where(inventory.c.product_id == product_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(inventory).order_by(inventory.c.name))
    return [_to_dict(row) for row in result.fetchall()]
