"""
Catalog Service — 在庫台帳コマンド

在庫の引き当て(Reserve)と解放(Release)を処理する。

引き当ては「在庫数 >= 要求数」の確認と減算を1つの条件付き UPDATE で行う。
SELECT してから UPDATE する方式は、複数インスタンスが同時に動くと
売り越しが起きるので使わない。0 行更新なら何も変更せずに失敗を返す。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import inventory, stock_reservations

logger = logging.getLogger(__name__)


class ReserveOutcome(str, Enum):
    OK = "ok"
    INSUFFICIENT_STOCK = "insufficient_stock"
    PRODUCT_INACTIVE = "product_inactive"
    PRODUCT_NOT_FOUND = "product_not_found"


class ReleaseOutcome(str, Enum):
    RELEASED = "released"
    ALREADY_RELEASED = "already_released"
    NOTHING_RESERVED = "nothing_reserved"
    PRODUCT_NOT_FOUND = "product_not_found"


async def create_product(
    session: AsyncSession,
    product_id: str,
    name: str,
    price: Decimal,
    stock: int,
    is_active: bool = True,
) -> None:
    await session.execute(
        insert(inventory).values(
            product_id=product_id,
            name=name,
            price=price,
            stock=stock,
            is_active=is_active,
            updated_at=datetime.now(timezone.utc),
        )
    )
    await session.commit()


async def set_active(session: AsyncSession, product_id: str, is_active: bool) -> bool:
    result = await session.execute(
        update(inventory)
        .where(inventory.c.product_id == product_id)
        .values(is_active=is_active, updated_at=datetime.now(timezone.utc))
    )
    await session.commit()
    return result.rowcount == 1


async def reserve_stock(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    reservation_id: str,
) -> ReserveOutcome:
    """
    在庫引き当てコマンド

    1. 同じ reservation_id が記録済みなら何もせず OK (再送)
    2. 条件付き UPDATE で減算
    3. 0 行なら理由を調べて失敗を返す (副作用なし)
    4. 引き当てを stock_reservations に記録してコミット
    """
    existing = await session.execute(
        select(stock_reservations.c.id).where(stock_reservations.c.id == reservation_id)
    )
    if existing.first():
        return ReserveOutcome.OK

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(inventory)
        .where(
            inventory.c.product_id == product_id,
            inventory.c.is_active.is_(True),
            inventory.c.stock >= quantity,
        )
        .values(stock=inventory.c.stock - quantity, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        row = (
            await session.execute(
                select(inventory.c.is_active).where(inventory.c.product_id == product_id)
            )
        ).first()
        if row is None:
            return ReserveOutcome.PRODUCT_NOT_FOUND
        if not row.is_active:
            return ReserveOutcome.PRODUCT_INACTIVE
        return ReserveOutcome.INSUFFICIENT_STOCK

    try:
        await session.execute(
            insert(stock_reservations).values(
                id=reservation_id,
                product_id=product_id,
                quantity=quantity,
                reserved_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        # 同じ reservation_id の同時リクエストが先にコミットした
        await session.rollback()
        return ReserveOutcome.OK

    logger.info("Reserved %d of %s (reservation %s)", quantity, product_id, reservation_id)
    return ReserveOutcome.OK


async def release_stock(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    reservation_id: str | None = None,
) -> ReleaseOutcome:
    """
    在庫解放コマンド(補償トランザクション)

    reservation_id がある場合は、その引き当ての数量をちょうど一度だけ戻す。
    未知の reservation_id は解放済みとして記録し、遅れて届いた
    同じ ID の引き当てが在庫を減らさないようにする。
    reservation_id がない場合は単純な加算 (入荷など)。
    """
    now = datetime.now(timezone.utc)

    if reservation_id is not None:
        reservation = (
            await session.execute(
                select(stock_reservations).where(stock_reservations.c.id == reservation_id)
            )
        ).first()
        if reservation is None:
            if not await _product_exists(session, product_id):
                return ReleaseOutcome.PRODUCT_NOT_FOUND
            try:
                await session.execute(
                    insert(stock_reservations).values(
                        id=reservation_id,
                        product_id=product_id,
                        quantity=0,
                        reserved_at=now,
                        released_at=now,
                    )
                )
                await session.commit()
            except IntegrityError:
                # 引き当てが同時にコミットされた。次の再試行で解放される
                await session.rollback()
                return await release_stock(session, product_id, quantity, reservation_id)
            return ReleaseOutcome.NOTHING_RESERVED

        if reservation.released_at is not None:
            return ReleaseOutcome.ALREADY_RELEASED

        marked = await session.execute(
            update(stock_reservations)
            .where(
                stock_reservations.c.id == reservation_id,
                stock_reservations.c.released_at.is_(None),
            )
            .values(released_at=now)
        )
        if marked.rowcount != 1:
            await session.rollback()
            return ReleaseOutcome.ALREADY_RELEASED
        product_id = reservation.product_id
        quantity = reservation.quantity

    result = await session.execute(
        update(inventory)
        .where(inventory.c.product_id == product_id)
        .values(stock=inventory.c.stock + quantity, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        return ReleaseOutcome.PRODUCT_NOT_FOUND
    await session.commit()

    logger.info("Released %d of %s (reservation %s)", quantity, product_id, reservation_id)
    return ReleaseOutcome.RELEASED


async def _product_exists(session: AsyncSession, product_id: str) -> bool:
    row = (
        await session.execute(
            select(inventory.c.product_id).where(inventory.c.product_id == product_id)
        )
    ).first()
    return row is not None
