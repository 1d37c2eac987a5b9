"""
Order Service — Catalog サービスクライアント

商品スナップショットの取得と、在庫の引き当て(Reserve)/解放(Release)を
Catalog サービスの HTTP API 経由で行う。
タイムアウトは httpx.AsyncClient 側で設定する。タイムアウトや接続失敗は
CatalogUnavailable になり、古い値や既定値で代用することはしない。
"""

import logging
from decimal import Decimal

import httpx

from .aggregate import ProductSnapshot
from .errors import (
    CatalogUnavailable,
    InsufficientStock,
    ProductInactive,
    ProductNotFound,
)

logger = logging.getLogger(__name__)


class CatalogClient:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def get_snapshot(self, product_id: str) -> ProductSnapshot:
        """商品の価格・名前・有効フラグを取得する。無効な商品はエラー。"""
        try:
            resp = await self.client.get(f"/products/{product_id}")
        except httpx.HTTPError as e:
            raise CatalogUnavailable(
                f"Catalog lookup failed for product {product_id}: {e!r}"
            ) from e

        if resp.status_code == 404:
            raise ProductNotFound(product_id)
        if resp.is_error:
            raise CatalogUnavailable(
                f"Catalog lookup returned {resp.status_code} for product {product_id}"
            )

        data = resp.json()
        snapshot = ProductSnapshot(
            product_id=str(data["id"]),
            name=data["name"],
            unit_price=Decimal(str(data["price"])),
            is_active=bool(data["is_active"]),
        )
        if not snapshot.is_active:
            raise ProductInactive(product_id)
        return snapshot

    async def reserve(self, product_id: str, quantity: int, reservation_id: str) -> None:
        """
        在庫引き当て。

        成功以外はすべて例外。CatalogUnavailable の場合は引き当てが
        適用されたかどうか分からないので、呼び出し側は解放の対象に含める。
        """
        try:
            resp = await self.client.post(
                f"/products/{product_id}/reserve",
                json={"quantity": quantity, "reservation_id": reservation_id},
            )
        except httpx.HTTPError as e:
            raise CatalogUnavailable(
                f"Reserve failed for product {product_id}: {e!r}"
            ) from e

        if resp.status_code == 404:
            raise ProductNotFound(product_id)
        if resp.status_code == 409:
            if resp.json().get("detail") == "product_inactive":
                raise ProductInactive(product_id)
            raise InsufficientStock(product_id, quantity)
        if resp.is_error:
            raise CatalogUnavailable(
                f"Reserve returned {resp.status_code} for product {product_id}"
            )

    async def release(self, product_id: str, quantity: int, reservation_id: str) -> str:
        """在庫解放(補償トランザクション)。reservation_id ごとに一度だけ適用される。"""
        try:
            resp = await self.client.post(
                f"/products/{product_id}/release",
                json={"quantity": quantity, "reservation_id": reservation_id},
            )
        except httpx.HTTPError as e:
            raise CatalogUnavailable(
                f"Release failed for product {product_id}: {e!r}"
            ) from e

        if resp.status_code == 404:
            raise ProductNotFound(product_id)
        if resp.is_error:
            raise CatalogUnavailable(
                f"Release returned {resp.status_code} for product {product_id}"
            )
        outcome = resp.json()["status"]
        logger.debug("Released reservation %s: %s", reservation_id, outcome)
        return outcome
