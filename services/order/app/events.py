"""
Order Service — 統合イベント定義

他サービスへ配信される事実(イベント)。過去形で命名し、不変として扱う。
配信は at-least-once なので、受信側は event_id で重複を排除する。
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .aggregate import OrderAggregate, OrderStatus


class IntegrationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    order_id: UUID
    order_number: str
    user_id: str
    total: Decimal

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), default=str)


class OrderCreated(IntegrationEvent):
    """注文が作成された(在庫引き当て済み)"""
    item_count: int

    @classmethod
    def from_order(cls, order: OrderAggregate) -> "OrderCreated":
        return cls(
            order_id=UUID(order.id),
            order_number=order.order_number,
            user_id=order.user_id,
            total=order.total,
            item_count=len(order.lines),
        )


class OrderStatusChanged(IntegrationEvent):
    """注文の状態が変わった"""
    old_status: OrderStatus
    new_status: OrderStatus

    @classmethod
    def from_transition(
        cls, order: OrderAggregate, old_status: OrderStatus
    ) -> "OrderStatusChanged":
        return cls(
            order_id=UUID(order.id),
            order_number=order.order_number,
            user_id=order.user_id,
            total=order.total,
            old_status=old_status,
            new_status=order.status,
        )
