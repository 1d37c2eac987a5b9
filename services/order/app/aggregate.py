"""
Order Service — 注文集約 (Order Aggregate)

注文とその明細を表す。商品情報は Catalog サービスへの参照ではなく、
注文時点のスナップショット (ProductSnapshot) として保持する。
後から商品価格が変わっても過去の注文は壊れない。

状態遷移はこのモジュールの遷移表だけで判定する:

    PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED
        └────────┴────────────┴──────────┴──→ CANCELLED / REFUNDED

DELIVERED / CANCELLED / REFUNDED は終端状態。
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from .errors import InvalidTransition, OrderValidationError

CENT = Decimal("0.01")


class OrderStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


# 管理者による遷移: 現在と同じか後ろの状態、または CANCELLED / REFUNDED へ
# (同じ状態への遷移は管理者メモの更新に使う)
ADMIN_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.CONFIRMED: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# 顧客によるキャンセルは PENDING からのみ
CUSTOMER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CANCELLED}),
}

# 出荷前にキャンセル・返金された場合だけ在庫を戻す
RELEASE_STOCK_FROM = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
})

RELEASE_STOCK_ON = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})

TERMINAL_STATUSES = frozenset(
    status for status, targets in ADMIN_TRANSITIONS.items() if not targets
)


def parse_status(value: str) -> OrderStatus:
    """文字列を OrderStatus に変換する。大文字小文字は区別しない。"""
    for status in OrderStatus:
        if status.value.lower() == value.strip().lower():
            return status
    raise OrderValidationError(f"Unknown order status: {value!r}")


def new_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3)}"


@dataclass(frozen=True)
class ProductSnapshot:
    """注文時点で Catalog から取得した商品情報 (値オブジェクト)"""
    product_id: str
    name: str
    unit_price: Decimal
    is_active: bool


@dataclass(frozen=True)
class OrderLine:
    id: str
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    reservation_id: str

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT)

    @classmethod
    def from_snapshot(
        cls, snapshot: ProductSnapshot, quantity: int, reservation_id: str
    ) -> "OrderLine":
        if quantity < 1:
            raise OrderValidationError("Quantity must be a positive integer")
        return cls(
            id=str(uuid4()),
            product_id=snapshot.product_id,
            product_name=snapshot.name,
            unit_price=snapshot.unit_price.quantize(CENT),
            quantity=quantity,
            reservation_id=reservation_id,
        )


class OrderAggregate:
    """
    注文集約。明細と状態遷移のルールを持つ。

    合計金額は常に明細の小計から再計算する。
    クライアントが送ってきた金額は使わない。
    """

    def __init__(self) -> None:
        self.id: str = ""
        self.order_number: str = ""
        self.user_id: str = ""
        self.status: OrderStatus = OrderStatus.PENDING
        self.lines: list[OrderLine] = []
        self.customer_notes: str | None = None
        self.admin_notes: str | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.version: int = 0

    @property
    def total(self) -> Decimal:
        return sum((line.subtotal for line in self.lines), Decimal("0")).quantize(CENT)

    @classmethod
    def place(
        cls,
        user_id: str,
        lines: list[OrderLine],
        customer_notes: str | None = None,
    ) -> "OrderAggregate":
        """新規注文を PENDING 状態で組み立てる。"""
        if not lines:
            raise OrderValidationError("An order needs at least one line")
        now = datetime.now(timezone.utc)
        agg = cls()
        agg.id = str(uuid4())
        agg.order_number = new_order_number(now)
        agg.user_id = user_id
        agg.status = OrderStatus.PENDING
        agg.lines = list(lines)
        agg.customer_notes = customer_notes
        agg.created_at = now
        agg.version = 1
        return agg

    # ── 状態遷移 ─────────────────────────────────

    def allowed_targets(self, by_admin: bool) -> frozenset[OrderStatus]:
        table = ADMIN_TRANSITIONS if by_admin else CUSTOMER_TRANSITIONS
        return table.get(self.status, frozenset())

    def check_transition(self, target: OrderStatus, by_admin: bool) -> None:
        if target not in self.allowed_targets(by_admin):
            raise InvalidTransition(self.status.value, target.value)

    def releases_stock_on(self, target: OrderStatus) -> bool:
        return target in RELEASE_STOCK_ON and self.status in RELEASE_STOCK_FROM

    def apply_transition(
        self,
        target: OrderStatus,
        by_admin: bool,
        admin_notes: str | None = None,
    ) -> OrderStatus:
        """
        遷移を検証してから適用する。元の状態を返す。

        検証に失敗した場合は何も変更しない。
        """
        self.check_transition(target, by_admin)
        previous = self.status
        self.status = target
        if by_admin and admin_notes is not None:
            self.admin_notes = admin_notes
        self.updated_at = datetime.now(timezone.utc)
        self.version += 1
        return previous

    # ── 表現 ─────────────────────────────────────

    @classmethod
    def from_rows(cls, row, line_rows) -> "OrderAggregate":
        agg = cls()
        agg.id = row.id
        agg.order_number = row.order_number
        agg.user_id = row.user_id
        agg.status = OrderStatus(row.status)
        agg.customer_notes = row.customer_notes
        agg.admin_notes = row.admin_notes
        agg.created_at = row.created_at
        agg.updated_at = row.updated_at
        agg.version = row.version
        agg.lines = [
            OrderLine(
                id=line.id,
                product_id=line.product_id,
                product_name=line.product_name,
                unit_price=Decimal(line.unit_price).quantize(CENT),
                quantity=line.quantity,
                reservation_id=line.reservation_id,
            )
            for line in line_rows
        ]
        return agg

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status.value,
            "total": self.total,
            "order_date": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "customer_notes": self.customer_notes,
            "admin_notes": self.admin_notes,
            "items": [
                {
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "subtotal": line.subtotal,
                }
                for line in self.lines
            ],
        }
