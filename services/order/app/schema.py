"""
Order Service — テーブル定義

Database per Service: このサービスだけが注文データベースに書き込む。
outbox_events / pending_releases は注文の更新と同じトランザクションで書かれ、
OutboxRelay が後から配信・再試行する。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(50), nullable=False, unique=True, index=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("total", Numeric(18, 2), nullable=False),
    Column("customer_notes", String(1000)),
    Column("admin_notes", String(1000)),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True)),
    Column("version", Integer, nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", String(36), nullable=False, index=True),
    Column("product_name", String(200), nullable=False),
    Column("unit_price", Numeric(18, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", Numeric(18, 2), nullable=False),
    Column("reservation_id", String(36), nullable=False),
    Column("position", Integer, nullable=False),
)

outbox_events = Table(
    "outbox_events",
    metadata,
    Column("event_id", String(36), primary_key=True),
    Column("event_type", String(50), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("published_at", DateTime(timezone=True), index=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
)

# 在庫解放(補償)の記録。id は Catalog 側の reservation_id
pending_releases = Table(
    "pending_releases",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36)),
    Column("product_id", String(36), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("released_at", DateTime(timezone=True), index=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
)
