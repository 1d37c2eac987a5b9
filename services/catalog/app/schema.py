"""
Catalog Service — テーブル定義

inventory.stock は CHECK 制約で負にならないことを DB 側でも保証する。
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)

metadata = MetaData()

inventory = Table(
    "inventory",
    metadata,
    Column("product_id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("price", Numeric(18, 2), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock >= 0", name="ck_inventory_stock_non_negative"),
)

# 引き当ての記録。id は呼び出し側が渡す冪等キー
stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(36), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("reserved_at", DateTime(timezone=True), nullable=False),
    Column("released_at", DateTime(timezone=True)),
)
