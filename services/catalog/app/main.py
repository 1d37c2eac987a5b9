"""
Catalog Service — FastAPI エントリーポイント

商品の価格・有効フラグと在庫台帳を管理する。
Order Service はここから商品スナップショットを取得し、
在庫の引き当て/解放を依頼する。
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID, uuid4

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .commands import ReleaseOutcome, ReserveOutcome
from .schema import metadata

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

DATABASE_URL = os.environ["DATABASE_URL"]

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield
    await engine.dispose()


app = FastAPI(title="Catalog Service", lifespan=lifespan)


async def get_session():
    async with async_session() as session:
        yield session


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    product_id: UUID = Field(default_factory=uuid4)
    name: str = Field(min_length=1, max_length=200)
    price: Decimal = Field(ge=0, decimal_places=2)
    stock: int = Field(ge=0)
    is_active: bool = True


class ReserveRequest(BaseModel):
    quantity: int = Field(ge=1)
    reservation_id: UUID


class ReleaseRequest(BaseModel):
    quantity: int = Field(ge=1)
    reservation_id: UUID | None = None


class ActiveRequest(BaseModel):
    is_active: bool


# ── Product Endpoints ────────────────────────────


@app.post("/products", status_code=201)
async def create_product(
    req: CreateProductRequest, session: AsyncSession = Depends(get_session)
):
    try:
        await commands.create_product(
            session, str(req.product_id), req.name, req.price, req.stock, req.is_active
        )
    except IntegrityError:
        raise HTTPException(409, "Product already exists")
    return await queries.get_product(session, str(req.product_id))


@app.get("/products")
async def list_products(session: AsyncSession = Depends(get_session)):
    return await queries.list_products(session)


@app.get("/products/{product_id}")
async def get_product(product_id: UUID, session: AsyncSession = Depends(get_session)):
    """商品スナップショット (名前・価格・有効フラグ・在庫)"""
    product = await queries.get_product(session, str(product_id))
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@app.put("/products/{product_id}/active")
async def set_product_active(
    product_id: UUID, req: ActiveRequest, session: AsyncSession = Depends(get_session)
):
    if not await commands.set_active(session, str(product_id), req.is_active):
        raise HTTPException(404, "Product not found")
    return await queries.get_product(session, str(product_id))


# ── Inventory Ledger Endpoints ───────────────────


@app.post("/products/{product_id}/reserve")
async def reserve(
    product_id: UUID, req: ReserveRequest, session: AsyncSession = Depends(get_session)
):
    """在庫引き当て"""
    outcome = await commands.reserve_stock(
        session, str(product_id), req.quantity, str(req.reservation_id)
    )
    if outcome == ReserveOutcome.PRODUCT_NOT_FOUND:
        raise HTTPException(404, outcome.value)
    if outcome != ReserveOutcome.OK:
        raise HTTPException(409, outcome.value)
    return {"status": outcome.value}


@app.post("/products/{product_id}/release")
async def release(
    product_id: UUID, req: ReleaseRequest, session: AsyncSession = Depends(get_session)
):
    """在庫解放 (補償トランザクション)"""
    outcome = await commands.release_stock(
        session,
        str(product_id),
        req.quantity,
        str(req.reservation_id) if req.reservation_id else None,
    )
    if outcome == ReleaseOutcome.PRODUCT_NOT_FOUND:
        raise HTTPException(404, outcome.value)
    return {"status": outcome.value}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "catalog-service"}
