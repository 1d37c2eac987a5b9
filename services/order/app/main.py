"""
Order Service — FastAPI エントリーポイント

注文の作成・参照・キャンセル・状態変更を提供する。
認証はゲートウェイが行い、検証済みのユーザー ID とロールを
X-User-Id / X-User-Roles ヘッダーで渡してくる前提。

┌────────┐  X-User-Id   ┌───────────────┐  HTTP   ┌─────────────────┐
│Gateway │ ───────────▶ │ Order Service │ ──────▶ │ Catalog Service │
└────────┘              └───────┬───────┘         └─────────────────┘
                                │ Redis Streams (order_events)
                                ▼
                      ┌──────────────────────┐
                      │ Notification Service │
                      └──────────────────────┘
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import parse_status
from .catalog_client import CatalogClient
from .errors import OrderError, OrderNotFound
from .outbox import OutboxRelay
from .schema import metadata
from .transitions import TransitionEngine
from .workflow import LineRequest, OrderWorkflow

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CATALOG_SERVICE_URL = os.environ["CATALOG_SERVICE_URL"]
CATALOG_TIMEOUT = float(os.environ.get("CATALOG_TIMEOUT", "5"))
ORDER_EVENTS_STREAM = os.environ.get("ORDER_EVENTS_STREAM", "order_events")
OUTBOX_POLL_INTERVAL = float(os.environ.get("OUTBOX_POLL_INTERVAL", "2"))

ADMIN_ROLE = "Admin"

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """テーブル作成、Redis / Catalog クライアント、OutboxRelay を起動する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(base_url=CATALOG_SERVICE_URL, timeout=CATALOG_TIMEOUT)
    catalog = CatalogClient(http_client)

    app.state.workflow = OrderWorkflow(catalog, redis_pool, ORDER_EVENTS_STREAM)
    app.state.transitions = TransitionEngine(catalog, redis_pool, ORDER_EVENTS_STREAM)

    relay = OutboxRelay(async_session, redis_pool, catalog, ORDER_EVENTS_STREAM)
    shutdown_event = asyncio.Event()
    relay_task = asyncio.create_task(relay.run(shutdown_event, OUTBOX_POLL_INTERVAL))
    yield
    shutdown_event.set()
    relay_task.cancel()
    try:
        await relay_task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderError)
async def order_error_handler(_request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Dependencies ─────────────────────────────────


async def get_session():
    async with async_session() as session:
        yield session


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


def get_transitions(request: Request) -> TransitionEngine:
    return request.app.state.transitions


class Caller(BaseModel):
    user_id: str
    roles: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_roles: str = Header(default=""),
) -> Caller:
    """ゲートウェイが付与した認証済みユーザー情報"""
    if not x_user_id:
        raise HTTPException(401, "Missing caller identity")
    roles = frozenset(r.strip() for r in x_user_roles.split(",") if r.strip())
    return Caller(user_id=x_user_id, roles=roles)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(403, "Admin role required")
    return caller


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(ge=1, le=100)


class CreateOrderRequest(BaseModel):
    items: list[OrderItemRequest] = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=500)


class UpdateStatusRequest(BaseModel):
    status: str
    admin_notes: str | None = Field(default=None, max_length=250)


# ── Endpoints ────────────────────────────────────


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """注文作成 (Saga 実行)"""
    order = await workflow.create_order(
        session,
        caller.user_id,
        [LineRequest(str(item.product_id), item.quantity) for item in req.items],
        req.notes,
    )
    return order.to_dict()


@app.get("/orders")
async def list_orders(
    status: str | None = None,
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
):
    """
    自分の注文一覧 (サマリー)。

    管理者が status を指定した場合は、その状態の全注文を返す。
    """
    if status is None:
        return await queries.list_user_orders(session, caller.user_id)
    if not caller.is_admin:
        raise HTTPException(403, "Admin role required")
    orders = await queries.list_orders(session, parse_status(status))
    return [order.to_dict() for order in orders]


@app.get("/orders/{order_id}")
async def get_order(
    order_id: UUID,
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
):
    order = await queries.load_order(session, str(order_id))
    if order is None or (order.user_id != caller.user_id and not caller.is_admin):
        raise OrderNotFound(str(order_id))
    return order.to_dict()


@app.put("/orders/{order_id}/cancel", status_code=204)
async def cancel_order(
    order_id: UUID,
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
    transitions: TransitionEngine = Depends(get_transitions),
):
    """顧客によるキャンセル (PENDING のみ)。引き当て済みの在庫を戻す。"""
    await transitions.cancel_order(session, str(order_id), caller.user_id)
    return Response(status_code=204)


@app.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: UUID,
    req: UpdateStatusRequest,
    _admin: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    transitions: TransitionEngine = Depends(get_transitions),
):
    """管理者による状態変更"""
    order = await transitions.update_status(
        session, str(order_id), parse_status(req.status), req.admin_notes
    )
    return order.to_dict()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
