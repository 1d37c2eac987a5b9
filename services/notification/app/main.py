"""
Notification Service — FastAPI エントリーポイント

order_events ストリームを購読し、注文の作成・状態変更を顧客に通知する。
Command / Query のエンドポイントは持たず、ヘルスチェックだけを公開する。

┌──────────────┐  order_events  ┌──────────────────────┐
│ Order Service│ ─── Redis ───▶ │ Notification Service │ ──▶ Notifier
│  (outbox)    │    Streams     │ (consumer group)     │
└──────────────┘                └──────────────────────┘
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI

from .handlers import LoggingNotifier, NotificationHandler
from .subscriber import StreamConsumer

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_EVENTS_STREAM = os.environ.get("ORDER_EVENTS_STREAM", "order_events")
CONSUMER_GROUP = os.environ.get("CONSUMER_GROUP", "notifications")
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", socket.gethostname())
PENDING_MIN_IDLE_MS = int(os.environ.get("PENDING_MIN_IDLE_MS", "60000"))
PENDING_RECLAIM_INTERVAL = float(os.environ.get("PENDING_RECLAIM_INTERVAL", "30"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にストリームコンシューマをバックグラウンドタスクとして開始する。"""
    redis_conn = aioredis.from_url(REDIS_URL, decode_responses=True)
    consumer = StreamConsumer(
        redis_conn,
        ORDER_EVENTS_STREAM,
        CONSUMER_GROUP,
        CONSUMER_NAME,
        NotificationHandler(LoggingNotifier()),
        min_idle_ms=PENDING_MIN_IDLE_MS,
        reclaim_interval=PENDING_RECLAIM_INTERVAL,
    )
    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(consumer.run(shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await redis_conn.aclose()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service"}
