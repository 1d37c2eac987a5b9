"""
Order Service — トランザクショナル・アウトボックス

イベントは注文の更新と同じトランザクションで outbox_events に書き込み、
コミット後に Redis Streams へ発行する (commit-then-publish)。
発行に失敗しても注文はロールバックしない。OutboxRelay が後から再送する。

Redis Pub/Sub は fire-and-forget でサービス停止中のイベントが失われるため、
コンシューマグループで未 ACK のメッセージを再配信できる Streams を使う。

在庫解放(補償)も同じ考え方で pending_releases に記録し、
Catalog に届かなかった解放を OutboxRelay が再試行する。
"""

import asyncio
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .catalog_client import CatalogClient
from .errors import OrderError
from .events import IntegrationEvent
from .schema import outbox_events, pending_releases

logger = logging.getLogger(__name__)


async def append_event(session: AsyncSession, event: IntegrationEvent) -> None:
    """イベントを outbox に追記する。コミットは呼び出し側が行う。"""
    await session.execute(
        insert(outbox_events).values(
            event_id=str(event.event_id),
            event_type=event.event_type,
            payload=event.to_json(),
            created_at=event.created_at,
            attempts=0,
        )
    )


async def enqueue_release(
    session: AsyncSession,
    reservation_id: str,
    product_id: str,
    quantity: int,
    order_id: str | None = None,
) -> None:
    await session.execute(
        insert(pending_releases).values(
            id=reservation_id,
            order_id=order_id,
            product_id=product_id,
            quantity=quantity,
            created_at=datetime.now(timezone.utc),
            attempts=0,
        )
    )


async def publish_event(
    redis: aioredis.Redis,
    stream: str,
    event_id: str,
    event_type: str,
    payload: str,
) -> None:
    await redis.xadd(
        stream,
        {"event_id": event_id, "event_type": event_type, "data": payload},
    )


async def mark_published(session: AsyncSession, event_id: str) -> None:
    await session.execute(
        update(outbox_events)
        .where(
            outbox_events.c.event_id == event_id,
            outbox_events.c.published_at.is_(None),
        )
        .values(published_at=datetime.now(timezone.utc))
    )
    await session.commit()


async def publish_now(
    session: AsyncSession,
    redis: aioredis.Redis,
    stream: str,
    event: IntegrationEvent,
) -> bool:
    """
    コミット済みのイベントを即時発行する。

    失敗はログに残すだけで呼び出し元には伝えない。
    未発行の行は OutboxRelay が拾う。
    """
    try:
        await publish_event(
            redis, stream, str(event.event_id), event.event_type, event.to_json()
        )
    except (RedisError, OSError) as e:
        logger.warning(
            "Publish of %s %s deferred to relay: %s: %s",
            event.event_type, event.event_id, type(e).__name__, e,
        )
        return False
    await mark_published(session, str(event.event_id))
    return True


async def release_now(
    session: AsyncSession,
    catalog: CatalogClient,
    reservation_id: str,
    product_id: str,
    quantity: int,
) -> bool:
    """pending_releases の1行を Catalog に適用する。成功したら released_at を記録。"""
    try:
        await catalog.release(product_id, quantity, reservation_id)
    except OrderError as e:
        logger.warning("Release of reservation %s failed: %s", reservation_id, e.message)
        await session.execute(
            update(pending_releases)
            .where(pending_releases.c.id == reservation_id)
            .values(
                attempts=pending_releases.c.attempts + 1,
                last_error=e.message,
            )
        )
        await session.commit()
        return False

    await session.execute(
        update(pending_releases)
        .where(pending_releases.c.id == reservation_id)
        .values(released_at=datetime.now(timezone.utc))
    )
    await session.commit()
    return True


class OutboxRelay:
    """未発行イベントと未完了の在庫解放を定期的に再試行するバックグラウンド処理"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis,
        catalog: CatalogClient,
        stream: str,
        batch_size: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.catalog = catalog
        self.stream = stream
        self.batch_size = batch_size

    async def publish_pending(self) -> int:
        published = 0
        async with self.session_factory() as session:
            result = await session.execute(
                select(outbox_events)
                .where(outbox_events.c.published_at.is_(None))
                .order_by(outbox_events.c.created_at)
                .limit(self.batch_size)
            )
            for row in result.fetchall():
                try:
                    await publish_event(
                        self.redis, self.stream, row.event_id, row.event_type, row.payload
                    )
                except (RedisError, OSError) as e:
                    await session.execute(
                        update(outbox_events)
                        .where(outbox_events.c.event_id == row.event_id)
                        .values(
                            attempts=outbox_events.c.attempts + 1,
                            last_error=f"{type(e).__name__}: {e}",
                        )
                    )
                    await session.commit()
                    logger.warning(
                        "Outbox publish failed, retrying later: %s: %s", type(e).__name__, e
                    )
                    break
                await mark_published(session, row.event_id)
                published += 1
        if published:
            logger.info("Relayed %d outbox event(s)", published)
        return published

    async def retry_releases(self) -> int:
        released = 0
        async with self.session_factory() as session:
            result = await session.execute(
                select(pending_releases)
                .where(pending_releases.c.released_at.is_(None))
                .order_by(pending_releases.c.created_at)
                .limit(self.batch_size)
            )
            for row in result.fetchall():
                if await release_now(
                    session, self.catalog, row.id, row.product_id, row.quantity
                ):
                    released += 1
        if released:
            logger.info("Applied %d pending stock release(s)", released)
        return released

    async def run(self, shutdown_event: asyncio.Event, interval: float) -> None:
        """shutdown_event がセットされるまで interval 秒ごとに再試行する。"""
        logger.info("Outbox relay started (stream=%s)", self.stream)
        while not shutdown_event.is_set():
            try:
                await self.retry_releases()
                await self.publish_pending()
            except Exception:
                logger.exception("Outbox relay iteration failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
