"""
Notification Service — Redis Streams コンシューマ

order_events ストリームをコンシューマグループで購読する。
配信は at-least-once なので、event_id をキーに重複を排除する。

- 起動時はまず自分の未 ACK (pending) メッセージを最後まで読み直し、その後 ">" で新着を読む
- 処理済みマーカーはハンドラが成功してから付け、その後 ACK する
  (処理中に停止しても、マーカーが無いので再配信時に処理される)
- 失敗したメッセージは ACK しないので pending に残る。
  一定時間放置された pending は XAUTOCLAIM で定期的に取り直して再処理する
- 失敗は Order Service には伝えない
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

DEDUP_PREFIX = "notifications:processed:"
DEDUP_TTL_SECONDS = 7 * 24 * 3600

EventHandler = Callable[[str, dict], Awaitable[None]]


class StreamConsumer:
    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        group: str,
        consumer: str,
        handler: EventHandler,
        batch_size: int = 10,
        min_idle_ms: int = 60_000,
        reclaim_interval: float = 30.0,
    ) -> None:
        self.redis = redis
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.batch_size = batch_size
        self.min_idle_ms = min_idle_ms
        self.reclaim_interval = reclaim_interval

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def handle_message(self, message_id: str, fields: dict | None) -> bool:
        """
        1件処理する。ACK したら True。

        重複 (処理済みマーカーあり) は処理せずに ACK する。
        """
        fields = fields or {}
        event_id = fields.get("event_id")
        event_type = fields.get("event_type", "")
        if not event_id:
            logger.warning("Dropping message %s without event_id", message_id)
            await self.redis.xack(self.stream, self.group, message_id)
            return True

        marker = f"{DEDUP_PREFIX}{event_id}"
        if await self.redis.exists(marker):
            logger.info("Duplicate event %s, skipping", event_id)
            await self.redis.xack(self.stream, self.group, message_id)
            return True

        try:
            data = json.loads(fields.get("data") or "{}")
            await self.handler(event_type, data)
        except Exception:
            logger.exception("Failed to handle event %s (%s)", event_id, event_type)
            return False

        await self.redis.set(marker, message_id, ex=DEDUP_TTL_SECONDS)
        await self.redis.xack(self.stream, self.group, message_id)
        logger.info("Handled event %s (%s)", event_id, event_type)
        return True

    async def _handle_all(self, messages) -> int:
        handled = 0
        for message_id, fields in messages:
            if await self.handle_message(message_id, fields):
                handled += 1
        return handled

    async def read_batch(self, last_id: str, block_ms: int | None) -> int:
        entries = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: last_id},
            count=self.batch_size,
            block=block_ms,
        )
        handled = 0
        for _stream, messages in entries or []:
            handled += await self._handle_all(messages)
        return handled

    async def drain_pending(self) -> int:
        """自分宛ての pending を先頭から最後まで1回ずつ処理する。失敗した分は飛ばして進む。"""
        handled = 0
        last_id = "0"
        while True:
            entries = await self.redis.xreadgroup(
                self.group,
                self.consumer,
                {self.stream: last_id},
                count=self.batch_size,
            )
            messages = [m for _stream, batch in entries or [] for m in batch]
            if not messages:
                return handled
            handled += await self._handle_all(messages)
            last_id = messages[-1][0]

    async def reclaim_idle(self) -> int:
        """
        min_idle_ms 以上 ACK されていない pending を XAUTOCLAIM で取り直して処理する。

        停止したコンシューマに割り当てられたままのメッセージもここで拾う。
        カーソルが一周するまでページングするので、失敗し続ける
        メッセージがあっても後ろの pending は処理される。
        """
        handled = 0
        cursor = "0-0"
        while True:
            result = await self.redis.xautoclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=self.min_idle_ms,
                start_id=cursor,
                count=self.batch_size,
            )
            cursor, messages = result[0], result[1]
            handled += await self._handle_all(messages)
            if cursor == "0-0":
                return handled

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで購読を続ける。"""
        await self.ensure_group()
        logger.info("Consuming %s as %s/%s", self.stream, self.group, self.consumer)

        # 前回 ACK できなかったメッセージを読み直す
        await self.drain_pending()

        loop = asyncio.get_running_loop()
        next_reclaim = loop.time() + self.reclaim_interval
        while not shutdown_event.is_set():
            try:
                await self.read_batch(">", 1000)
                if loop.time() >= next_reclaim:
                    reclaimed = await self.reclaim_idle()
                    if reclaimed:
                        logger.info("Reprocessed %d pending message(s)", reclaimed)
                    next_reclaim = loop.time() + self.reclaim_interval
            except (RedisError, OSError):
                logger.exception("Stream read failed, retrying")
                await asyncio.sleep(1.0)
