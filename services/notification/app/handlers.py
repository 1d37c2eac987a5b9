"""
Notification Service — イベントハンドラ

order_events のイベントから顧客向けメッセージを組み立てて送信する。
実際のメール送信は外部の仕組みに任せ、ここでは Notifier に渡すだけ。
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, user_id: str, subject: str, body: str) -> None: ...


class LoggingNotifier:
    """送信内容をログに出すだけの Notifier"""

    async def send(self, user_id: str, subject: str, body: str) -> None:
        logger.info("Notify user %s: %s | %s", user_id, subject, body)


def render(event_type: str, data: dict) -> tuple[str, str] | None:
    """イベントから (件名, 本文) を作る。通知対象外のイベントは None。"""
    number = data.get("order_number", "")
    if event_type == "OrderCreated":
        return (
            f"Order {number} received",
            f"We received your order {number} "
            f"({data.get('item_count', 0)} item(s), total {data.get('total')}).",
        )
    if event_type == "OrderStatusChanged":
        return (
            f"Order {number} is now {data.get('new_status')}",
            f"Your order {number} moved from {data.get('old_status')} "
            f"to {data.get('new_status')}.",
        )
    return None


class NotificationHandler:
    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def __call__(self, event_type: str, data: dict) -> None:
        message = render(event_type, data)
        if message is None:
            logger.debug("Ignoring event type %s", event_type)
            return
        subject, body = message
        await self.notifier.send(data["user_id"], subject, body)
