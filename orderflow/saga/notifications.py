"""
Saga: 通知リクエストの投入

通知の整形・配信は別サービスの担当。Saga は通知リクエストを
Redis Stream (order-notifications) に積むだけで、結果を待たない。
積めなかった場合も Saga の成否には影響させず、警告ログだけ残す。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from orderflow.order.aggregate import Order, OrderStatus
from orderflow.shared.storage import utcnow_iso

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, redis: aioredis.Redis, stream: str = "order-notifications", maxlen: int = 100_000):
        self.redis = redis
        self.stream = stream
        self.maxlen = maxlen

    async def notify(self, order: Order, status: OrderStatus, reason: str | None = None) -> None:
        payload = {
            "order_id": order.order_id,
            "customer_id": order.customer_id,
            "status": status.value,
            "total": order.total,
            "reason": reason,
            "timestamp": utcnow_iso(),
        }
        try:
            await self.redis.xadd(
                self.stream, {"body": json.dumps(payload)}, maxlen=self.maxlen, approximate=True
            )
        except RedisError:
            logger.warning(
                "Failed to queue %s notification for order %s", status.value, order.order_id, exc_info=True
            )
