"""
Stream: ドメインイベントの配信

イベントタイプごとの Redis Pub/Sub チャネル (order_events:<EventType>) に流す。
購読側はチャネル名でイベントタイプを絞り込める。

1 つの変更レコードから作ったイベントは 1 つのパイプラインでまとめて送る。
途中で失敗したら例外を投げ、呼び出し側がレコードごと再処理する。
そのため一部のイベントが重複して届くことがある。
"""

import json
import logging

import redis.asyncio as aioredis

from .events import DomainEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, redis: aioredis.Redis, channel_prefix: str = "order_events"):
        self.redis = redis
        self.channel_prefix = channel_prefix

    def channel_for(self, event: DomainEvent) -> str:
        return f"{self.channel_prefix}:{event.event_type}"

    async def publish_batch(self, events: list[DomainEvent]) -> None:
        if not events:
            return
        async with self.redis.pipeline(transaction=False) as pipe:
            for event in events:
                pipe.publish(self.channel_for(event), json.dumps(event.to_message()))
            await pipe.execute()
        logger.debug("Published %d events", len(events))
