"""
Shared: ワークキュー (Redis Streams + Consumer Group)

Redis Pub/Sub は fire-and-forget なので、処理を保証したいワークアイテムには
Redis Streams の Consumer Group を使う。

- at-least-once: ACK されなかったメッセージは Pending Entries List に残り、
  一定時間アイドルになったら別のワーカーが XAUTOCLAIM で引き取る
- バッチ単位で受信し、アイテムごとに成功 / 失敗を報告する
- 配信回数が上限に達したら dead-letter ストリームへ移す
"""

import json
import logging
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    message_id: str
    raw: str
    body: dict | None
    deliveries: int = 1


@dataclass
class BatchResponse:
    """
    バッチ処理の結果。

    failed_ids は再配信、rejected_ids (壊れたメッセージなど) は即 dead-letter。
    received はバッチで受け取った件数。
    """

    failed_ids: list[str] = field(default_factory=list)
    rejected_ids: list[str] = field(default_factory=list)
    received: int = 0


class RedisStreamQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        group: str,
        consumer: str,
        *,
        dead_letter_stream: str,
        max_deliveries: int = 5,
        claim_idle_ms: int = 30000,
    ):
        self.redis = redis
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.dead_letter_stream = dead_letter_stream
        self.max_deliveries = max_deliveries
        self.claim_idle_ms = claim_idle_ms

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def send(self, body: dict) -> str:
        return await self.redis.xadd(self.stream, {"body": json.dumps(body, default=str)})

    async def receive(self, count: int, block_ms: int | None = None) -> list[QueueMessage]:
        """新着メッセージをこのコンシューマに配信する。"""
        response = await self.redis.xreadgroup(
            self.group, self.consumer, {self.stream: ">"}, count=count, block=block_ms
        )
        messages = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                messages.append(self._decode(message_id, fields, deliveries=1))
        return messages

    async def reclaim(self, count: int) -> list[QueueMessage]:
        """
        claim_idle_ms 以上 ACK されていないメッセージを引き取る。

        クラッシュしたワーカーの処理中メッセージや、失敗報告されて
        Pending に残ったメッセージがここで再配信される。
        """
        result = await self.redis.xautoclaim(
            self.stream,
            self.group,
            self.consumer,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=count,
        )
        entries = [(mid, fields) for mid, fields in result[1] if fields]
        if not entries:
            return []

        pending = await self.redis.xpending_range(
            self.stream,
            self.group,
            min=entries[0][0],
            max=entries[-1][0],
            count=len(entries) * 2,
        )
        deliveries = {p["message_id"]: p["times_delivered"] for p in pending}
        return [
            self._decode(mid, fields, deliveries=deliveries.get(mid, self.max_deliveries))
            for mid, fields in entries
        ]

    async def ack(self, message_ids: list[str]) -> None:
        if message_ids:
            await self.redis.xack(self.stream, self.group, *message_ids)

    async def dead_letter(self, message: QueueMessage, reason: str) -> None:
        logger.error(
            "Dead-lettering message %s after %d deliveries: %s",
            message.message_id,
            message.deliveries,
            reason,
        )
        await self.redis.xadd(
            self.dead_letter_stream,
            {
                "body": message.raw,
                "source_id": message.message_id,
                "deliveries": str(message.deliveries),
                "reason": reason,
            },
        )
        await self.ack([message.message_id])

    async def complete(self, messages: list[QueueMessage], response: BatchResponse) -> None:
        """
        バッチ結果を反映する。

        成功分は ACK、失敗分は Pending に残して再配信を待つ。
        配信回数が上限に達した失敗分と、処理できないと判断されたものは dead-letter へ。
        """
        failed = set(response.failed_ids)
        rejected = set(response.rejected_ids)
        succeeded = [m.message_id for m in messages if m.message_id not in failed | rejected]
        for message in messages:
            if message.message_id in rejected:
                await self.dead_letter(message, "rejected by consumer")
            elif message.message_id in failed and message.deliveries >= self.max_deliveries:
                await self.dead_letter(message, "max deliveries exceeded")
        await self.ack(succeeded)

    @staticmethod
    def _decode(message_id: str, fields: dict, deliveries: int) -> QueueMessage:
        raw = fields.get("body", "")
        try:
            body = json.loads(raw)
        except (TypeError, ValueError):
            body = None
        if not isinstance(body, dict):
            body = None
        return QueueMessage(message_id=message_id, raw=raw, body=body, deliveries=deliveries)
