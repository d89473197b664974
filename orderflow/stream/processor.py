"""
Stream: change feed プロセッサ

担当シャードの未配信変更レコードを seq 順に読み、レコードごとに

  1. by-ID プロジェクションを追いつかせる (バージョンが進む方向のみ / REMOVE なら削除)
  2. ドメインイベントに変換して配信する
  3. 配信済みにする

失敗したレコードは attempts を増やしてエラーを記録し、上限に達したら dead-letter にする。
同じバッチ内で失敗した注文の後続レコードは処理しない (注文ごとの順序を守る)。
"""

import logging

from sqlalchemy.orm import sessionmaker

from orderflow.order import change_log
from orderflow.order import commands as order_commands
from orderflow.order.aggregate import Order
from orderflow.order.change_log import ChangeRecord
from orderflow.shared.config import Settings
from orderflow.shared.queue import BatchResponse

from .publisher import EventPublisher
from .transformer import transform

logger = logging.getLogger(__name__)


class ChangeFeedProcessor:
    def __init__(self, sessions: sessionmaker, publisher: EventPublisher, settings: Settings):
        self.sessions = sessions
        self.publisher = publisher
        self.settings = settings
        self.shards = settings.feed_shards(change_log.SHARD_COUNT)

    async def process_batch(self) -> BatchResponse:
        """
        1 バッチ分を処理する。

        failed_ids には失敗したレコードと、順序を守るために見送ったレコードの
        record_key が入る。どちらも次のバッチで再び読み出される。
        """
        async with self.sessions() as session:
            records = await change_log.fetch_pending(session, self.shards, self.settings.feed_batch_size)

        response = BatchResponse(received=len(records))
        blocked: set[str] = set()
        for record in records:
            if record.order_id in blocked:
                response.failed_ids.append(record.record_key)
                continue
            try:
                await self._handle(record)
            except Exception as e:
                logger.exception("Failed to process change %s (seq %d)", record.record_key, record.seq)
                blocked.add(record.order_id)
                response.failed_ids.append(record.record_key)
                await self._record_failure(record, e)
        if records:
            logger.info(
                "Processed %d change records (%d not published)", len(records), len(response.failed_ids)
            )
        return response

    async def _handle(self, record: ChangeRecord) -> None:
        async with self.sessions() as session:
            await self._reconcile_projection(session, record)

        await self.publisher.publish_batch(transform(record))

        async with self.sessions() as session:
            await change_log.mark_published(session, record.seq)
            await session.commit()

    @staticmethod
    async def _reconcile_projection(session, record: ChangeRecord) -> None:
        if record.event_kind == change_log.REMOVE:
            await order_commands.delete_projection(session, record.order_id)
        elif record.after is not None:
            await order_commands.upsert_projection(session, Order.from_image(record.after))

    async def _record_failure(self, record: ChangeRecord, error: Exception) -> None:
        dead_letter = record.attempts + 1 >= self.settings.feed_max_attempts
        async with self.sessions() as session:
            await change_log.mark_failed(session, record.seq, repr(error), dead_letter=dead_letter)
            await session.commit()
        if dead_letter:
            logger.error(
                "Dead-lettered change %s after %d attempts", record.record_key, record.attempts + 1
            )
