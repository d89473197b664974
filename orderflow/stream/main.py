"""
Stream Worker: エントリーポイント

担当シャードの change feed をポーリングし、ドメインイベントを配信し続ける。
インスタンス i / n はシャード s % n == i を担当する。
バッチが満杯で全件配信できた間は待たずに続けて読み、そうでなければ feed_poll_seconds 待つ。
"""

import asyncio
import logging
import signal

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from orderflow.shared.config import Settings
from orderflow.shared.resources import Resources, open_resources

from .processor import ChangeFeedProcessor
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


async def run_worker(resources: Resources, shutdown: asyncio.Event) -> None:
    settings = resources.settings
    processor = ChangeFeedProcessor(resources.sessions, EventPublisher(resources.redis), settings)
    logger.info(
        "Stream worker %s (instance %d/%d) owns shards %s",
        settings.worker_name,
        settings.feed_instance_index,
        settings.feed_instance_count,
        processor.shards,
    )

    while not shutdown.is_set():
        try:
            response = await processor.process_batch()
        except (SQLAlchemyError, RedisError):
            logger.exception("Change feed unavailable, backing off")
        else:
            if response.received >= settings.feed_batch_size and not response.failed_ids:
                continue
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=settings.feed_poll_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Stream worker %s stopped", settings.worker_name)


async def _serve(settings: Settings) -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    async with open_resources(settings) as resources:
        await run_worker(resources, shutdown)


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
