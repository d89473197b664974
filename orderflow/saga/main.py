"""
Saga Worker: エントリーポイント

order-processing ストリームを Consumer Group で読み、注文ごとに Saga を実行する。

  1. アイドルになった Pending メッセージを引き取る (クラッシュしたワーカーの分)
  2. 新着メッセージをバッチで受信
  3. Saga を並行実行し、成功分だけ ACK。失敗分は Pending に残して再配信を待つ
"""

import asyncio
import logging
import signal

import httpx
from redis.exceptions import RedisError

from orderflow.shared.config import Settings
from orderflow.shared.resources import Resources, open_resources

from .notifications import Notifier
from .orchestrator import OrderSagaOrchestrator
from .payment import HttpPaymentGateway

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 1.0


async def run_worker(
    resources: Resources,
    shutdown: asyncio.Event,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    settings = resources.settings
    queue = resources.order_queue
    await queue.ensure_group()

    async with httpx.AsyncClient(transport=transport) as client:
        orchestrator = OrderSagaOrchestrator(
            resources.sessions,
            HttpPaymentGateway(client, settings.payment_service_url, settings.payment_timeout_seconds),
            Notifier(resources.redis, settings.notification_stream),
            settings,
        )
        logger.info(
            "Saga worker %s consuming %s (group %s)",
            settings.worker_name,
            settings.order_queue_stream,
            settings.order_queue_group,
        )

        while not shutdown.is_set():
            try:
                messages = await queue.reclaim(settings.queue_batch_size)
                if not messages:
                    messages = await queue.receive(settings.queue_batch_size, settings.queue_block_ms)
                if not messages:
                    continue
                response = await orchestrator.process_batch(messages)
                await queue.complete(messages, response)
            except RedisError:
                logger.exception("Work queue unavailable, backing off")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    logger.info("Saga worker %s stopped", settings.worker_name)


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
