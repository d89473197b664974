"""
Shared: 設定 (Settings)

各サービスは環境変数から設定を読む。
モジュール読み込み時ではなく起動時に Settings.from_env() で一度だけ組み立て、
エンジンやクライアントと一緒に明示的に渡す。
"""

import os
import socket
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"

    payment_service_url: str = "http://localhost:8090"
    payment_timeout_seconds: float = 5.0
    payment_max_attempts: int = 3
    payment_retry_backoff_seconds: float = 0.2

    reserve_max_attempts: int = 3
    reservation_ttl_minutes: int = 30

    saga_max_concurrency: int = 10
    order_queue_stream: str = "order-processing"
    order_queue_group: str = "order-saga"
    dead_letter_stream: str = "order-processing-dlq"
    notification_stream: str = "order-notifications"
    queue_batch_size: int = 10
    queue_block_ms: int = 1000
    queue_claim_idle_ms: int = 30000
    queue_max_deliveries: int = 5

    feed_batch_size: int = 100
    feed_max_attempts: int = 5
    feed_instance_index: int = 0
    feed_instance_count: int = 1
    feed_poll_seconds: float = 1.0

    worker_name: str = "worker"
    create_schema: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            payment_service_url=env.get("PAYMENT_SERVICE_URL", "http://localhost:8090"),
            payment_timeout_seconds=float(env.get("PAYMENT_TIMEOUT_SECONDS", "5.0")),
            payment_max_attempts=int(env.get("PAYMENT_MAX_ATTEMPTS", "3")),
            payment_retry_backoff_seconds=float(env.get("PAYMENT_RETRY_BACKOFF_SECONDS", "0.2")),
            reserve_max_attempts=int(env.get("RESERVE_MAX_ATTEMPTS", "3")),
            reservation_ttl_minutes=int(env.get("RESERVATION_TTL_MINUTES", "30")),
            saga_max_concurrency=int(env.get("SAGA_MAX_CONCURRENCY", "10")),
            queue_batch_size=int(env.get("QUEUE_BATCH_SIZE", "10")),
            queue_block_ms=int(env.get("QUEUE_BLOCK_MS", "1000")),
            queue_claim_idle_ms=int(env.get("QUEUE_CLAIM_IDLE_MS", "30000")),
            queue_max_deliveries=int(env.get("QUEUE_MAX_DELIVERIES", "5")),
            feed_batch_size=int(env.get("FEED_BATCH_SIZE", "100")),
            feed_max_attempts=int(env.get("FEED_MAX_ATTEMPTS", "5")),
            feed_instance_index=int(env.get("FEED_INSTANCE_INDEX", "0")),
            feed_instance_count=int(env.get("FEED_INSTANCE_COUNT", "1")),
            feed_poll_seconds=float(env.get("FEED_POLL_SECONDS", "1.0")),
            worker_name=env.get("WORKER_NAME", socket.gethostname()),
            create_schema=_env_bool("CREATE_SCHEMA", True),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )

    def feed_shards(self, shard_count: int) -> list[int]:
        """このインスタンスが担当する change feed のシャード番号。"""
        return [
            shard
            for shard in range(shard_count)
            if shard % self.feed_instance_count == self.feed_instance_index
        ]
