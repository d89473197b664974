"""
Shared: 起動時に組み立てるリソース

エンジン・セッションファクトリ・Redis クライアント・ワークキューを
プロセス起動時に一度だけ作り、各サービス / ワーカーへ明示的に渡す。
グローバル変数のシングルトンは使わない。
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .queue import RedisStreamQueue
from .storage import create_engine_and_sessions, init_schema


@dataclass
class Resources:
    settings: Settings
    engine: AsyncEngine
    sessions: sessionmaker
    redis: aioredis.Redis
    order_queue: RedisStreamQueue


def build_order_queue(settings: Settings, redis: aioredis.Redis) -> RedisStreamQueue:
    return RedisStreamQueue(
        redis,
        settings.order_queue_stream,
        settings.order_queue_group,
        settings.worker_name,
        dead_letter_stream=settings.dead_letter_stream,
        max_deliveries=settings.queue_max_deliveries,
        claim_idle_ms=settings.queue_claim_idle_ms,
    )


@asynccontextmanager
async def open_resources(settings: Settings):
    engine, sessions = create_engine_and_sessions(settings)
    if settings.create_schema:
        await init_schema(engine)
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield Resources(
            settings=settings,
            engine=engine,
            sessions=sessions,
            redis=redis,
            order_queue=build_order_queue(settings, redis),
        )
    finally:
        await redis.aclose()
        await engine.dispose()


def get_resources(request: Request) -> Resources:
    """FastAPI の Depends 用。lifespan で app.state に載せたリソースを返す。"""
    return request.app.state.resources
