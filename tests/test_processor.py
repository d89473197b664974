import asyncio
import json
from dataclasses import replace

import pytest
from redis.exceptions import RedisError
from sqlalchemy import text

from orderflow.order import change_log, commands, queries
from orderflow.order.aggregate import OrderStatus
from orderflow.shared.storage import shard_for
from orderflow.stream.processor import ChangeFeedProcessor
from orderflow.stream.publisher import EventPublisher


class FlakyPublisher(EventPublisher):
    def __init__(self, redis, failing_orders):
        super().__init__(redis)
        self.failing_orders = set(failing_orders)

    async def publish_batch(self, events):
        if any(event.order_id in self.failing_orders for event in events):
            raise RedisError("publish failed")
        await super().publish_batch(events)


@pytest.fixture
def processor(sessions, redis, settings):
    def _build(publisher=None):
        return ChangeFeedProcessor(sessions, publisher or EventPublisher(redis), settings)

    return _build


async def _change_rows(session, order_id):
    result = await session.execute(
        text("""
            SELECT version, published_at, attempts, last_error, dead_lettered_at
            FROM order_changes WHERE order_id = :order_id ORDER BY version
        """),
        {"order_id": order_id},
    )
    return result.mappings().all()


async def _collect(pubsub):
    received = []
    for _ in range(20):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.05)
        if message is None:
            if received:
                break
            await asyncio.sleep(0.01)
            continue
        received.append((message["channel"], json.loads(message["data"])))
    return received


async def test_publishes_events_and_marks_records(make_order, sessions, session, processor, redis):
    order = await make_order()
    async with sessions() as s:
        await commands.transition_status(s, order.customer_id, order.order_key, OrderStatus.CONFIRMED)

    pubsub = redis.pubsub()
    await pubsub.psubscribe("order_events:*")
    response = await processor().process_batch()
    received = await _collect(pubsub)
    await pubsub.aclose()

    assert response.failed_ids == []
    assert response.received == 2
    assert [channel for channel, _ in received] == [
        "order_events:OrderCreated",
        "order_events:OrderStatusChanged",
        "order_events:OrderConfirmed",
    ]
    assert received[0][1]["event_id"] == f"{order.order_id}:1:OrderCreated"
    assert received[0][1]["event_type"] == "OrderCreated"
    rows = await _change_rows(session, order.order_id)
    assert all(row["published_at"] for row in rows)
    assert (await processor().process_batch()).failed_ids == []
    assert await change_log.fetch_pending(session, list(range(change_log.SHARD_COUNT)), 10) == []


async def test_reconciles_missing_projection(make_order, session, processor):
    order = await make_order()
    await commands.delete_projection(session, order.order_id)

    await processor().process_batch()

    assert await queries.get_order(session, order.order_id) == order


async def test_remove_drops_projection(make_order, session, processor):
    order = await make_order()
    await commands.purge_order(session, order.customer_id, order.order_key)

    await processor().process_batch()

    assert await queries.get_order(session, order.order_id) is None
    assert await change_log.fetch_pending(session, list(range(change_log.SHARD_COUNT)), 10) == []


async def test_failed_record_blocks_later_changes_for_same_order(make_order, sessions, session, processor, redis):
    stuck = await make_order(customer_id="CUST-STUCK")
    async with sessions() as s:
        await commands.transition_status(s, stuck.customer_id, stuck.order_key, OrderStatus.CANCELLED)
    healthy = await make_order(customer_id="CUST-OK")

    response = await processor(FlakyPublisher(redis, [stuck.order_id])).process_batch()

    assert response.failed_ids == [f"{stuck.order_id}:1", f"{stuck.order_id}:2"]
    stuck_rows = await _change_rows(session, stuck.order_id)
    assert [(row["attempts"], row["published_at"]) for row in stuck_rows] == [(1, None), (0, None)]
    assert "publish failed" in stuck_rows[0]["last_error"]
    healthy_rows = await _change_rows(session, healthy.order_id)
    assert healthy_rows[0]["published_at"] is not None


async def test_record_is_dead_lettered_after_max_attempts(make_order, session, processor, redis, settings):
    order = await make_order()
    flaky = processor(FlakyPublisher(redis, [order.order_id]))

    for _ in range(settings.feed_max_attempts):
        await flaky.process_batch()

    rows = await _change_rows(session, order.order_id)
    assert rows[0]["attempts"] == settings.feed_max_attempts
    assert rows[0]["dead_lettered_at"] is not None
    assert (await flaky.process_batch()).failed_ids == []


async def test_instance_only_reads_its_shards(make_order, sessions, redis, settings):
    order = await make_order()
    shard = shard_for(order.order_id, change_log.SHARD_COUNT)
    other = replace(settings, feed_instance_index=(shard + 1) % 2, feed_instance_count=2)

    processor = ChangeFeedProcessor(sessions, EventPublisher(redis), other)

    assert shard not in processor.shards
    assert (await processor.process_batch()).failed_ids == []
    async with sessions() as s:
        pending = await change_log.fetch_pending(s, [shard], 10)
    assert [c.order_id for c in pending] == [order.order_id]
