import pytest

from orderflow.shared.queue import BatchResponse


@pytest.fixture
async def queue(resources):
    await resources.order_queue.ensure_group()
    return resources.order_queue


async def _pending_count(queue):
    summary = await queue.redis.xpending(queue.stream, queue.group)
    return summary["pending"]


async def test_ensure_group_is_idempotent(queue):
    await queue.ensure_group()


async def test_send_and_receive(queue):
    await queue.send({"order_id": "ORD-1"})

    messages = await queue.receive(count=10)

    assert len(messages) == 1
    assert messages[0].body == {"order_id": "ORD-1"}
    assert messages[0].deliveries == 1
    assert await queue.receive(count=10) == []


async def test_complete_acks_successes_and_keeps_failures_pending(queue):
    await queue.send({"order_id": "ORD-1"})
    await queue.send({"order_id": "ORD-2"})
    first, second = await queue.receive(count=10)

    await queue.complete([first, second], BatchResponse(failed_ids=[first.message_id]))

    assert await _pending_count(queue) == 1
    redelivered = await queue.reclaim(count=10)
    assert [m.message_id for m in redelivered] == [first.message_id]
    assert redelivered[0].deliveries == 2


async def test_failures_are_dead_lettered_after_max_deliveries(queue):
    await queue.send({"order_id": "ORD-1"})
    messages = await queue.receive(count=10)

    for _ in range(queue.max_deliveries - 1):
        await queue.complete(messages, BatchResponse(failed_ids=[messages[0].message_id]))
        messages = await queue.reclaim(count=10)
    assert messages[0].deliveries == queue.max_deliveries
    await queue.complete(messages, BatchResponse(failed_ids=[messages[0].message_id]))

    assert await _pending_count(queue) == 0
    dead = await queue.redis.xrange(queue.dead_letter_stream)
    assert len(dead) == 1
    assert dead[0][1]["source_id"] == messages[0].message_id
    assert dead[0][1]["reason"] == "max deliveries exceeded"


async def test_rejected_messages_go_straight_to_dead_letter(queue):
    await queue.redis.xadd(queue.stream, {"body": "this is not json"})
    messages = await queue.receive(count=10)
    assert messages[0].body is None

    await queue.complete(messages, BatchResponse(rejected_ids=[messages[0].message_id]))

    assert await _pending_count(queue) == 0
    dead = await queue.redis.xrange(queue.dead_letter_stream)
    assert dead[0][1]["body"] == "this is not json"
    assert dead[0][1]["reason"] == "rejected by consumer"
