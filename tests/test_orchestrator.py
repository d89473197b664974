import json

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from orderflow.inventory import queries as inventory_queries
from orderflow.inventory.aggregate import ReservationStatus
from orderflow.order import commands as order_commands
from orderflow.order import queries as order_queries
from orderflow.order.aggregate import OrderStatus, PaymentState
from orderflow.saga.messages import OrderMessage, build_message
from orderflow.saga.notifications import Notifier
from orderflow.saga.orchestrator import OrderSagaOrchestrator, SagaOutcome
from orderflow.shared.queue import QueueMessage

from conftest import STORE_ID, approve


@pytest.fixture
def orchestrator(sessions, redis, settings, payment_gateway):
    def _build(handler=approve):
        return OrderSagaOrchestrator(
            sessions,
            payment_gateway(handler),
            Notifier(redis, settings.notification_stream),
            settings,
        )

    return _build


@pytest.fixture
async def stocked(stock):
    await stock("WINE-001", 10)
    await stock("BEER-002", 10)


async def _state(sessions, order):
    async with sessions() as session:
        stored = await order_queries.get_order_by_key(session, order.customer_id, order.order_key)
        reservation = await inventory_queries.get_reservation(session, order.order_id)
        wine = await inventory_queries.get_item(session, STORE_ID, "WINE-001")
        beer = await inventory_queries.get_item(session, STORE_ID, "BEER-002")
    reserved = (wine.quantity_reserved if wine else 0, beer.quantity_reserved if beer else 0)
    return stored, reservation, reserved


async def _notifications(redis, settings):
    entries = await redis.xrange(settings.notification_stream)
    return [json.loads(fields["body"]) for _, fields in entries]


def _work(order) -> OrderMessage:
    return OrderMessage.model_validate(build_message(order))


async def test_happy_path_confirms_order(stocked, make_order, orchestrator, sessions, redis, settings):
    order = await make_order()

    result = await orchestrator().process(_work(order))

    assert result.outcome is SagaOutcome.CONFIRMED
    assert [step["action"] for step in result.saga_log] == [
        "ReserveInventory",
        "AuthorizePayment",
        "ConfirmOrder",
        "SendNotification",
    ]
    assert all(step["status"] == "COMPLETED" for step in result.saga_log)

    stored, reservation, reserved = await _state(sessions, order)
    assert stored.status is OrderStatus.CONFIRMED
    assert stored.payment_state is PaymentState.AUTHORIZED
    assert reservation.status is ReservationStatus.CONFIRMED
    assert reserved == (2, 4)

    notes = await _notifications(redis, settings)
    assert [(n["order_id"], n["status"]) for n in notes] == [(order.order_id, "CONFIRMED")]


async def test_insufficient_inventory_fails_without_charging(stock, make_order, orchestrator, sessions, redis, settings):
    await stock("WINE-001", 10)
    await stock("BEER-002", 2)
    calls = []

    def handler(request):
        calls.append(request)
        return approve(request)

    order = await make_order()
    result = await orchestrator(handler).process(_work(order))

    assert result.outcome is SagaOutcome.FAILED
    assert calls == []
    stored, reservation, reserved = await _state(sessions, order)
    assert stored.status is OrderStatus.FAILED
    assert stored.payment_state is PaymentState.PENDING
    assert stored.failure_reason.startswith("Inventory reservation failed")
    assert reservation is None
    assert reserved == (0, 0)
    assert result.saga_log[0]["failed_items"] == [{"sku": "BEER-002", "requested": 4, "available": 2}]

    notes = await _notifications(redis, settings)
    assert notes[0]["status"] == "FAILED"
    assert notes[0]["reason"] == stored.failure_reason


async def test_declined_payment_fails_and_releases_inventory(stocked, make_order, orchestrator, sessions):
    def decline(request):
        return httpx.Response(402, json={"reason": "Card declined"})

    order = await make_order()
    result = await orchestrator(decline).process(_work(order))

    assert result.outcome is SagaOutcome.FAILED
    stored, reservation, reserved = await _state(sessions, order)
    assert stored.status is OrderStatus.FAILED
    assert stored.payment_state is PaymentState.FAILED
    assert "Card declined" in stored.failure_reason
    assert reservation.status is ReservationStatus.RELEASED
    assert reserved == (0, 0)


async def test_transient_payment_errors_are_retried(stocked, make_order, orchestrator, sessions):
    calls = []

    def flaky(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return approve(request)

    order = await make_order()
    result = await orchestrator(flaky).process(_work(order))

    assert result.outcome is SagaOutcome.CONFIRMED
    assert len(calls) == 3
    assert all(call.headers["Idempotency-Key"] == order.order_id for call in calls)


async def test_exhausted_payment_retries_fail_the_order(stocked, make_order, orchestrator, sessions, settings):
    calls = []

    def down(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    order = await make_order()
    result = await orchestrator(down).process(_work(order))

    assert result.outcome is SagaOutcome.FAILED
    assert len(calls) == settings.payment_max_attempts
    stored, reservation, reserved = await _state(sessions, order)
    assert stored.failure_reason.startswith("Payment processing failed")
    assert stored.payment_state is PaymentState.FAILED
    assert reservation.status is ReservationStatus.RELEASED
    assert reserved == (0, 0)


async def test_redelivery_after_confirmation_is_skipped(stocked, make_order, orchestrator, sessions):
    calls = []

    def handler(request):
        calls.append(request)
        return approve(request)

    saga = orchestrator(handler)
    order = await make_order()
    await saga.process(_work(order))

    again = await saga.process(_work(order))

    assert again.outcome is SagaOutcome.SKIPPED
    assert len(calls) == 1
    _, _, reserved = await _state(sessions, order)
    assert reserved == (2, 4)


async def test_redelivery_finishes_interrupted_compensation(stocked, make_order, orchestrator, sessions, break_next_release):
    def decline(request):
        return httpx.Response(402, json={"reason": "Card declined"})

    saga = orchestrator(decline)
    order = await make_order()

    with pytest.raises(OperationalError):
        await saga.process(_work(order))
    stored, reservation, reserved = await _state(sessions, order)
    assert stored.status is OrderStatus.FAILED
    assert reservation.status is ReservationStatus.PENDING
    assert reserved == (2, 4)

    again = await saga.process(_work(order))

    assert again.outcome is SagaOutcome.SKIPPED
    _, reservation, reserved = await _state(sessions, order)
    assert reservation.status is ReservationStatus.RELEASED
    assert reserved == (0, 0)
    assert break_next_release == [order.order_id, order.order_id]


async def test_missing_order_is_acknowledged(orchestrator):
    work = OrderMessage(order_id="ORD-GONE", customer_id="CUST-1", order_key="2026-01-01T00:00:00+00:00#ORD-GONE")

    result = await orchestrator().process(work)

    assert result.outcome is SagaOutcome.NOT_FOUND


async def test_order_cancelled_during_payment_releases_inventory(stocked, make_order, orchestrator, sessions):
    order = await make_order()

    async def cancel_then_approve(request):
        async with sessions() as session:
            transition = await order_commands.cancel_order(session, order.order_id)
        assert transition.applied
        return approve(request)

    result = await orchestrator(cancel_then_approve).process(_work(order))

    assert result.outcome is SagaOutcome.SKIPPED
    stored, reservation, reserved = await _state(sessions, order)
    assert stored.status is OrderStatus.CANCELLED
    assert reservation.status is ReservationStatus.RELEASED
    assert reserved == (0, 0)


async def test_process_batch_reports_items_individually(stocked, make_order, orchestrator, sessions):
    good = await make_order()
    broken = await make_order()

    def handler(request):
        if json.loads(request.content)["order_id"] == broken.order_id:
            raise RuntimeError("gateway client bug")
        return approve(request)

    def message(message_id, body):
        return QueueMessage(message_id=message_id, raw=json.dumps(body), body=body)

    messages = [
        message("1-0", build_message(good)),
        message("2-0", build_message(broken)),
        QueueMessage(message_id="3-0", raw="not json", body=None),
        message("4-0", {**build_message(good), "action": "REFUND_ORDER"}),
        message("5-0", {"order_id": "ORD-1"}),
    ]

    response = await orchestrator(handler).process_batch(messages)

    assert response.failed_ids == ["2-0"]
    assert response.rejected_ids == ["3-0", "4-0", "5-0"]
    good_state, _, _ = await _state(sessions, good)
    broken_state, broken_reservation, _ = await _state(sessions, broken)
    assert good_state.status is OrderStatus.CONFIRMED
    assert broken_state.status is OrderStatus.PENDING
    assert broken_reservation.status is ReservationStatus.PENDING
