import asyncio

import pytest

from orderflow.inventory import commands, queries
from orderflow.inventory.aggregate import ReservationStatus
from orderflow.inventory.commands import ReserveOutcome
from orderflow.shared.storage import WriteResult

from conftest import STORE_ID


async def _levels(session, sku):
    record = await queries.get_item(session, STORE_ID, sku)
    return record.quantity_available, record.quantity_reserved


async def test_reserve_all_items(stock, session):
    await stock("WINE-001", 10)
    await stock("BEER-002", 5)

    result = await commands.reserve_inventory(
        session,
        "ORD-1",
        STORE_ID,
        [{"sku": "WINE-001", "quantity": 2}, {"sku": "BEER-002", "quantity": 5}],
    )

    assert result.success
    assert result.reservation.reservation_id.startswith("RES-")
    assert result.reservation.status is ReservationStatus.PENDING
    assert await _levels(session, "WINE-001") == (10, 2)
    assert await _levels(session, "BEER-002") == (5, 5)

    stored = await queries.get_reservation(session, "ORD-1")
    assert stored.reservation_id == result.reservation.reservation_id
    assert stored.expires_at > stored.created_at


async def test_shortfall_reserves_nothing(stock, session):
    await stock("WINE-001", 10)
    await stock("BEER-002", 2)

    result = await commands.reserve_inventory(
        session,
        "ORD-2",
        STORE_ID,
        [{"sku": "WINE-001", "quantity": 1}, {"sku": "BEER-002", "quantity": 10}],
    )

    assert result.outcome is ReserveOutcome.INSUFFICIENT
    assert not result.retryable
    assert [(f.sku, f.requested, f.available) for f in result.failed_items] == [("BEER-002", 10, 2)]
    assert await _levels(session, "WINE-001") == (10, 0)
    assert await _levels(session, "BEER-002") == (2, 0)
    assert await queries.get_reservation(session, "ORD-2") is None


async def test_unknown_sku_counts_as_zero_available(session):
    result = await commands.reserve_inventory(
        session, "ORD-3", STORE_ID, [{"sku": "GHOST-1", "quantity": 1}]
    )

    assert result.outcome is ReserveOutcome.INSUFFICIENT
    assert result.failed_items[0].available == 0


async def test_already_reserved_units_are_not_available(stock, session):
    await stock("WINE-001", 5)
    first = await commands.reserve_inventory(session, "ORD-A", STORE_ID, [{"sku": "WINE-001", "quantity": 4}])
    second = await commands.reserve_inventory(session, "ORD-B", STORE_ID, [{"sku": "WINE-001", "quantity": 2}])

    assert first.success
    assert second.outcome is ReserveOutcome.INSUFFICIENT
    assert second.failed_items[0].available == 1


async def test_redelivered_reserve_reuses_reservation(stock, session):
    await stock("WINE-001", 5)
    items = [{"sku": "WINE-001", "quantity": 3}]

    first = await commands.reserve_inventory(session, "ORD-4", STORE_ID, items)
    again = await commands.reserve_inventory(session, "ORD-4", STORE_ID, items)

    assert again.success
    assert again.reservation.reservation_id == first.reservation.reservation_id
    assert await _levels(session, "WINE-001") == (5, 3)


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"sku": "WINE-001", "quantity": 0}],
        [{"sku": "WINE-001", "quantity": 1}, {"sku": "WINE-001", "quantity": 2}],
    ],
)
async def test_invalid_reservation_requests(session, items):
    with pytest.raises(ValueError):
        await commands.reserve_inventory(session, "ORD-5", STORE_ID, items)


async def test_concurrent_reservations_never_oversell(stock, sessions, session):
    await stock("WINE-001", 5)

    async def reserve(order_id):
        async with sessions() as s:
            return await commands.reserve_inventory(
                s, order_id, STORE_ID, [{"sku": "WINE-001", "quantity": 3}]
            )

    results = await asyncio.gather(reserve("ORD-X"), reserve("ORD-Y"))

    assert sum(r.success for r in results) == 1
    loser = next(r for r in results if not r.success)
    assert loser.outcome in (ReserveOutcome.INSUFFICIENT, ReserveOutcome.INVENTORY_CHANGED)
    assert await _levels(session, "WINE-001") == (5, 3)


async def test_release_returns_stock_once(stock, session):
    await stock("WINE-001", 5)
    await commands.reserve_inventory(session, "ORD-6", STORE_ID, [{"sku": "WINE-001", "quantity": 4}])

    released = await commands.release_reservation(session, "ORD-6")
    again = await commands.release_reservation(session, "ORD-6")

    assert released.status is ReservationStatus.RELEASED
    assert again.status is ReservationStatus.RELEASED
    assert await _levels(session, "WINE-001") == (5, 0)


async def test_released_reservation_is_not_reacquired(stock, session):
    await stock("WINE-001", 5)
    items = [{"sku": "WINE-001", "quantity": 1}]
    await commands.reserve_inventory(session, "ORD-7", STORE_ID, items)
    await commands.release_reservation(session, "ORD-7")

    result = await commands.reserve_inventory(session, "ORD-7", STORE_ID, items)

    assert result.outcome is ReserveOutcome.INSUFFICIENT
    assert await _levels(session, "WINE-001") == (5, 0)


async def test_confirm_then_release(stock, session):
    await stock("WINE-001", 5)
    await commands.reserve_inventory(session, "ORD-8", STORE_ID, [{"sku": "WINE-001", "quantity": 2}])

    confirmed = await commands.confirm_reservation(session, "ORD-8")
    assert confirmed.status is ReservationStatus.CONFIRMED
    assert (await queries.get_reservation(session, "ORD-8")).status is ReservationStatus.CONFIRMED

    await commands.release_reservation(session, "ORD-8")
    assert await _levels(session, "WINE-001") == (5, 0)


async def test_release_without_reservation_is_a_no_op(session):
    assert await commands.release_reservation(session, "ORD-NONE") is None


async def test_upsert_item_cannot_drop_below_reserved(stock, session):
    await stock("WINE-001", 5)
    await commands.reserve_inventory(session, "ORD-9", STORE_ID, [{"sku": "WINE-001", "quantity": 4}])

    shrink = await commands.upsert_item(
        session, STORE_ID, "WINE-001", product_name="Wine", quantity_available=3, unit_cost=5.0
    )
    grow = await commands.upsert_item(
        session, STORE_ID, "WINE-001", product_name="Wine", quantity_available=8, unit_cost=5.0
    )

    assert shrink is WriteResult.CONFLICT
    assert grow is WriteResult.OK
    assert await _levels(session, "WINE-001") == (8, 4)
    record = await queries.get_item(session, STORE_ID, "WINE-001")
    assert record.available == 4
