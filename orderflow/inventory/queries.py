"""
Inventory Service: クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import InventoryRecord, Reservation


async def get_item(session: AsyncSession, store_id: str, sku: str) -> InventoryRecord | None:
    result = await session.execute(
        text("SELECT * FROM inventory WHERE store_id = :store_id AND sku = :sku"),
        {"store_id": store_id, "sku": sku},
    )
    row = result.mappings().first()
    return InventoryRecord.model_validate(dict(row)) if row else None


async def list_items(session: AsyncSession, store_id: str) -> list[InventoryRecord]:
    result = await session.execute(
        text("SELECT * FROM inventory WHERE store_id = :store_id ORDER BY sku ASC"),
        {"store_id": store_id},
    )
    return [InventoryRecord.model_validate(dict(row)) for row in result.mappings().all()]


async def get_reservation(session: AsyncSession, order_id: str) -> Reservation | None:
    result = await session.execute(
        text("SELECT * FROM reservations WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.mappings().first()
    return Reservation.from_row(row) if row else None
