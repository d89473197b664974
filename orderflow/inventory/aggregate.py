"""
Inventory Service: 在庫レコードと引き当て (Reservation)

available = quantity_available - quantity_reserved で算出。
quantity_reserved <= quantity_available は常に保たれる。
"""

import json
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel


class InventoryRecord(BaseModel):
    store_id: str
    sku: str
    product_name: str
    quantity_available: int
    quantity_reserved: int = 0
    reorder_level: int = 0
    unit_cost: float
    updated_at: str

    @property
    def available(self) -> int:
        return self.quantity_available - self.quantity_reserved

    @property
    def needs_reorder(self) -> bool:
        return self.available <= self.reorder_level


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"


ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)


class ReservedItem(BaseModel):
    sku: str
    quantity: int


class Reservation(BaseModel):
    """注文 1 件分の在庫の仮押さえ。数量は変えず、status だけが遷移する。"""

    reservation_id: str
    order_id: str
    store_id: str
    items: list[ReservedItem]
    status: ReservationStatus
    created_at: str
    updated_at: str
    expires_at: str
    ttl: int

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Reservation":
        data = dict(row)
        if isinstance(data.get("items"), str):
            data["items"] = json.loads(data["items"])
        return cls.model_validate(data)
