"""
Order Service: 注文集約 (Order Aggregate)

注文の状態と金額計算、状態遷移のルールを持つ。

状態遷移:
    PENDING    → CONFIRMED  (在庫引き当て + 決済成功)
    PENDING    → FAILED     (在庫不足 / 決済拒否 / 決済エラー)
    PENDING    → CANCELLED  (明示的なキャンセル)
    CONFIRMED  → CANCELLED  (明示的なキャンセル)
    CONFIRMED  → PROCESSING → SHIPPED → DELIVERED  (出荷の進行)

一度 CONFIRMED になった注文が PENDING に戻ることはない。
"""

import json
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field

TAX_RATE = 0.08


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PaymentState(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
}

CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


class OrderItem(BaseModel):
    sku: str = Field(min_length=1)
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: float = Field(gt=0)
    total_price: float = Field(gt=0)


class ShippingAddress(BaseModel):
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=2, max_length=2)
    zip: str = Field(min_length=5, max_length=10)


class Order(BaseModel):
    order_id: str
    customer_id: str
    order_key: str
    order_ts: str
    store_id: str
    county_id: str
    status: OrderStatus
    payment_state: PaymentState
    items: list[OrderItem]
    subtotal: float
    tax: float
    total: float
    shipping_address: ShippingAddress
    idempotency_key: str
    failure_reason: str | None = None
    version: int = 1
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Order":
        """DB の行 (items / shipping_address は JSON 文字列) から復元する。"""
        data = dict(row)
        for key in ("items", "shipping_address"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])
        return cls.model_validate(data)

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> "Order":
        return cls.model_validate(image)

    def to_image(self) -> dict:
        """change feed に載せる before / after イメージ。"""
        return self.model_dump(mode="json")

    def to_params(self) -> dict:
        """SQL のバインドパラメータ。"""
        params = self.model_dump(mode="json")
        params["items"] = json.dumps(params["items"])
        params["shipping_address"] = json.dumps(params["shipping_address"])
        return params

    def to_response(self) -> dict:
        return {
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "store_id": self.store_id,
            "county_id": self.county_id,
            "status": self.status.value,
            "payment_state": self.payment_state.value,
            "items": [item.model_dump() for item in self.items],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "shipping_address": self.shipping_address.model_dump(),
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def price_items(items: list[Mapping[str, Any]]) -> tuple[list[OrderItem], float, float, float]:
    """
    明細ごとの total_price と subtotal / tax / total を計算する。

    subtotal = Σ quantity × unit_price、tax = subtotal × 8%、total = subtotal + tax。
    金額はセント単位に丸める。
    """
    priced = [
        OrderItem(
            sku=item["sku"],
            name=item["name"],
            quantity=item["quantity"],
            unit_price=item["unit_price"],
            total_price=round(item["quantity"] * item["unit_price"], 2),
        )
        for item in items
    ]
    subtotal = round(sum(item.total_price for item in priced), 2)
    tax = round(subtotal * TAX_RATE, 2)
    total = round(subtotal + tax, 2)
    return priced, subtotal, tax, total


def make_order_key(order_ts: str, order_id: str) -> str:
    return f"{order_ts}#{order_id}"
