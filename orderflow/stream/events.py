"""
Stream: ドメインイベント定義

change feed の低レベルな変更 (INSERT / MODIFY / REMOVE) から導出する、
業務上意味のあるイベント。イベントは過去形で命名し、不変として扱う。

event_id は (order_id, version, event_type) から決まるので、同じ変更レコードを
何度変換しても同じ ID になる。購読側はこの ID で重複を除くこと。
"""

from typing import ClassVar

from pydantic import BaseModel, ConfigDict

from orderflow.order.aggregate import OrderItem, OrderStatus, PaymentState, ShippingAddress


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str]

    event_id: str
    order_id: str
    customer_id: str
    version: int
    timestamp: str

    @classmethod
    def make_id(cls, order_id: str, version: int) -> str:
        return f"{order_id}:{version}:{cls.event_type}"

    def to_message(self) -> dict:
        return {"event_type": self.event_type, **self.model_dump(mode="json")}


class OrderCreated(DomainEvent):
    """注文が作成された"""
    event_type: ClassVar[str] = "OrderCreated"
    store_id: str
    county_id: str
    status: OrderStatus
    total: float
    item_count: int


class OrderStatusChanged(DomainEvent):
    """注文ステータスが変わった"""
    event_type: ClassVar[str] = "OrderStatusChanged"
    store_id: str
    county_id: str
    old_status: OrderStatus
    new_status: OrderStatus
    total: float


class OrderConfirmed(DomainEvent):
    """注文が確定された (在庫引き当て + 決済成功)"""
    event_type: ClassVar[str] = "OrderConfirmed"
    store_id: str
    county_id: str
    total: float
    items: list[OrderItem]
    shipping_address: ShippingAddress


class OrderCancelled(DomainEvent):
    """注文がキャンセルされた"""
    event_type: ClassVar[str] = "OrderCancelled"
    store_id: str
    county_id: str
    total: float


class OrderShipped(DomainEvent):
    """注文が出荷された"""
    event_type: ClassVar[str] = "OrderShipped"
    store_id: str
    shipping_address: ShippingAddress


class PaymentStateChanged(DomainEvent):
    """決済状態が変わった (ステータスが変わらなくても出る)"""
    event_type: ClassVar[str] = "PaymentStateChanged"
    old_state: PaymentState
    new_state: PaymentState
    total: float


class OrderDeleted(DomainEvent):
    """注文が物理削除された (通常は起きない)"""
    event_type: ClassVar[str] = "OrderDeleted"
