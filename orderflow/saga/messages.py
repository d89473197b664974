"""
Saga: ワークキューのメッセージ形式

注文 API が order-processing ストリームに積み、Saga ワーカーが読む。
"""

from pydantic import BaseModel, Field

from orderflow.order.aggregate import Order
from orderflow.shared.storage import utcnow_iso

PROCESS_ORDER = "PROCESS_ORDER"


class OrderMessage(BaseModel):
    order_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    order_key: str = Field(min_length=1)
    action: str = PROCESS_ORDER
    attempt: int = 1
    timestamp: str | None = None


def build_message(order: Order, attempt: int = 1) -> dict:
    return OrderMessage(
        order_id=order.order_id,
        customer_id=order.customer_id,
        order_key=order.order_key,
        attempt=attempt,
        timestamp=utcnow_iso(),
    ).model_dump()
