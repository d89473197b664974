"""
Stream: 変更レコード → ドメインイベント変換

副作用を持たない純粋な変換。1 つの変更レコードから 0 個以上のイベントを作る。

- INSERT (after あり): OrderCreated
- MODIFY (before / after あり):
    - status が変わったら OrderStatusChanged
      さらに新ステータスが CONFIRMED / CANCELLED / SHIPPED なら個別イベントも
    - payment_state が変わったら PaymentStateChanged (status の変化とは独立)
- REMOVE: OrderDeleted (異常系。警告ログを出す)
"""

import logging

from orderflow.order import change_log
from orderflow.order.aggregate import Order, OrderStatus
from orderflow.order.change_log import ChangeRecord

from .events import (
    DomainEvent,
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderDeleted,
    OrderShipped,
    OrderStatusChanged,
    PaymentStateChanged,
)

logger = logging.getLogger(__name__)


def transform(record: ChangeRecord) -> list[DomainEvent]:
    if record.event_kind == change_log.INSERT:
        return _on_insert(record)
    if record.event_kind == change_log.MODIFY:
        return _on_modify(record)
    if record.event_kind == change_log.REMOVE:
        return _on_remove(record)
    logger.warning("Unknown change kind %r on %s", record.event_kind, record.record_key)
    return []


def _common(event_cls: type[DomainEvent], record: ChangeRecord) -> dict:
    return {
        "event_id": event_cls.make_id(record.order_id, record.version),
        "order_id": record.order_id,
        "customer_id": record.customer_id,
        "version": record.version,
        "timestamp": record.created_at,
    }


def _on_insert(record: ChangeRecord) -> list[DomainEvent]:
    if record.after is None:
        return []
    order = Order.from_image(record.after)
    return [
        OrderCreated(
            **_common(OrderCreated, record),
            store_id=order.store_id,
            county_id=order.county_id,
            status=order.status,
            total=order.total,
            item_count=len(order.items),
        )
    ]


def _on_modify(record: ChangeRecord) -> list[DomainEvent]:
    if record.before is None or record.after is None:
        return []
    before = Order.from_image(record.before)
    after = Order.from_image(record.after)
    events: list[DomainEvent] = []

    if after.status != before.status:
        events.append(
            OrderStatusChanged(
                **_common(OrderStatusChanged, record),
                store_id=after.store_id,
                county_id=after.county_id,
                old_status=before.status,
                new_status=after.status,
                total=after.total,
            )
        )
        if after.status is OrderStatus.CONFIRMED:
            events.append(
                OrderConfirmed(
                    **_common(OrderConfirmed, record),
                    store_id=after.store_id,
                    county_id=after.county_id,
                    total=after.total,
                    items=after.items,
                    shipping_address=after.shipping_address,
                )
            )
        elif after.status is OrderStatus.CANCELLED:
            events.append(
                OrderCancelled(
                    **_common(OrderCancelled, record),
                    store_id=after.store_id,
                    county_id=after.county_id,
                    total=after.total,
                )
            )
        elif after.status is OrderStatus.SHIPPED:
            events.append(
                OrderShipped(
                    **_common(OrderShipped, record),
                    store_id=after.store_id,
                    shipping_address=after.shipping_address,
                )
            )

    if after.payment_state != before.payment_state:
        events.append(
            PaymentStateChanged(
                **_common(PaymentStateChanged, record),
                old_state=before.payment_state,
                new_state=after.payment_state,
                total=after.total,
            )
        )
    return events


def _on_remove(record: ChangeRecord) -> list[DomainEvent]:
    logger.warning("Order %s was deleted (version %d)", record.order_id, record.version)
    return [OrderDeleted(**_common(OrderDeleted, record))]
