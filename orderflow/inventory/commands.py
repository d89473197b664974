"""
Inventory Service: コマンドハンドラ (Write 側)

在庫の引き当て (Reserve)・確定 (Confirm)・解放 (Release) を処理する。
quantity_reserved を書き換えるのはこのモジュールだけ。

引き当ては 2 フェーズ:
  1. 全 SKU の在庫を読み、available < requested の SKU が 1 つでもあれば
     何も書かずに全体を拒否する (部分的な引き当てはしない)
  2. 1 トランザクションで SKU ごとに
     「コミット時点の available >= requested」を条件に quantity_reserved を加算する。
     1 つでも条件を外れたら全体をロールバックし、INVENTORY_CHANGED (再試行可) を返す

フェーズ 1 で大半の失敗を安く弾き、フェーズ 2 の条件付き更新で
読み取りから書き込みまでの間の競合を潰す。
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.shared.storage import (
    WriteResult,
    expiry,
    insert_if_absent,
    new_id,
    update_if,
    utcnow_iso,
)

from . import queries
from .aggregate import Reservation, ReservationStatus, ReservedItem

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30

RESERVE_ITEM = text("""
    UPDATE inventory
    SET quantity_reserved = quantity_reserved + :quantity,
        updated_at = :now
    WHERE store_id = :store_id
      AND sku = :sku
      AND quantity_available - quantity_reserved >= :quantity
""")

RELEASE_ITEM = text("""
    UPDATE inventory
    SET quantity_reserved = quantity_reserved - :quantity,
        updated_at = :now
    WHERE store_id = :store_id
      AND sku = :sku
      AND quantity_reserved >= :quantity
""")

INSERT_RESERVATION = text("""
    INSERT INTO reservations
        (reservation_id, order_id, store_id, items, status, created_at, updated_at, expires_at, ttl)
    VALUES
        (:reservation_id, :order_id, :store_id, :items, :status, :created_at, :updated_at, :expires_at, :ttl)
""")

SET_RESERVATION_STATUS = text("""
    UPDATE reservations
    SET status = :status, updated_at = :now
    WHERE reservation_id = :reservation_id AND status = :expected_status
""")


class ReserveOutcome(str, Enum):
    RESERVED = "RESERVED"
    INSUFFICIENT = "INSUFFICIENT"
    INVENTORY_CHANGED = "INVENTORY_CHANGED"


@dataclass
class FailedItem:
    sku: str
    requested: int
    available: int


@dataclass
class ReservationResult:
    outcome: ReserveOutcome
    reservation: Reservation | None = None
    failed_items: list[FailedItem] = field(default_factory=list)
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is ReserveOutcome.RESERVED

    @property
    def retryable(self) -> bool:
        return self.outcome is ReserveOutcome.INVENTORY_CHANGED


def _validate_items(items: list[dict]) -> None:
    if not items:
        raise ValueError("Reservation requires at least one item")
    seen = set()
    for item in items:
        if item["quantity"] <= 0:
            raise ValueError(f"Quantity for {item['sku']} must be positive")
        if item["sku"] in seen:
            raise ValueError(f"Duplicate SKU in reservation: {item['sku']}")
        seen.add(item["sku"])


async def reserve_inventory(
    session: AsyncSession,
    order_id: str,
    store_id: str,
    items: list[dict],
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
) -> ReservationResult:
    """
    在庫引き当てコマンド

    items は [{"sku", "quantity"}]。同じ注文が既に有効な引き当てを持っていれば
    それをそのまま返す (クラッシュ後の再配信で二重に引き当てない)。
    """
    _validate_items(items)

    existing = await queries.get_reservation(session, order_id)
    if existing is not None:
        if existing.active:
            logger.info("Order %s already holds reservation %s", order_id, existing.reservation_id)
            return ReservationResult(ReserveOutcome.RESERVED, reservation=existing)
        return ReservationResult(
            ReserveOutcome.INSUFFICIENT,
            reservation=existing,
            reason="Reservation for this order was already released",
        )

    # ── Phase 1: 在庫確認 ───────────────────────────
    failed_items = []
    for item in items:
        record = await queries.get_item(session, store_id, item["sku"])
        available = record.available if record else 0
        if available < item["quantity"]:
            failed_items.append(
                FailedItem(sku=item["sku"], requested=item["quantity"], available=available)
            )
    if failed_items:
        logger.info(
            "Insufficient inventory for order %s: %s",
            order_id,
            ", ".join(f"{f.sku} requested={f.requested} available={f.available}" for f in failed_items),
        )
        return ReservationResult(
            ReserveOutcome.INSUFFICIENT, failed_items=failed_items, reason="Insufficient inventory"
        )

    # ── Phase 2: 条件付きで一括引き当て ──────────────
    now = utcnow_iso()
    for item in items:
        written = await update_if(
            session,
            RESERVE_ITEM,
            {"quantity": item["quantity"], "now": now, "store_id": store_id, "sku": item["sku"]},
        )
        if written is WriteResult.CONFLICT:
            await session.rollback()
            logger.info("Inventory changed during reservation for order %s (sku=%s)", order_id, item["sku"])
            return ReservationResult(
                ReserveOutcome.INVENTORY_CHANGED,
                reason="Inventory changed during reservation, please retry",
            )

    expires_at, ttl = expiry(ttl_minutes)
    reservation = Reservation(
        reservation_id=new_id("RES"),
        order_id=order_id,
        store_id=store_id,
        items=[ReservedItem(sku=item["sku"], quantity=item["quantity"]) for item in items],
        status=ReservationStatus.PENDING,
        created_at=now,
        updated_at=now,
        expires_at=expires_at,
        ttl=ttl,
    )
    params = reservation.model_dump(mode="json")
    params["items"] = json.dumps(params["items"])
    written = await insert_if_absent(session, INSERT_RESERVATION, params)
    if written is WriteResult.CONFLICT:
        # 同じ注文を別ワーカーが同時に引き当てた。加算分もロールバック済み
        logger.info("Concurrent reservation detected for order %s", order_id)
        return ReservationResult(
            ReserveOutcome.INVENTORY_CHANGED,
            reason="Concurrent reservation for the same order",
        )

    await session.commit()
    logger.info("Inventory reserved for order %s: %s", order_id, reservation.reservation_id)
    return ReservationResult(ReserveOutcome.RESERVED, reservation=reservation)


async def confirm_reservation(session: AsyncSession, order_id: str) -> Reservation | None:
    """PENDING → CONFIRMED。注文が確定したときに呼ぶ。"""
    reservation = await queries.get_reservation(session, order_id)
    if reservation is None or reservation.status is not ReservationStatus.PENDING:
        return reservation

    written = await update_if(
        session,
        SET_RESERVATION_STATUS,
        {
            "status": ReservationStatus.CONFIRMED.value,
            "now": utcnow_iso(),
            "reservation_id": reservation.reservation_id,
            "expected_status": ReservationStatus.PENDING.value,
        },
    )
    if written is WriteResult.CONFLICT:
        await session.rollback()
        return await queries.get_reservation(session, order_id)
    await session.commit()
    return reservation.model_copy(update={"status": ReservationStatus.CONFIRMED})


async def release_reservation(session: AsyncSession, order_id: str) -> Reservation | None:
    """
    在庫解放コマンド (補償トランザクション)

    引き当てを RELEASED にし、同じトランザクションで quantity_reserved を戻す。
    ステータスを条件に更新するので、何度呼ばれても戻すのは 1 回だけ。
    """
    reservation = await queries.get_reservation(session, order_id)
    if reservation is None or not reservation.active:
        return reservation

    now = utcnow_iso()
    written = await update_if(
        session,
        SET_RESERVATION_STATUS,
        {
            "status": ReservationStatus.RELEASED.value,
            "now": now,
            "reservation_id": reservation.reservation_id,
            "expected_status": reservation.status.value,
        },
    )
    if written is WriteResult.CONFLICT:
        await session.rollback()
        return await queries.get_reservation(session, order_id)

    for item in reservation.items:
        released = await update_if(
            session,
            RELEASE_ITEM,
            {"quantity": item.quantity, "now": now, "store_id": reservation.store_id, "sku": item.sku},
        )
        if released is WriteResult.CONFLICT:
            logger.warning(
                "Reserved quantity for %s/%s is lower than the release of %d (reservation %s)",
                reservation.store_id,
                item.sku,
                item.quantity,
                reservation.reservation_id,
            )
    await session.commit()
    logger.info("Released reservation %s for order %s", reservation.reservation_id, order_id)
    return reservation.model_copy(update={"status": ReservationStatus.RELEASED})


async def upsert_item(
    session: AsyncSession,
    store_id: str,
    sku: str,
    *,
    product_name: str,
    quantity_available: int,
    unit_cost: float,
    reorder_level: int = 0,
) -> WriteResult:
    """
    在庫レコードの登録・更新 (棚卸し)。

    quantity_reserved はここでは触らない。新しい quantity_available が
    既存の quantity_reserved を下回る場合は CONFLICT。
    """
    params = {
        "store_id": store_id,
        "sku": sku,
        "product_name": product_name,
        "quantity_available": quantity_available,
        "reorder_level": reorder_level,
        "unit_cost": unit_cost,
        "now": utcnow_iso(),
    }
    written = await update_if(
        session,
        text("""
            UPDATE inventory
            SET product_name = :product_name,
                quantity_available = :quantity_available,
                reorder_level = :reorder_level,
                unit_cost = :unit_cost,
                updated_at = :now
            WHERE store_id = :store_id AND sku = :sku
              AND quantity_reserved <= :quantity_available
        """),
        params,
    )
    if written is WriteResult.CONFLICT:
        if await queries.get_item(session, store_id, sku) is not None:
            await session.rollback()
            return WriteResult.CONFLICT
        written = await insert_if_absent(
            session,
            text("""
                INSERT INTO inventory
                    (store_id, sku, product_name, quantity_available, quantity_reserved,
                     reorder_level, unit_cost, updated_at)
                VALUES
                    (:store_id, :sku, :product_name, :quantity_available, 0,
                     :reorder_level, :unit_cost, :now)
            """),
            params,
        )
        if written is WriteResult.CONFLICT:
            return WriteResult.CONFLICT
    await session.commit()
    return WriteResult.OK
