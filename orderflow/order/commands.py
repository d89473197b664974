"""
Order Service: コマンドハンドラ (Write 側)

注文リポジトリの書き込み操作。

- create_order: 冪等な注文作成。主レコードの INSERT を
  「そのキーにまだ無いこと」で条件付けし、衝突したら既存注文を返す
- transition_status: バージョン (と期待ステータス) で条件付けした状態遷移。
  条件不一致は例外ではなく STALE として返す
- purge_order: 管理用の物理削除 (通常運用では起きない異常系)

主レコードへの書き込みと change log の追記は同じトランザクションで行う。
by-ID プロジェクションへの書き込みは別トランザクションのベストエフォートで、
失敗してもログを出すだけ。change feed ワーカーが後で追いつかせる。
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.shared.errors import TransientError
from orderflow.shared.storage import (
    WriteResult,
    insert_if_absent,
    new_id,
    update_if,
    utcnow_iso,
)

from . import change_log, queries
from .aggregate import (
    CANCELLABLE_STATUSES,
    Order,
    OrderStatus,
    PaymentState,
    can_transition,
    make_order_key,
    price_items,
)

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3

_ORDER_COLUMNS = """
    order_id, customer_id, order_key, order_ts, store_id, county_id, status,
    payment_state, items, subtotal, tax, total, shipping_address,
    idempotency_key, failure_reason, version, created_at, updated_at
"""
_ORDER_VALUES = """
    :order_id, :customer_id, :order_key, :order_ts, :store_id, :county_id, :status,
    :payment_state, :items, :subtotal, :tax, :total, :shipping_address,
    :idempotency_key, :failure_reason, :version, :created_at, :updated_at
"""

INSERT_ORDER = text(f"""
    INSERT INTO orders ({_ORDER_COLUMNS}, request_hash)
    VALUES ({_ORDER_VALUES}, :request_hash)
""")

INSERT_PROJECTION = text(f"""
    INSERT INTO orders_by_id ({_ORDER_COLUMNS})
    VALUES ({_ORDER_VALUES})
""")

UPDATE_PROJECTION = text("""
    UPDATE orders_by_id
    SET status = :status,
        payment_state = :payment_state,
        failure_reason = :failure_reason,
        version = :version,
        updated_at = :updated_at
    WHERE order_id = :order_id AND version < :version
""")

UPDATE_STATUS = text("""
    UPDATE orders
    SET status = :status,
        payment_state = :payment_state,
        failure_reason = :failure_reason,
        version = :version,
        updated_at = :updated_at
    WHERE customer_id = :customer_id
      AND order_key = :order_key
      AND version = :expected_version
      AND status = :expected_status
""")


@dataclass
class CreateResult:
    order: Order
    created: bool


class TransitionOutcome(str, Enum):
    APPLIED = "APPLIED"
    STALE = "STALE"
    NOT_FOUND = "NOT_FOUND"
    REJECTED = "REJECTED"


@dataclass
class Transition:
    outcome: TransitionOutcome
    order: Order | None

    @property
    def applied(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


def request_hash(payload: dict) -> str:
    """同じ冪等キーで中身の違うリクエストが来たことを検知するための指紋。"""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


async def create_order(
    session: AsyncSession,
    *,
    customer_id: str,
    store_id: str,
    county_id: str,
    items: list[dict],
    shipping_address: dict,
    idempotency_key: str,
) -> CreateResult:
    """
    注文作成コマンド

    1. 注文 ID (ULID) と order_key (order_ts#order_id) を生成し、金額を計算
    2. 主レコード + INSERT の change log を 1 トランザクションで書く
       - (customer_id, idempotency_key) の UNIQUE 制約に当たったら重複
       - 重複時は冪等キーで既存注文を読み直し、created=False で返す
    3. by-ID プロジェクションを書く (ベストエフォート)

    再送時は呼び出し側が同じ冪等キーを使うこと。キーを毎回変えると冪等性は保てない。
    """
    now = utcnow_iso()
    order_id = new_id("ORD")
    priced, subtotal, tax, total = price_items(items)
    order = Order(
        order_id=order_id,
        customer_id=customer_id,
        order_key=make_order_key(now, order_id),
        order_ts=now,
        store_id=store_id,
        county_id=county_id,
        status=OrderStatus.PENDING,
        payment_state=PaymentState.PENDING,
        items=priced,
        subtotal=subtotal,
        tax=tax,
        total=total,
        shipping_address=shipping_address,
        idempotency_key=idempotency_key,
        version=1,
        created_at=now,
        updated_at=now,
    )
    fingerprint = request_hash(
        {
            "customer_id": customer_id,
            "store_id": store_id,
            "county_id": county_id,
            "items": items,
            "shipping_address": shipping_address,
        }
    )

    written = await insert_if_absent(
        session, INSERT_ORDER, {**order.to_params(), "request_hash": fingerprint}
    )
    if written is WriteResult.CONFLICT:
        found = await queries.find_by_idempotency_key(session, customer_id, idempotency_key)
        if found is None:
            raise TransientError(f"Order write conflicted for {order_id} but no order was found")
        existing, stored_fingerprint = found
        if stored_fingerprint != fingerprint:
            logger.warning(
                "Idempotency key %s reused with a different request body (customer=%s, order=%s)",
                idempotency_key,
                customer_id,
                existing.order_id,
            )
        logger.info("Order already exists for idempotency key %s: %s", idempotency_key, existing.order_id)
        return CreateResult(order=existing, created=False)

    await change_log.append_change(
        session,
        order_id=order.order_id,
        customer_id=order.customer_id,
        order_key=order.order_key,
        version=order.version,
        event_kind=change_log.INSERT,
        before=None,
        after=order.to_image(),
    )
    await session.commit()

    await _sync_projection(session, order)
    return CreateResult(order=order, created=True)


async def transition_status(
    session: AsyncSession,
    customer_id: str,
    order_key: str,
    new_status: OrderStatus,
    expected_status: OrderStatus | None = None,
    *,
    payment_state: PaymentState | None = None,
    reason: str | None = None,
) -> Transition:
    """
    状態遷移コマンド

    - expected_status を渡すと「現在のステータスが expected_status であること」が条件になる
    - 条件に合わなければ STALE を返す。呼び出し側は読み直して再試行か中止かを決める
    - 状態機械にない遷移は REJECTED

    書き込みは常に version で条件付けする。バージョン競合で負けたら読み直し、
    ステータスが期待から外れていれば STALE、そうでなければ再試行する。
    """
    for _ in range(MAX_TRANSITION_ATTEMPTS):
        current = await queries.get_order_by_key(session, customer_id, order_key)
        if current is None:
            return Transition(TransitionOutcome.NOT_FOUND, None)
        if expected_status is not None and current.status != expected_status:
            logger.info(
                "Stale transition for %s: expected %s, found %s",
                current.order_id,
                expected_status.value,
                current.status.value,
            )
            return Transition(TransitionOutcome.STALE, current)
        if not can_transition(current.status, new_status):
            return Transition(TransitionOutcome.REJECTED, current)

        updated = current.model_copy(
            update={
                "status": new_status,
                "payment_state": payment_state or current.payment_state,
                "failure_reason": reason if reason is not None else current.failure_reason,
                "version": current.version + 1,
                "updated_at": utcnow_iso(),
            }
        )
        written = await update_if(
            session,
            UPDATE_STATUS,
            {
                "status": updated.status.value,
                "payment_state": updated.payment_state.value,
                "failure_reason": updated.failure_reason,
                "version": updated.version,
                "updated_at": updated.updated_at,
                "customer_id": customer_id,
                "order_key": order_key,
                "expected_version": current.version,
                "expected_status": current.status.value,
            },
        )
        if written is WriteResult.CONFLICT:
            await session.rollback()
            logger.info("Version race on %s at version %d, re-reading", current.order_id, current.version)
            continue

        await change_log.append_change(
            session,
            order_id=updated.order_id,
            customer_id=updated.customer_id,
            order_key=updated.order_key,
            version=updated.version,
            event_kind=change_log.MODIFY,
            before=current.to_image(),
            after=updated.to_image(),
        )
        await session.commit()

        await _sync_projection(session, updated)
        return Transition(TransitionOutcome.APPLIED, updated)

    current = await queries.get_order_by_key(session, customer_id, order_key)
    return Transition(TransitionOutcome.STALE, current)


async def cancel_order(session: AsyncSession, order_id: str) -> Transition:
    """
    注文キャンセルコマンド

    PENDING / CONFIRMED のときだけキャンセルできる。
    読んだ時点のステータスを期待値にするので、並行して状態が変われば STALE。
    """
    order = await queries.get_order(session, order_id)
    if order is None:
        return Transition(TransitionOutcome.NOT_FOUND, None)
    if order.status not in CANCELLABLE_STATUSES:
        return Transition(TransitionOutcome.REJECTED, order)
    return await transition_status(
        session,
        order.customer_id,
        order.order_key,
        OrderStatus.CANCELLED,
        expected_status=order.status,
    )


async def purge_order(session: AsyncSession, customer_id: str, order_key: str) -> Order | None:
    """
    管理用の物理削除。

    注文は通常削除しない。削除した場合も REMOVE の change log を残し、
    change feed 側で OrderDeleted として表に出す。
    """
    current = await queries.get_order_by_key(session, customer_id, order_key)
    if current is None:
        return None

    written = await update_if(
        session,
        text("""
            DELETE FROM orders
            WHERE customer_id = :customer_id AND order_key = :order_key AND version = :version
        """),
        {"customer_id": customer_id, "order_key": order_key, "version": current.version},
    )
    if written is WriteResult.CONFLICT:
        await session.rollback()
        logger.info("Purge of %s lost a version race", current.order_id)
        return None

    await change_log.append_change(
        session,
        order_id=current.order_id,
        customer_id=current.customer_id,
        order_key=current.order_key,
        version=current.version + 1,
        event_kind=change_log.REMOVE,
        before=current.to_image(),
        after=None,
    )
    await session.commit()
    logger.warning("Order %s was hard-deleted", current.order_id)
    return current


# ── by-ID プロジェクション ─────────────────────────


async def upsert_projection(session: AsyncSession, order: Order) -> None:
    """
    by-ID プロジェクションを order の内容に合わせる。

    version が進む方向にしか書かない。既に同じか新しいバージョンがあれば何もしない。
    """
    params = order.to_params()
    written = await update_if(session, UPDATE_PROJECTION, params)
    if written is WriteResult.CONFLICT:
        # 行が無いか、既に新しい。INSERT が衝突したら後者
        await insert_if_absent(session, INSERT_PROJECTION, params)
    await session.commit()


async def delete_projection(session: AsyncSession, order_id: str) -> None:
    await session.execute(
        text("DELETE FROM orders_by_id WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    await session.commit()


async def _sync_projection(session: AsyncSession, order: Order) -> None:
    try:
        await upsert_projection(session, order)
    except SQLAlchemyError:
        await session.rollback()
        logger.warning(
            "Failed to update by-ID projection for %s at version %d; change feed will reconcile",
            order.order_id,
            order.version,
            exc_info=True,
        )
