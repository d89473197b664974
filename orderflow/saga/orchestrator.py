"""
Saga Orchestrator: 注文処理 Saga

Saga パターン (オーケストレーション型):
  ワークキューから受け取った注文ごとに、中央のオーケストレーターが
  在庫・決済・注文の各コマンドを順に実行する。
  失敗時は補償トランザクション (在庫解放 + 注文を FAILED) を実行して
  整合性を保つ。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  0. 注文を読む (PENDING 以外なら何もしない)              │
  │  1. 在庫を引き当てる                                      │
  │     └─ 在庫不足 → 注文を FAILED (補償)                   │
  │  2. 決済をオーソリする                                    │
  │     └─ 拒否 / 決済障害 → 在庫解放 + 注文を FAILED (補償) │
  │  3. 注文を CONFIRMED にし、引き当てを確定                │
  │  4. 通知をキューに積む (結果は待たない)                   │
  └─────────────────────────────────────────────────────────┘

同じメッセージが何度届いても結果は同じになる:
  - PENDING でない注文はスキップ (CANCELLED / FAILED なら引き当ての解放だけやり直す)
  - 引き当ては注文ごとに 1 つだけ (既存の有効な引き当てを再利用)
  - 決済は order_id を Idempotency-Key にして呼ぶ
  - 状態遷移は期待ステータス付きの条件付き書き込み
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from orderflow.inventory import commands as inventory_commands
from orderflow.inventory.commands import ReservationResult
from orderflow.order import commands as order_commands
from orderflow.order import queries as order_queries
from orderflow.order.aggregate import Order, OrderStatus, PaymentState
from orderflow.order.commands import Transition
from orderflow.shared.config import Settings
from orderflow.shared.errors import PaymentUnavailable
from orderflow.shared.queue import BatchResponse, QueueMessage
from orderflow.shared.storage import utcnow_iso

from .messages import PROCESS_ORDER, OrderMessage
from .notifications import Notifier
from .payment import HttpPaymentGateway, PaymentResult

logger = logging.getLogger(__name__)

# 他のワーカーや API が注文を先に終端させていたら、引き当てを持っていてはいけない
_RELEASE_ON_STATUSES = (OrderStatus.CANCELLED, OrderStatus.FAILED)


class SagaOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    NOT_FOUND = "NOT_FOUND"
    RETRY = "RETRY"


@dataclass
class SagaResult:
    order_id: str
    outcome: SagaOutcome
    saga_log: list[dict] = field(default_factory=list)


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        sessions: sessionmaker,
        payment: HttpPaymentGateway,
        notifier: Notifier,
        settings: Settings,
    ):
        self.sessions = sessions
        self.payment = payment
        self.notifier = notifier
        self.settings = settings
        self._semaphore = asyncio.Semaphore(settings.saga_max_concurrency)

    async def process_batch(self, messages: list[QueueMessage]) -> BatchResponse:
        """
        受信したバッチを並行に処理し、アイテムごとの成否を返す。

        1 件の失敗が他のアイテムの進捗を巻き戻すことはない。
        """
        statuses = await asyncio.gather(*(self._handle(message) for message in messages))
        response = BatchResponse(received=len(messages))
        for message, status in zip(messages, statuses):
            if status == "failed":
                response.failed_ids.append(message.message_id)
            elif status == "rejected":
                response.rejected_ids.append(message.message_id)
        return response

    async def _handle(self, message: QueueMessage) -> str:
        if message.body is None:
            logger.error("Message %s is not a JSON object", message.message_id)
            return "rejected"
        try:
            work = OrderMessage.model_validate(message.body)
        except ValidationError as e:
            logger.error("Message %s is malformed: %s", message.message_id, e)
            return "rejected"
        if work.action != PROCESS_ORDER:
            logger.error("Message %s has unknown action %r", message.message_id, work.action)
            return "rejected"

        async with self._semaphore:
            try:
                result = await self.process(work)
            except Exception:
                logger.exception(
                    "Saga for order %s failed (delivery %d)", work.order_id, message.deliveries
                )
                return "failed"

        if result.outcome is SagaOutcome.RETRY:
            return "failed"
        return "ok"

    async def process(self, work: OrderMessage) -> SagaResult:
        """
        1 つの注文について Saga を実行する。

        インフラ障害 (SQLAlchemyError / RedisError / 再試行を使い切る前の一時障害) は
        例外のまま呼び出し側に伝播させ、メッセージを再配信させる。
        """
        saga_log: list[dict] = []

        async with self.sessions() as session:
            order = await self._load_order(session, work)
            if order is None:
                logger.error("Order not found: %s", work.order_id)
                return SagaResult(work.order_id, SagaOutcome.NOT_FOUND, saga_log)

            if order.status is not OrderStatus.PENDING:
                logger.info("Order %s already processed (%s)", order.order_id, order.status.value)
                if order.status is OrderStatus.CONFIRMED:
                    # 確定直後にクラッシュした場合の引き当て確定漏れを埋める
                    await inventory_commands.confirm_reservation(session, order.order_id)
                elif order.status in _RELEASE_ON_STATUSES:
                    # 補償の途中 (FAILED 確定後、解放前) に落ちた場合の解放漏れを埋める
                    await inventory_commands.release_reservation(session, order.order_id)
                return SagaResult(order.order_id, SagaOutcome.SKIPPED, saga_log)

            # ── Step 1: 在庫を引き当て ──────────────────
            step = _begin_step(saga_log, "ReserveInventory")
            reservation = await self._reserve(session, order)
            if reservation.retryable:
                step["status"] = "FAILED"
                step["error"] = reservation.reason
                logger.info("Reservation for %s kept racing; leaving it for redelivery", order.order_id)
                return SagaResult(order.order_id, SagaOutcome.RETRY, saga_log)
            if not reservation.success:
                step["status"] = "FAILED"
                step["error"] = reservation.reason
                step["failed_items"] = [
                    {"sku": f.sku, "requested": f.requested, "available": f.available}
                    for f in reservation.failed_items
                ]
                return await self._fail(
                    session, order, f"Inventory reservation failed: {reservation.reason}", saga_log
                )
            step["status"] = "COMPLETED"
            step["reservation_id"] = reservation.reservation.reservation_id

            # ── Step 2: 決済をオーソリ ──────────────────
            step = _begin_step(saga_log, "AuthorizePayment")
            try:
                payment = await self._authorize(order)
            except PaymentUnavailable as e:
                step["status"] = "FAILED"
                step["error"] = str(e)
                return await self._fail(
                    session, order, f"Payment processing failed: {e}", saga_log, payment_failed=True
                )
            if not payment.approved:
                step["status"] = "FAILED"
                step["error"] = payment.reason
                return await self._fail(
                    session,
                    order,
                    f"Payment declined: {payment.reason or 'no reason given'}",
                    saga_log,
                    payment_failed=True,
                )
            step["status"] = "COMPLETED"
            step["transaction_id"] = payment.transaction_id

            # ── Step 3: 注文を確定 ──────────────────────
            step = _begin_step(saga_log, "ConfirmOrder")
            transition = await order_commands.transition_status(
                session,
                order.customer_id,
                order.order_key,
                OrderStatus.CONFIRMED,
                expected_status=OrderStatus.PENDING,
                payment_state=PaymentState.AUTHORIZED,
            )
            if not transition.applied:
                step["status"] = "FAILED"
                return await self._resolve_stale_confirm(session, order, transition, saga_log)
            await inventory_commands.confirm_reservation(session, order.order_id)
            step["status"] = "COMPLETED"

        # ── Step 4: 通知 (fire-and-forget) ─────────────
        step = _begin_step(saga_log, "SendNotification")
        await self.notifier.notify(transition.order, OrderStatus.CONFIRMED)
        step["status"] = "COMPLETED"

        logger.info("Order %s confirmed", order.order_id)
        return SagaResult(order.order_id, SagaOutcome.CONFIRMED, saga_log)

    async def _load_order(self, session: AsyncSession, work: OrderMessage) -> Order | None:
        """by-ID プロジェクションを優先し、まだ反映されていなければ主レコードを読む。"""
        order = await order_queries.get_order(session, work.order_id)
        if order is None:
            order = await order_queries.get_order_by_key(session, work.customer_id, work.order_key)
        return order

    async def _reserve(self, session: AsyncSession, order: Order) -> ReservationResult:
        items = [{"sku": item.sku, "quantity": item.quantity} for item in order.items]
        attempts = self.settings.reserve_max_attempts
        for attempt in range(1, attempts + 1):
            result = await inventory_commands.reserve_inventory(
                session,
                order.order_id,
                order.store_id,
                items,
                ttl_minutes=self.settings.reservation_ttl_minutes,
            )
            if not result.retryable:
                return result
            logger.info(
                "Inventory changed while reserving for %s (attempt %d/%d)",
                order.order_id,
                attempt,
                attempts,
            )
        return result

    async def _authorize(self, order: Order) -> PaymentResult:
        """PaymentUnavailable は指数バックオフで再試行し、使い切ったら再送出する。"""
        attempts = self.settings.payment_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self.payment.authorize(order.order_id, order.total)
            except PaymentUnavailable as e:
                if attempt == attempts:
                    logger.warning(
                        "Payment unavailable for %s after %d attempts: %s", order.order_id, attempts, e
                    )
                    raise
                delay = self.settings.payment_retry_backoff_seconds * 2 ** (attempt - 1)
                logger.info(
                    "Payment unavailable for %s (attempt %d/%d), retrying in %.2fs",
                    order.order_id,
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        raise PaymentUnavailable(f"No payment attempts configured for {order.order_id}")

    async def _fail(
        self,
        session: AsyncSession,
        order: Order,
        reason: str,
        saga_log: list[dict],
        *,
        payment_failed: bool = False,
    ) -> SagaResult:
        """
        補償トランザクション: 注文を FAILED にし、引き当てをすぐに解放する。

        FAILED への書き込みが競合で外れた場合は、既に誰かが処理したとみなす。
        """
        step = _begin_step(saga_log, "FailOrder (COMPENSATING)")
        transition = await order_commands.transition_status(
            session,
            order.customer_id,
            order.order_key,
            OrderStatus.FAILED,
            expected_status=OrderStatus.PENDING,
            payment_state=PaymentState.FAILED if payment_failed else None,
            reason=reason,
        )

        if transition.applied:
            await inventory_commands.release_reservation(session, order.order_id)
            step["status"] = "COMPLETED"
            logger.info("Order %s failed: %s", order.order_id, reason)
            await self.notifier.notify(transition.order, OrderStatus.FAILED, reason)
            return SagaResult(order.order_id, SagaOutcome.FAILED, saga_log)

        current = transition.order
        if current is not None and current.status is OrderStatus.PENDING:
            step["status"] = "FAILED"
            return SagaResult(order.order_id, SagaOutcome.RETRY, saga_log)
        if current is None or current.status in _RELEASE_ON_STATUSES:
            await inventory_commands.release_reservation(session, order.order_id)
        step["status"] = "SKIPPED"
        logger.info(
            "Order %s changed before it could be failed (now %s)",
            order.order_id,
            current.status.value if current else "missing",
        )
        return SagaResult(order.order_id, SagaOutcome.SKIPPED, saga_log)

    async def _resolve_stale_confirm(
        self,
        session: AsyncSession,
        order: Order,
        transition: Transition,
        saga_log: list[dict],
    ) -> SagaResult:
        """
        PENDING → CONFIRMED が外れたときの後始末。

        キャンセル済み / 削除済みなら引き当てを解放して終了。まだ PENDING なら
        再配信に任せる。それ以外 (別ワーカーが確定させた等) は何もしない。
        """
        current = transition.order
        if current is None or current.status in _RELEASE_ON_STATUSES:
            step = _begin_step(saga_log, "ReleaseInventory (COMPENSATING)")
            await inventory_commands.release_reservation(session, order.order_id)
            step["status"] = "COMPLETED"
            logger.warning(
                "Order %s was %s after payment was authorized; inventory released",
                order.order_id,
                current.status.value if current else "deleted",
            )
            return SagaResult(order.order_id, SagaOutcome.SKIPPED, saga_log)

        if current.status is OrderStatus.PENDING:
            logger.info("Confirm of %s kept racing; leaving it for redelivery", order.order_id)
            return SagaResult(order.order_id, SagaOutcome.RETRY, saga_log)

        logger.info("Order %s was moved to %s by another worker", order.order_id, current.status.value)
        return SagaResult(order.order_id, SagaOutcome.SKIPPED, saga_log)


def _begin_step(saga_log: list[dict], action: str) -> dict:
    entry = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": utcnow_iso(),
    }
    saga_log.append(entry)
    return entry
