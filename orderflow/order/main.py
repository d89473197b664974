"""
Order Service: FastAPI エントリーポイント

CQRS に従い、Command (POST / DELETE / PUT) と Query (GET) を分ける。

- POST /orders: 冪等な注文受付。新規作成時だけワークキューに積む
- DELETE /orders/{order_id}: キャンセル (引き当ても解放する)
- PUT /orders/{order_id}/status: 出荷工程の進行 (PROCESSING / SHIPPED / DELIVERED)
- GET 系: by-ID プロジェクション / 顧客ごとの履歴 / 変更履歴 / セカンダリインデックス
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from orderflow.inventory import commands as inventory_commands
from orderflow.saga.messages import build_message
from orderflow.shared.config import Settings
from orderflow.shared.errors import InvalidPageToken, error_response, install_error_handlers
from orderflow.shared.resources import Resources, get_resources, open_resources

from . import change_log, commands, queries
from .aggregate import OrderStatus, ShippingAddress
from .commands import TransitionOutcome

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_MIN = 8
IDEMPOTENCY_KEY_MAX = 128
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

FULFILLMENT_STATUSES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


# ── Request / Response Models ────────────────────


class OrderItemRequest(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    # 1 セント未満だと明細金額が 0.00 に丸まる
    unit_price: float = Field(ge=0.01)


class CreateOrderRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=128)
    store_id: str = Field(min_length=1, max_length=64)
    county_id: str = Field(min_length=1, max_length=64)
    items: list[OrderItemRequest] = Field(min_length=1)
    shipping_address: ShippingAddress

    @field_validator("items")
    @classmethod
    def _unique_skus(cls, items: list[OrderItemRequest]) -> list[OrderItemRequest]:
        seen = set()
        for item in items:
            if item.sku in seen:
                raise ValueError(f"Duplicate SKU: {item.sku}")
            seen.add(item.sku)
        return items


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    expected_status: OrderStatus | None = None


def create_app(settings: Settings | None = None, resources: Resources | None = None) -> FastAPI:
    """
    アプリを組み立てる。

    resources を渡した場合はそれをそのまま使う (テストや埋め込み用)。
    渡さなければ lifespan で環境変数から組み立てる。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resources is not None:
            yield
            return
        async with open_resources(settings or Settings.from_env()) as opened:
            app.state.resources = opened
            yield

    app = FastAPI(title="Order Service", lifespan=lifespan)
    if resources is not None:
        app.state.resources = resources
    install_error_handlers(app)

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/orders", status_code=201)
    async def create_order(
        req: CreateOrderRequest,
        idempotency_key: str | None = Header(None, alias="X-Idempotency-Key"),
        res: Resources = Depends(get_resources),
    ):
        """
        注文作成コマンド

        同じ X-Idempotency-Key の再送には、最初に作った注文を 200 で返す。
        """
        if not idempotency_key:
            return error_response(400, "MISSING_IDEMPOTENCY_KEY", "Missing X-Idempotency-Key header")
        if not IDEMPOTENCY_KEY_MIN <= len(idempotency_key) <= IDEMPOTENCY_KEY_MAX:
            return error_response(
                400,
                "VALIDATION_FAILED",
                "Validation failed",
                details=[
                    {
                        "field": "X-Idempotency-Key",
                        "message": f"Must be {IDEMPOTENCY_KEY_MIN}-{IDEMPOTENCY_KEY_MAX} characters",
                        "code": "string_length",
                    }
                ],
            )

        async with res.sessions() as session:
            result = await commands.create_order(
                session,
                customer_id=req.customer_id,
                store_id=req.store_id,
                county_id=req.county_id,
                items=[item.model_dump() for item in req.items],
                shipping_address=req.shipping_address.model_dump(),
                idempotency_key=idempotency_key,
            )

        body = result.order.to_response()
        if not result.created:
            body["message"] = "Order already exists (idempotent)"
            return JSONResponse(status_code=200, content=body)

        await res.order_queue.send(build_message(result.order))
        logger.info("Order %s created and queued for processing", result.order.order_id)
        return body

    @app.delete("/orders/{order_id}")
    async def cancel_order(order_id: str, res: Resources = Depends(get_resources)):
        """注文キャンセルコマンド。PENDING / CONFIRMED のときだけ。"""
        async with res.sessions() as session:
            transition = await commands.cancel_order(session, order_id)
            if transition.outcome is TransitionOutcome.NOT_FOUND:
                return error_response(404, "ORDER_NOT_FOUND", f"Order {order_id} not found")
            if transition.outcome is TransitionOutcome.REJECTED:
                if transition.order.status is OrderStatus.CANCELLED:
                    # 前回のキャンセルが解放前に落ちていても、再送で解放し直す
                    await inventory_commands.release_reservation(session, order_id)
                return error_response(
                    409,
                    "ORDER_NOT_CANCELLABLE",
                    f"Order cannot be cancelled in status {transition.order.status.value}",
                    current_status=transition.order.status.value,
                )
            if transition.outcome is TransitionOutcome.STALE:
                return _status_changed(transition)

            await inventory_commands.release_reservation(session, order_id)

        logger.info("Order %s cancelled", order_id)
        return {**transition.order.to_response(), "message": "Order cancelled"}

    @app.put("/orders/{order_id}/status")
    async def update_status(
        order_id: str, req: UpdateStatusRequest, res: Resources = Depends(get_resources)
    ):
        """出荷工程の状態遷移コマンド"""
        if req.status not in FULFILLMENT_STATUSES:
            return error_response(
                409,
                "INVALID_TRANSITION",
                f"Status {req.status.value} cannot be set through this endpoint",
            )

        async with res.sessions() as session:
            order = await queries.get_order(session, order_id)
            if order is None:
                return error_response(404, "ORDER_NOT_FOUND", f"Order {order_id} not found")
            transition = await commands.transition_status(
                session,
                order.customer_id,
                order.order_key,
                req.status,
                expected_status=req.expected_status,
            )

        if transition.outcome is TransitionOutcome.NOT_FOUND:
            return error_response(404, "ORDER_NOT_FOUND", f"Order {order_id} not found")
        if transition.outcome is TransitionOutcome.STALE:
            return _status_changed(transition)
        if transition.outcome is TransitionOutcome.REJECTED:
            return error_response(
                409,
                "INVALID_TRANSITION",
                f"Cannot move order from {transition.order.status.value} to {req.status.value}",
                current_status=transition.order.status.value,
            )
        return transition.order.to_response()

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, res: Resources = Depends(get_resources)):
        async with res.sessions() as session:
            order = await queries.get_order(session, order_id)
        if order is None:
            return error_response(404, "ORDER_NOT_FOUND", f"Order {order_id} not found")
        return order.to_response()

    @app.get("/orders/{order_id}/changes")
    async def get_order_changes(order_id: str, res: Resources = Depends(get_resources)):
        """注文の変更履歴 (change log) をバージョン順に返す。削除済みの注文も引ける。"""
        async with res.sessions() as session:
            changes = await change_log.load_changes(session, order_id)
        if not changes:
            return error_response(404, "ORDER_NOT_FOUND", f"Order {order_id} not found")
        return {
            "order_id": order_id,
            "changes": [
                {
                    "version": change.version,
                    "event_kind": change.event_kind,
                    "before": change.before,
                    "after": change.after,
                    "created_at": change.created_at,
                }
                for change in changes
            ],
        }

    @app.get("/orders")
    async def list_orders(
        customer_id: str | None = None,
        limit: str | None = None,
        next_token: str | None = None,
        res: Resources = Depends(get_resources),
    ):
        """顧客の注文履歴 (新しい順)"""
        if not customer_id:
            return error_response(
                400,
                "VALIDATION_FAILED",
                "Validation failed",
                details=[{"field": "customer_id", "message": "Field required", "code": "missing"}],
            )
        page_size = _parse_limit(limit)
        if page_size is None:
            return error_response(
                400, "INVALID_LIMIT", f"limit must be an integer between 1 and {MAX_PAGE_SIZE}"
            )

        async with res.sessions() as session:
            try:
                orders, token = await queries.list_orders(session, customer_id, page_size, next_token)
            except InvalidPageToken:
                return error_response(400, "INVALID_PAGE_TOKEN", "next_token is invalid")

        body: dict = {"orders": [order.to_response() for order in orders]}
        if token:
            body["next_token"] = token
        return body

    @app.get("/stores/{store_id}/orders")
    async def list_store_orders(
        store_id: str,
        limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        res: Resources = Depends(get_resources),
    ):
        async with res.sessions() as session:
            orders = await queries.list_orders_by_store(session, store_id, limit)
        return {"orders": [order.to_response() for order in orders]}

    @app.get("/counties/{county_id}/orders")
    async def list_county_orders(
        county_id: str,
        start: str | None = None,
        end: str | None = None,
        limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        res: Resources = Depends(get_resources),
    ):
        async with res.sessions() as session:
            orders = await queries.list_orders_by_county(session, county_id, start, end, limit)
        return {"orders": [order.to_response() for order in orders]}

    @app.get("/statuses/{status}/orders")
    async def list_status_orders(
        status: OrderStatus,
        limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        res: Resources = Depends(get_resources),
    ):
        async with res.sessions() as session:
            orders = await queries.list_orders_by_status(session, status, limit)
        return {"orders": [order.to_response() for order in orders]}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


def _parse_limit(raw: str | None) -> int | None:
    if raw is None:
        return DEFAULT_PAGE_SIZE
    try:
        value = int(raw)
    except ValueError:
        return None
    if not 1 <= value <= MAX_PAGE_SIZE:
        return None
    return value


def _status_changed(transition):
    current = transition.order.status.value if transition.order else None
    return error_response(
        409,
        "STATUS_CHANGED",
        "Order status changed concurrently, re-read and retry",
        current_status=current,
    )


app = create_app()
