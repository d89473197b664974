"""
Inventory Service: FastAPI エントリーポイント

在庫の参照と棚卸し (在庫数の登録・更新)、引き当て状況の参照。
引き当て・解放そのものは Saga / 注文キャンセルから commands を直接呼ぶ。
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field

from orderflow.shared.config import Settings
from orderflow.shared.errors import error_response, install_error_handlers
from orderflow.shared.resources import Resources, get_resources, open_resources
from orderflow.shared.storage import WriteResult

from . import commands, queries
from .aggregate import InventoryRecord

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class UpsertItemRequest(BaseModel):
    product_name: str = Field(min_length=1)
    quantity_available: int = Field(ge=0)
    unit_cost: float = Field(ge=0)
    reorder_level: int = Field(0, ge=0)


def _item_response(record: InventoryRecord) -> dict:
    return {
        **record.model_dump(),
        "available": record.available,
        "needs_reorder": record.needs_reorder,
    }


def create_app(settings: Settings | None = None, resources: Resources | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resources is not None:
            yield
            return
        async with open_resources(settings or Settings.from_env()) as opened:
            app.state.resources = opened
            yield

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    if resources is not None:
        app.state.resources = resources
    install_error_handlers(app)

    # ── Command Endpoints (Write 側) ─────────────────

    @app.put("/inventory/{store_id}/{sku}")
    async def upsert_item(
        store_id: str, sku: str, req: UpsertItemRequest, res: Resources = Depends(get_resources)
    ):
        """棚卸しコマンド。引き当て済み数量を下回る在庫数には更新できない。"""
        async with res.sessions() as session:
            written = await commands.upsert_item(
                session,
                store_id,
                sku,
                product_name=req.product_name,
                quantity_available=req.quantity_available,
                unit_cost=req.unit_cost,
                reorder_level=req.reorder_level,
            )
            record = await queries.get_item(session, store_id, sku)

        if written is WriteResult.CONFLICT:
            return error_response(
                409,
                "INVENTORY_CONFLICT",
                "quantity_available cannot drop below the reserved quantity",
                quantity_reserved=record.quantity_reserved if record else None,
            )
        logger.info("Inventory for %s/%s set to %d", store_id, sku, req.quantity_available)
        return _item_response(record)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/inventory/{store_id}")
    async def list_items(store_id: str, res: Resources = Depends(get_resources)):
        async with res.sessions() as session:
            records = await queries.list_items(session, store_id)
        return {"items": [_item_response(record) for record in records]}

    @app.get("/inventory/{store_id}/{sku}")
    async def get_item(store_id: str, sku: str, res: Resources = Depends(get_resources)):
        async with res.sessions() as session:
            record = await queries.get_item(session, store_id, sku)
        if record is None:
            return error_response(404, "ITEM_NOT_FOUND", f"No inventory for {store_id}/{sku}")
        return _item_response(record)

    @app.get("/reservations/{order_id}")
    async def get_reservation(order_id: str, res: Resources = Depends(get_resources)):
        async with res.sessions() as session:
            reservation = await queries.get_reservation(session, order_id)
        if reservation is None:
            return error_response(404, "RESERVATION_NOT_FOUND", f"No reservation for order {order_id}")
        return reservation.model_dump(mode="json")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "inventory-service"}

    return app


app = create_app()
