"""
Order Service: クエリハンドラ (Read 側)

- get_order: order_id で by-ID プロジェクションから O(1) 取得
- get_order_by_key / list_orders: 正となる orders テーブルから顧客単位で取得
- list_orders_by_*: セカンダリインデックス (店舗 / 郡 / ステータス) 経由の取得
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.shared.errors import InvalidPageToken
from orderflow.shared.storage import decode_page_token, encode_page_token

from .aggregate import Order, OrderStatus


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders_by_id WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.mappings().first()
    return Order.from_row(row) if row else None


async def get_order_by_key(session: AsyncSession, customer_id: str, order_key: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE customer_id = :customer_id AND order_key = :order_key"),
        {"customer_id": customer_id, "order_key": order_key},
    )
    row = result.mappings().first()
    return Order.from_row(row) if row else None


async def find_by_idempotency_key(
    session: AsyncSession, customer_id: str, idempotency_key: str
) -> tuple[Order, str] | None:
    """冪等キーから注文を引く。(注文, 登録時のリクエストハッシュ) を返す。"""
    result = await session.execute(
        text("""
            SELECT * FROM orders
            WHERE customer_id = :customer_id AND idempotency_key = :idempotency_key
        """),
        {"customer_id": customer_id, "idempotency_key": idempotency_key},
    )
    row = result.mappings().first()
    if not row:
        return None
    return Order.from_row(row), row["request_hash"]


async def list_orders(
    session: AsyncSession,
    customer_id: str,
    limit: int = 20,
    next_token: str | None = None,
) -> tuple[list[Order], str | None]:
    """
    顧客の注文を新しい順に返す。

    order_key (order_ts#order_id) の範囲検索でページングする。
    next_token は最後に返した order_key を包んだ不透明な文字列。
    """
    params = {"customer_id": customer_id, "limit": limit + 1}
    condition = ""
    if next_token:
        start = decode_page_token(next_token).get("order_key")
        if not isinstance(start, str):
            raise InvalidPageToken("Malformed page token")
        condition = "AND order_key < :start"
        params["start"] = start

    result = await session.execute(
        text(f"""
            SELECT * FROM orders
            WHERE customer_id = :customer_id {condition}
            ORDER BY order_key DESC
            LIMIT :limit
        """),
        params,
    )
    rows = result.mappings().all()
    orders = [Order.from_row(row) for row in rows[:limit]]
    token = None
    if len(rows) > limit:
        token = encode_page_token({"order_key": orders[-1].order_key})
    return orders, token


async def list_orders_by_store(session: AsyncSession, store_id: str, limit: int = 100) -> list[Order]:
    result = await session.execute(
        text("""
            SELECT * FROM orders WHERE store_id = :store_id
            ORDER BY order_ts DESC LIMIT :limit
        """),
        {"store_id": store_id, "limit": limit},
    )
    return [Order.from_row(row) for row in result.mappings().all()]


async def list_orders_by_county(
    session: AsyncSession,
    county_id: str,
    start: str | None = None,
    end: str | None = None,
    limit: int = 100,
) -> list[Order]:
    """郡ごとの注文。start / end (ISO 時刻) で order_ts を絞り込める。"""
    conditions = ["county_id = :county_id"]
    params: dict = {"county_id": county_id, "limit": limit}
    if start:
        conditions.append("order_ts >= :start")
        params["start"] = start
    if end:
        conditions.append("order_ts <= :end")
        params["end"] = end

    result = await session.execute(
        text(f"""
            SELECT * FROM orders WHERE {" AND ".join(conditions)}
            ORDER BY order_ts DESC LIMIT :limit
        """),
        params,
    )
    return [Order.from_row(row) for row in result.mappings().all()]


async def list_orders_by_status(
    session: AsyncSession, status: OrderStatus, limit: int = 100
) -> list[Order]:
    result = await session.execute(
        text("""
            SELECT * FROM orders WHERE status = :status
            ORDER BY order_ts DESC LIMIT :limit
        """),
        {"status": status.value, "limit": limit},
    )
    return [Order.from_row(row) for row in result.mappings().all()]
