"""
Shared: ストレージ抽象 (Storage Abstraction)

キーバリュー的に使うテーブル定義と、条件付き書き込み (Compare-and-Swap) の
プリミティブをまとめたモジュール。

- 主キー / 複合ソートキー (order_key = order_ts#order_id) による範囲検索
- 別パーティションキーで引けるセカンダリインデックス
- 条件付き書き込みの結果は例外ではなく WriteResult (OK | CONFLICT) で返す

楽観的ロックの競合は「想定内のシグナル」なので、呼び出し側が
再読み込みして判断する。ストレージ障害は SQLAlchemyError のまま伝播させる。
"""

import base64
import binascii
import json
import zlib
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from ulid import ULID

from .config import Settings
from .errors import InvalidPageToken

metadata = MetaData()

# ── テーブル定義 ─────────────────────────────────

# 正となる注文レコード: (customer_id, order_key) で顧客ごとの履歴を引く
orders = Table(
    "orders",
    metadata,
    Column("customer_id", String(128), primary_key=True),
    Column("order_key", String(96), primary_key=True),
    Column("order_id", String(40), nullable=False, unique=True),
    Column("order_ts", String(40), nullable=False),
    Column("store_id", String(64), nullable=False),
    Column("county_id", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("payment_state", String(16), nullable=False),
    Column("items", Text, nullable=False),
    Column("subtotal", Float, nullable=False),
    Column("tax", Float, nullable=False),
    Column("total", Float, nullable=False),
    Column("shipping_address", Text, nullable=False),
    Column("idempotency_key", String(128), nullable=False),
    Column("request_hash", String(64), nullable=False),
    Column("failure_reason", Text),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("customer_id", "idempotency_key", name="uq_orders_idempotency"),
    Index("ix_orders_store", "store_id", "order_ts"),
    Index("ix_orders_county", "county_id", "order_ts"),
    Index("ix_orders_status", "status", "order_ts"),
)

# order_id で O(1) に引くための非正規化プロジェクション (結果整合)
orders_by_id = Table(
    "orders_by_id",
    metadata,
    Column("order_id", String(40), primary_key=True),
    Column("customer_id", String(128), nullable=False),
    Column("order_key", String(96), nullable=False),
    Column("order_ts", String(40), nullable=False),
    Column("store_id", String(64), nullable=False),
    Column("county_id", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("payment_state", String(16), nullable=False),
    Column("items", Text, nullable=False),
    Column("subtotal", Float, nullable=False),
    Column("tax", Float, nullable=False),
    Column("total", Float, nullable=False),
    Column("shipping_address", Text, nullable=False),
    Column("idempotency_key", String(128), nullable=False),
    Column("failure_reason", Text),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

# change feed: 注文レコードへの書き込みごとに before / after イメージを追記する
order_changes = Table(
    "order_changes",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(40), nullable=False),
    Column("customer_id", String(128), nullable=False),
    Column("order_key", String(96), nullable=False),
    Column("version", Integer, nullable=False),
    Column("shard", Integer, nullable=False),
    Column("event_kind", String(8), nullable=False),
    Column("before_image", Text),
    Column("after_image", Text),
    Column("created_at", String(40), nullable=False),
    Column("published_at", String(40)),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("dead_lettered_at", String(40)),
    UniqueConstraint("order_id", "version", name="uq_order_changes_version"),
    Index("ix_order_changes_pending", "shard", "published_at", "seq"),
)

inventory = Table(
    "inventory",
    metadata,
    Column("store_id", String(64), primary_key=True),
    Column("sku", String(64), primary_key=True),
    Column("product_name", String(256), nullable=False),
    Column("quantity_available", Integer, nullable=False),
    Column("quantity_reserved", Integer, nullable=False, default=0),
    Column("reorder_level", Integer, nullable=False, default=0),
    Column("unit_cost", Float, nullable=False),
    Column("updated_at", String(40), nullable=False),
)

reservations = Table(
    "reservations",
    metadata,
    Column("reservation_id", String(40), primary_key=True),
    Column("order_id", String(40), nullable=False, unique=True),
    Column("store_id", String(64), nullable=False),
    Column("items", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("ttl", Integer, nullable=False),
)


# ── 条件付き書き込み ─────────────────────────────


class WriteResult(str, Enum):
    OK = "OK"
    CONFLICT = "CONFLICT"


async def insert_if_absent(session: AsyncSession, statement, params: dict) -> WriteResult:
    """
    「そのキーにまだレコードが無いこと」を条件に INSERT する。

    一意制約違反は CONFLICT として返す。競合時はトランザクション全体を
    ロールバックするので、同じトランザクション内の先行書き込みも取り消される。
    """
    try:
        await session.execute(statement, params)
    except IntegrityError:
        await session.rollback()
        return WriteResult.CONFLICT
    return WriteResult.OK


async def update_if(session: AsyncSession, statement, params: dict) -> WriteResult:
    """WHERE 句にガード条件を含む UPDATE を実行し、0 行なら CONFLICT。"""
    result = await session.execute(statement, params)
    return WriteResult.OK if result.rowcount else WriteResult.CONFLICT


# ── ページングトークン ───────────────────────────


def encode_page_token(last_key: dict) -> str:
    raw = json.dumps(last_key, separators=(",", ":"), sort_keys=True).encode()
    return base64.urlsafe_b64encode(raw).decode()


def decode_page_token(token: str) -> dict:
    try:
        data = json.loads(base64.urlsafe_b64decode(token.encode()))
    except (binascii.Error, ValueError) as e:
        raise InvalidPageToken(f"Malformed page token: {e}") from e
    if not isinstance(data, dict):
        raise InvalidPageToken("Malformed page token")
    return data


# ── 識別子・時刻 ─────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat(timespec="microseconds")


def expiry(minutes: int) -> tuple[str, int]:
    """TTL 付きレコード用に (ISO 期限, epoch 秒) を返す。"""
    expires_at = utcnow() + timedelta(minutes=minutes)
    return expires_at.isoformat(timespec="microseconds"), int(expires_at.timestamp())


def new_id(prefix: str) -> str:
    """ULID ベースの ID。作成時刻順にソート可能。"""
    return f"{prefix}-{ULID()}"


def shard_for(key: str, shard_count: int) -> int:
    return zlib.crc32(key.encode()) % shard_count


# ── エンジン / セッション ─────────────────────────


def create_engine_and_sessions(settings: Settings) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(settings.database_url, echo=False)
    sessions = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, sessions


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
