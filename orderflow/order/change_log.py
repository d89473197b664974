"""
Order Service: change log (change feed)

注文レコードへの書き込みと同じトランザクションで、
before / after イメージを order_changes に追記する。

(order_id, version) の UNIQUE 制約で、同じバージョンの変更が
二重に記録されることはない。シャード内では seq 順に読み出されるので、
同じ注文の変更は書き込み順に処理される。
"""

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.shared.storage import shard_for, utcnow_iso

SHARD_COUNT = 16

INSERT = "INSERT"
MODIFY = "MODIFY"
REMOVE = "REMOVE"


@dataclass
class ChangeRecord:
    seq: int
    order_id: str
    customer_id: str
    order_key: str
    version: int
    event_kind: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    created_at: str
    attempts: int = 0

    @property
    def record_key(self) -> str:
        return f"{self.order_id}:{self.version}"

    @classmethod
    def from_row(cls, row) -> "ChangeRecord":
        return cls(
            seq=row.seq,
            order_id=row.order_id,
            customer_id=row.customer_id,
            order_key=row.order_key,
            version=row.version,
            event_kind=row.event_kind,
            before=json.loads(row.before_image) if row.before_image else None,
            after=json.loads(row.after_image) if row.after_image else None,
            created_at=row.created_at,
            attempts=row.attempts,
        )


async def append_change(
    session: AsyncSession,
    *,
    order_id: str,
    customer_id: str,
    order_key: str,
    version: int,
    event_kind: str,
    before: dict | None,
    after: dict | None,
) -> None:
    """変更レコードを追記する。commit は呼び出し側の責務。"""
    await session.execute(
        text("""
            INSERT INTO order_changes
                (order_id, customer_id, order_key, version, shard, event_kind,
                 before_image, after_image, created_at, attempts)
            VALUES
                (:order_id, :customer_id, :order_key, :version, :shard, :event_kind,
                 :before_image, :after_image, :now, 0)
        """),
        {
            "order_id": order_id,
            "customer_id": customer_id,
            "order_key": order_key,
            "version": version,
            "shard": shard_for(order_id, SHARD_COUNT),
            "event_kind": event_kind,
            "before_image": json.dumps(before) if before is not None else None,
            "after_image": json.dumps(after) if after is not None else None,
            "now": utcnow_iso(),
        },
    )


async def load_changes(session: AsyncSession, order_id: str) -> list[ChangeRecord]:
    """指定注文の変更履歴をバージョン順に読み出す。"""
    result = await session.execute(
        text("SELECT * FROM order_changes WHERE order_id = :order_id ORDER BY version ASC"),
        {"order_id": order_id},
    )
    return [ChangeRecord.from_row(row) for row in result.fetchall()]


async def fetch_pending(session: AsyncSession, shards: list[int], limit: int) -> list[ChangeRecord]:
    """未配信かつ dead-letter されていない変更を seq 順に返す。"""
    if not shards:
        return []
    statement = text("""
        SELECT * FROM order_changes
        WHERE published_at IS NULL
          AND dead_lettered_at IS NULL
          AND shard IN :shards
        ORDER BY seq ASC
        LIMIT :limit
    """).bindparams(bindparam("shards", expanding=True))
    result = await session.execute(statement, {"shards": list(shards), "limit": limit})
    return [ChangeRecord.from_row(row) for row in result.fetchall()]


async def mark_published(session: AsyncSession, seq: int) -> None:
    await session.execute(
        text("UPDATE order_changes SET published_at = :now WHERE seq = :seq"),
        {"now": utcnow_iso(), "seq": seq},
    )


async def mark_failed(session: AsyncSession, seq: int, error: str, *, dead_letter: bool) -> None:
    await session.execute(
        text("""
            UPDATE order_changes
            SET attempts = attempts + 1,
                last_error = :error,
                dead_lettered_at = :dead_lettered_at
            WHERE seq = :seq
        """),
        {
            "error": error[:2000],
            "dead_lettered_at": utcnow_iso() if dead_letter else None,
            "seq": seq,
        },
    )
