"""
Order Service — 注文イベントログ

注文に対してコミットされたすべての変化（作成・状態遷移・キャンセル依頼）を
追記専用で記録する監査ログ。記録は変化そのものと同じトランザクションで行うので、
ログとテーブルの状態がずれることはない。

同時実行制御は注文行のロックで行う。(order_uid, version) の主キーは
万一ロックを経由しない書き込みがあった場合の検知用。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import now_ms


async def append_event(
    session: AsyncSession,
    order_uid: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """イベントを追記して新しいバージョン番号を返す。"""
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO order_events
                (order_uid, version, event_type, event_data, created_at)
            VALUES
                (:order_uid, :version, :event_type, :event_data, :now)
        """),
        {
            "order_uid": order_uid,
            "version": new_version,
            "event_type": event_type,
            "event_data": json.dumps(event_data, default=str),
            "now": now_ms(),
        },
    )
    return new_version


async def current_version(session: AsyncSession, order_uid: str) -> int:
    result = await session.execute(
        text("SELECT MAX(version) AS version FROM order_events WHERE order_uid = :order_uid"),
        {"order_uid": order_uid},
    )
    row = result.fetchone()
    return row.version or 0 if row else 0


async def load_events(session: AsyncSession, order_uid: str) -> list[dict]:
    """指定した注文の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE order_uid = :order_uid
            ORDER BY version ASC
        """),
        {"order_uid": order_uid},
    )
    return [_to_dict(row) for row in result.fetchall()]


def _to_dict(row) -> dict:
    data = row.event_data
    return {
        "version": row.version,
        "event_type": row.event_type,
        "event_data": json.loads(data) if isinstance(data, str) else data,
        "created_at": row.created_at,
    }
