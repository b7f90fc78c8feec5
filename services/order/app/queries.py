"""
Order Service — クエリハンドラ (Read 側)

注文テーブルは書き込み側 (checkout / commands) だけが変更する。
ここは読み取り専用で、顧客向けとオペレーター向けの一覧・詳細を返す。
顧客向けの結果には決済の課金 ID を含めない。
"""

import json

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .errors import NotFoundError, ValidationError
from .money import to_amount
from .state_machine import (
    ACTIVE_STATUSES,
    ALL_STATUSES,
    PENDING_CONFIRMATION,
    TERMINAL_STATUSES,
    OrderHistory,
)
from .trucks import find_operator_truck_uid

# オペレーター一覧の status フィルタの別名
STATUS_FILTERS = {
    "pending": frozenset({PENDING_CONFIRMATION}),
    "active": ACTIVE_STATUSES,
    "completed": TERMINAL_STATUSES,
}

_ORDER_COLUMNS = """
    o.uid, o.order_number, o.customer_user_uid, o.food_truck_uid, ft.name AS food_truck_name,
    o.status, o.fulfillment_type, o.delivery_address_snapshot, o.pickup_location_address_snapshot,
    o.special_instructions, o.subtotal_cents, o.tax_cents, o.delivery_fee_cents, o.total_cents,
    o.payment_charge_id, o.refunded, o.rejection_reason, o.cancellation_reason,
    o.order_time, o.accepted_at, o.preparation_started_at, o.ready_at, o.finalized_at,
    o.estimated_ready_time, o.estimated_delivery_time, o.updated_at
"""


def parse_status_filter(value: str | None) -> frozenset[str] | None:
    """'pending' / 'active' / 'completed' または カンマ区切りの状態リスト"""
    if not value:
        return None
    if value in STATUS_FILTERS:
        return STATUS_FILTERS[value]
    statuses = frozenset(s.strip() for s in value.split(",") if s.strip())
    unknown = statuses - ALL_STATUSES
    if unknown:
        raise ValidationError(f"Invalid status filter: {', '.join(sorted(unknown))}")
    return statuses


def _summary(row, include_charge: bool) -> dict:
    order = {
        "order_uid": row.uid,
        "order_number": row.order_number,
        "food_truck_uid": row.food_truck_uid,
        "food_truck_name": row.food_truck_name,
        "customer_user_uid": row.customer_user_uid,
        "status": row.status,
        "fulfillment_type": row.fulfillment_type,
        "subtotal": float(to_amount(row.subtotal_cents)),
        "tax_amount": float(to_amount(row.tax_cents)),
        "delivery_fee": float(to_amount(row.delivery_fee_cents)),
        "total_amount": float(to_amount(row.total_cents)),
        "order_time": row.order_time,
        "estimated_ready_time": row.estimated_ready_time,
        "estimated_delivery_time": row.estimated_delivery_time,
        "updated_at": row.updated_at,
    }
    if include_charge:
        order["payment_charge_id"] = row.payment_charge_id
        order["refunded"] = bool(row.refunded)
    return order


async def _detail(session: AsyncSession, row, include_charge: bool) -> dict:
    order = _summary(row, include_charge)
    order.update({
        "delivery_address_snapshot": (
            json.loads(row.delivery_address_snapshot) if row.delivery_address_snapshot else None
        ),
        "pickup_location_address_snapshot": row.pickup_location_address_snapshot,
        "special_instructions": row.special_instructions,
        "rejection_reason": row.rejection_reason,
        "cancellation_reason": row.cancellation_reason,
        "accepted_at": row.accepted_at,
        "preparation_started_at": row.preparation_started_at,
        "ready_at": row.ready_at,
        "finalized_at": row.finalized_at,
        "items": await _load_items(session, row.uid),
    })
    return order


async def _load_items(session: AsyncSession, order_uid: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT i.uid AS item_uid, i.menu_item_uid, i.item_name_snapshot, i.quantity,
                   i.base_price_cents, i.total_item_price_cents, i.special_instructions,
                   op.modifier_option_uid, op.modifier_group_name_snapshot,
                   op.option_name_snapshot, op.price_adjustment_cents
            FROM order_items i
            LEFT JOIN order_item_options op ON op.order_item_uid = i.uid
            WHERE i.order_uid = :order_uid
            ORDER BY i.position, op.position
        """),
        {"order_uid": order_uid},
    )
    items: dict[str, dict] = {}
    for row in result.fetchall():
        item = items.get(row.item_uid)
        if item is None:
            item = items[row.item_uid] = {
                "menu_item_uid": row.menu_item_uid,
                "item_name": row.item_name_snapshot,
                "quantity": row.quantity,
                "base_price": float(to_amount(row.base_price_cents)),
                "total_item_price": float(to_amount(row.total_item_price_cents)),
                "special_instructions": row.special_instructions,
                "selected_options": [],
            }
        if row.modifier_option_uid:
            item["selected_options"].append({
                "modifier_option_uid": row.modifier_option_uid,
                "group_name": row.modifier_group_name_snapshot,
                "option_name": row.option_name_snapshot,
                "price_adjustment": float(to_amount(row.price_adjustment_cents)),
            })
    return list(items.values())


# ── 顧客向け ─────────────────────────────────────

async def list_customer_orders(
    session: AsyncSession,
    customer_uid: str,
    statuses: frozenset[str],
    limit: int = 20,
    offset: int = 0,
) -> list[dict]:
    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders o
            JOIN food_trucks ft ON o.food_truck_uid = ft.uid
            WHERE o.customer_user_uid = :customer_uid AND o.status IN :statuses
            ORDER BY o.order_time DESC
            LIMIT :limit OFFSET :offset
        """).bindparams(bindparam("statuses", expanding=True)),
        {"customer_uid": customer_uid, "statuses": sorted(statuses), "limit": limit, "offset": offset},
    )
    return [_summary(row, include_charge=False) for row in result.fetchall()]


async def list_active_orders(session: AsyncSession, customer_uid: str) -> list[dict]:
    """未完了の注文（確認待ちを含む）"""
    return await list_customer_orders(
        session, customer_uid, ACTIVE_STATUSES | {PENDING_CONFIRMATION}, limit=100
    )


async def list_order_history(
    session: AsyncSession, customer_uid: str, limit: int = 20, offset: int = 0
) -> list[dict]:
    return await list_customer_orders(session, customer_uid, TERMINAL_STATUSES, limit, offset)


async def get_customer_order(session: AsyncSession, customer_uid: str, order_uid: str) -> dict:
    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders o
            JOIN food_trucks ft ON o.food_truck_uid = ft.uid
            WHERE o.uid = :uid AND o.customer_user_uid = :customer_uid
        """),
        {"uid": order_uid, "customer_uid": customer_uid},
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError("Order not found or permission denied.")
    return await _detail(session, row, include_charge=False)


# ── オペレーター向け ─────────────────────────────

async def list_truck_orders(
    session: AsyncSession,
    operator_uid: str,
    statuses: frozenset[str] | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    truck_uid = await find_operator_truck_uid(session, operator_uid)
    where = "o.food_truck_uid = :truck_uid"
    params: dict = {"truck_uid": truck_uid, "limit": limit, "offset": offset}
    stmt_params = []
    if statuses:
        where += " AND o.status IN :statuses"
        params["statuses"] = sorted(statuses)
        stmt_params.append(bindparam("statuses", expanding=True))

    count = await session.execute(
        text(f"SELECT COUNT(*) AS n FROM orders o WHERE {where}").bindparams(*stmt_params),
        {k: v for k, v in params.items() if k not in ("limit", "offset")},
    )
    total = count.fetchone().n

    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders o
            JOIN food_trucks ft ON o.food_truck_uid = ft.uid
            WHERE {where}
            ORDER BY o.order_time DESC
            LIMIT :limit OFFSET :offset
        """).bindparams(*stmt_params),
        params,
    )
    return {
        "orders": [_summary(row, include_charge=True) for row in result.fetchall()],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


async def get_truck_order(session: AsyncSession, operator_uid: str, order_uid: str) -> dict:
    truck_uid = await find_operator_truck_uid(session, operator_uid)
    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders o
            JOIN food_trucks ft ON o.food_truck_uid = ft.uid
            WHERE o.uid = :uid AND o.food_truck_uid = :truck_uid
        """),
        {"uid": order_uid, "truck_uid": truck_uid},
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError("Order not found or not assigned to this truck.")
    return await _detail(session, row, include_charge=True)


async def get_order_events(session: AsyncSession, operator_uid: str, order_uid: str) -> dict:
    """監査ログと、ログから再構築した状態"""
    order = await get_truck_order(session, operator_uid, order_uid)
    events = await event_store.load_events(session, order_uid)
    history = OrderHistory.from_events(events)
    return {
        "order_uid": order_uid,
        "status": order["status"],
        "replayed_status": history.status,
        "refunded": history.refunded,
        "version": history.version,
        "events": events,
    }
