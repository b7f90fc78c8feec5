"""
Order Service — 状態遷移コマンド

注文作成後の変更はすべてここを通る。各コマンドは:

1. 注文行をロック (SELECT ... FOR UPDATE)
2. 遷移表で現在の状態からの遷移を検証
3. 遷移ごとに決まった UPDATE を実行し、該当するタイムスタンプを記録
4. rejected / cancelled なら保存済みの課金 ID で全額返金
5. イベントログに追記してコミット
6. コミット後に通知

返金が失敗した場合はトランザクション全体をロールバックする。
「キャンセルされたと通知されたのに返金されていない」状態は作らない。
"""

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .checkout import load_customer
from .db import for_update, now_ms
from .errors import InvalidTransition, NotFoundError
from .events import (
    ORDER_CANCELLATION_REQUESTED,
    ORDER_STATUS_CHANGED,
    CustomerCancellationRequest,
    OrderStatusUpdateForCustomer,
)
from .notifications import NotificationDispatcher
from .payments import PaymentOrchestrator
from .state_machine import (
    ACCEPTED,
    CANCELLATION_REQUESTED,
    CANCELLED,
    COMPENSATED_STATUSES,
    COMPLETED,
    DELIVERED,
    OUT_FOR_DELIVERY,
    PENDING_CONFIRMATION,
    PREPARING,
    READY_FOR_PICKUP,
    REJECTED,
    Actor,
    check_transition,
    is_valid_transition,
)
from .trucks import find_operator_truck_uid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusUpdate:
    order_uid: str
    new_status: str
    reason: str | None = None
    updated_estimated_ready_time: int | None = None
    updated_estimated_delivery_time: int | None = None


@dataclass(frozen=True)
class TransitionResult:
    order_uid: str
    order_number: str
    previous_status: str
    status: str
    updated_at: int
    estimated_ready_time: int | None
    estimated_delivery_time: int | None
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    refund_id: str | None = None


# ── 遷移ごとの UPDATE ────────────────────────────
# 遷移先ごとに固定の文を持ち、リクエストからカラム名を組み立てることはしない。

_ACCEPT = text("""
    UPDATE orders
    SET status = :status,
        accepted_at = COALESCE(accepted_at, :now),
        estimated_ready_time = COALESCE(:ready, estimated_ready_time),
        estimated_delivery_time = COALESCE(:delivery, estimated_delivery_time),
        updated_at = :now
    WHERE uid = :uid
""")
_START_PREPARATION = text("""
    UPDATE orders SET status = :status, preparation_started_at = :now, updated_at = :now
    WHERE uid = :uid
""")
_MARK_READY = text("""
    UPDATE orders SET status = :status, ready_at = :now, updated_at = :now
    WHERE uid = :uid
""")
_FINALIZE = text("""
    UPDATE orders SET status = :status, finalized_at = :now, updated_at = :now
    WHERE uid = :uid
""")
_REJECT = text("""
    UPDATE orders SET status = :status, rejection_reason = :reason, finalized_at = :now, updated_at = :now
    WHERE uid = :uid
""")
_CANCEL = text("""
    UPDATE orders SET status = :status, cancellation_reason = :reason, finalized_at = :now, updated_at = :now
    WHERE uid = :uid
""")
_REQUEST_CANCELLATION = text("""
    UPDATE orders SET status = :status, updated_at = :now
    WHERE uid = :uid
""")
_RECORD_REFUND = text("""
    UPDATE orders SET refunded = TRUE, refund_id = :refund_id
    WHERE uid = :uid AND refunded = FALSE
""")

_UPDATES = {
    ACCEPTED: _ACCEPT,
    PREPARING: _START_PREPARATION,
    READY_FOR_PICKUP: _MARK_READY,
    OUT_FOR_DELIVERY: _MARK_READY,
    COMPLETED: _FINALIZE,
    DELIVERED: _FINALIZE,
    REJECTED: _REJECT,
    CANCELLED: _CANCEL,
    CANCELLATION_REQUESTED: _REQUEST_CANCELLATION,
}


async def _lock_order(session: AsyncSession, order_uid: str, scope_column: str, scope_value: str):
    result = await session.execute(
        text(f"""
            SELECT o.uid, o.order_number, o.status, o.fulfillment_type, o.customer_user_uid,
                   o.total_cents, o.payment_charge_id, o.refunded,
                   o.estimated_ready_time, o.estimated_delivery_time,
                   ft.operator_user_uid
            FROM orders o
            JOIN food_trucks ft ON o.food_truck_uid = ft.uid
            WHERE o.uid = :uid AND o.{scope_column} = :scope{for_update(session)}
        """),
        {"uid": order_uid, "scope": scope_value},
    )
    return result.fetchone()


async def update_status(
    session: AsyncSession,
    payments: PaymentOrchestrator,
    dispatcher: NotificationDispatcher,
    operator_uid: str,
    update: StatusUpdate,
) -> TransitionResult:
    """
    オペレーターによる状態更新コマンド

    Raises:
        NotFoundError: 自分のトラックの注文ではない
        ValidationError: 未知の状態・理由の欠落
        InvalidTransition: 遷移表にない遷移
        RefundError: 返金失敗（状態は変わらない）
    """
    async with session.begin():
        truck_uid = await find_operator_truck_uid(session, operator_uid)
        order = await _lock_order(session, update.order_uid, "food_truck_uid", truck_uid)
        if not order:
            raise NotFoundError("Order not found or not assigned to this truck.")

        check_transition(order.status, update.new_status, order.fulfillment_type, Actor.OPERATOR, update.reason)

        now = now_ms()
        estimates_allowed = order.status == PENDING_CONFIRMATION and update.new_status == ACCEPTED
        await session.execute(
            _UPDATES[update.new_status],
            {
                "uid": order.uid,
                "status": update.new_status,
                "now": now,
                "reason": update.reason,
                "ready": update.updated_estimated_ready_time if estimates_allowed else None,
                "delivery": update.updated_estimated_delivery_time if estimates_allowed else None,
            },
        )

        refund_id = None
        if update.new_status in COMPENSATED_STATUSES and not order.refunded:
            # 失敗すると RefundError が送出され、上の UPDATE ごとロールバックされる
            refund = await payments.refund(order.payment_charge_id, order.total_cents)
            refund_id = refund.refund_id
            await session.execute(_RECORD_REFUND, {"uid": order.uid, "refund_id": refund_id})

        version = await event_store.current_version(session, order.uid)
        await event_store.append_event(
            session,
            order.uid,
            ORDER_STATUS_CHANGED,
            {
                "from_status": order.status,
                "to_status": update.new_status,
                "actor": Actor.OPERATOR.value,
                "reason": update.reason,
                "refund_id": refund_id,
            },
            version,
        )

        final = await session.execute(
            text("""
                SELECT estimated_ready_time, estimated_delivery_time, rejection_reason, cancellation_reason
                FROM orders WHERE uid = :uid
            """),
            {"uid": order.uid},
        )
        row = final.fetchone()

    logger.info(
        "Order %s: %s -> %s (refund=%s)", order.uid, order.status, update.new_status, refund_id
    )
    result = TransitionResult(
        order_uid=order.uid,
        order_number=order.order_number,
        previous_status=order.status,
        status=update.new_status,
        updated_at=now,
        estimated_ready_time=row.estimated_ready_time,
        estimated_delivery_time=row.estimated_delivery_time,
        rejection_reason=row.rejection_reason,
        cancellation_reason=row.cancellation_reason,
        refund_id=refund_id,
    )

    # ── コミット後の通知 (ベストエフォート) ─────
    try:
        customer = await load_customer(session, order.customer_user_uid)
        await dispatcher.status_changed(
            order.customer_user_uid,
            customer["email"],
            OrderStatusUpdateForCustomer(
                order_uid=result.order_uid,
                order_number=result.order_number,
                new_status=result.status,
                rejection_reason=result.rejection_reason,
                cancellation_reason=result.cancellation_reason,
                updated_estimated_ready_time=result.estimated_ready_time,
                updated_estimated_delivery_time=result.estimated_delivery_time,
            ),
            update.reason,
        )
    except Exception:
        logger.exception("Post-commit notification failed for order %s", order.uid)
    return result


async def request_cancellation(
    session: AsyncSession,
    dispatcher: NotificationDispatcher,
    customer_uid: str,
    order_uid: str,
) -> TransitionResult:
    """
    顧客によるキャンセル依頼コマンド

    accepted の注文だけが対象。オペレーターが承認 (→ cancelled) するか
    却下 (→ accepted) するまで cancellation_requested に留まる。
    """
    async with session.begin():
        order = await _lock_order(session, order_uid, "customer_user_uid", customer_uid)
        if not order:
            raise NotFoundError("Order not found or permission denied.")
        if not is_valid_transition(order.status, CANCELLATION_REQUESTED, order.fulfillment_type, Actor.CUSTOMER):
            raise InvalidTransition(f"Order cannot be cancelled at this stage (status: {order.status}).")

        now = now_ms()
        await session.execute(
            _REQUEST_CANCELLATION,
            {"uid": order.uid, "status": CANCELLATION_REQUESTED, "now": now},
        )
        version = await event_store.current_version(session, order.uid)
        await event_store.append_event(
            session,
            order.uid,
            ORDER_CANCELLATION_REQUESTED,
            {
                "from_status": order.status,
                "to_status": CANCELLATION_REQUESTED,
                "actor": Actor.CUSTOMER.value,
            },
            version,
        )

    logger.info("Order %s: cancellation requested by customer %s", order.uid, customer_uid)
    await dispatcher.cancellation_requested(
        order.operator_user_uid,
        CustomerCancellationRequest(order_uid=order.uid, order_number=order.order_number),
    )
    return TransitionResult(
        order_uid=order.uid,
        order_number=order.order_number,
        previous_status=order.status,
        status=CANCELLATION_REQUESTED,
        updated_at=now,
        estimated_ready_time=order.estimated_ready_time,
        estimated_delivery_time=order.estimated_delivery_time,
    )
