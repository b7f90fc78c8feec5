"""
Order Service — 注文の状態機械

状態遷移:
    pending_confirmation → accepted | rejected
    accepted             → preparing | cancelled | cancellation_requested (顧客)
    preparing            → ready_for_pickup (pickup) | out_for_delivery (delivery) | cancelled
    ready_for_pickup     → completed | cancelled
    out_for_delivery     → delivered | cancelled
    cancellation_requested → cancelled | accepted

completed / delivered / rejected / cancelled は吸収状態（以降の遷移なし）。
rejected / cancelled への遷移は全額返金を伴う（commands.py）。
"""

from enum import Enum

from .errors import InvalidTransition, ValidationError
from .events import ORDER_CANCELLATION_REQUESTED, ORDER_PLACED, ORDER_STATUS_CHANGED

PENDING_CONFIRMATION = "pending_confirmation"
ACCEPTED = "accepted"
PREPARING = "preparing"
READY_FOR_PICKUP = "ready_for_pickup"
OUT_FOR_DELIVERY = "out_for_delivery"
COMPLETED = "completed"
DELIVERED = "delivered"
REJECTED = "rejected"
CANCELLED = "cancelled"
CANCELLATION_REQUESTED = "cancellation_requested"

PICKUP = "pickup"
DELIVERY = "delivery"
FULFILLMENT_TYPES = frozenset({PICKUP, DELIVERY})


class Actor(str, Enum):
    OPERATOR = "operator"
    CUSTOMER = "customer"


ALL_STATUSES = frozenset({
    PENDING_CONFIRMATION, ACCEPTED, PREPARING, READY_FOR_PICKUP, OUT_FOR_DELIVERY,
    COMPLETED, DELIVERED, REJECTED, CANCELLED, CANCELLATION_REQUESTED,
})
TERMINAL_STATUSES = frozenset({COMPLETED, DELIVERED, REJECTED, CANCELLED})
ACTIVE_STATUSES = frozenset({ACCEPTED, PREPARING, READY_FOR_PICKUP, OUT_FOR_DELIVERY, CANCELLATION_REQUESTED})
COMPENSATED_STATUSES = frozenset({REJECTED, CANCELLED})
REASON_REQUIRED = COMPENSATED_STATUSES

# from → {to: 遷移を起こせる主体}
TRANSITIONS: dict[str, dict[str, Actor]] = {
    PENDING_CONFIRMATION: {ACCEPTED: Actor.OPERATOR, REJECTED: Actor.OPERATOR},
    ACCEPTED: {
        PREPARING: Actor.OPERATOR,
        CANCELLED: Actor.OPERATOR,
        CANCELLATION_REQUESTED: Actor.CUSTOMER,
    },
    PREPARING: {
        READY_FOR_PICKUP: Actor.OPERATOR,
        OUT_FOR_DELIVERY: Actor.OPERATOR,
        CANCELLED: Actor.OPERATOR,
    },
    READY_FOR_PICKUP: {COMPLETED: Actor.OPERATOR, CANCELLED: Actor.OPERATOR},
    OUT_FOR_DELIVERY: {DELIVERED: Actor.OPERATOR, CANCELLED: Actor.OPERATOR},
    CANCELLATION_REQUESTED: {CANCELLED: Actor.OPERATOR, ACCEPTED: Actor.OPERATOR},
}

# preparing からの次の状態は受け取り方法で決まる
_FULFILLMENT_ONLY = {READY_FOR_PICKUP: PICKUP, OUT_FOR_DELIVERY: DELIVERY}


def allowed_targets(current: str, fulfillment_type: str, actor: Actor) -> frozenset[str]:
    targets = TRANSITIONS.get(current, {})
    return frozenset(
        target
        for target, who in targets.items()
        if who == actor and _FULFILLMENT_ONLY.get(target, fulfillment_type) == fulfillment_type
    )


def is_valid_transition(current: str, target: str, fulfillment_type: str, actor: Actor) -> bool:
    return target in allowed_targets(current, fulfillment_type, actor)


def check_transition(
    current: str,
    target: str,
    fulfillment_type: str,
    actor: Actor,
    reason: str | None = None,
) -> None:
    """
    遷移を検証する。

    Raises:
        ValidationError: 未知の状態・理由の欠落
        InvalidTransition: 遷移表にない遷移
    """
    if target not in ALL_STATUSES:
        raise ValidationError(f"Invalid target status: {target}")
    if not is_valid_transition(current, target, fulfillment_type, actor):
        raise InvalidTransition(f"Invalid status transition from '{current}' to '{target}'.")
    if target in REASON_REQUIRED and not (reason and reason.strip()):
        raise ValidationError(f"Reason is required for status '{target}'.")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


class OrderHistory:
    """
    監査ログのイベント列から注文の状態を再構築する。
    ログとテーブルの突き合わせや、履歴の表示に使う。
    """

    def __init__(self) -> None:
        self.order_uid: str | None = None
        self.status: str = "unknown"
        self.refunded: bool = False
        self.version: int = 0
        self.transitions: list[tuple[str, str]] = []

    def apply_order_placed(self, data: dict) -> None:
        self.order_uid = data["order_uid"]
        self.status = PENDING_CONFIRMATION

    def apply_status_changed(self, data: dict) -> None:
        self.transitions.append((data["from_status"], data["to_status"]))
        self.status = data["to_status"]
        if data.get("refund_id"):
            self.refunded = True

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            ORDER_PLACED: self.apply_order_placed,
            ORDER_STATUS_CHANGED: self.apply_status_changed,
            ORDER_CANCELLATION_REQUESTED: self.apply_status_changed,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderHistory":
        history = cls()
        for e in events:
            history.apply_event(e["event_type"], e["event_data"])
            history.version = e["version"]
        return history
