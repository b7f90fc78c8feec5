"""
Order Service — イベント定義

2 種類のイベントを定義する:
  - 監査ログのイベント型 (order_events テーブル): 過去形で命名
  - リアルタイム配信のペイロード: {event, data} で包んでユーザーのチャネルに送る
"""

from pydantic import BaseModel

# ── 監査ログのイベント型 ─────────────────────────

ORDER_PLACED = "OrderPlaced"
ORDER_STATUS_CHANGED = "OrderStatusChanged"
ORDER_CANCELLATION_REQUESTED = "OrderCancellationRequested"


# ── リアルタイム配信ペイロード ────────────────────

class NewOrderForOperator(BaseModel):
    """トラックのオペレーターに新しい注文を通知する"""
    order_uid: str
    order_number: str
    customer_name: str
    status: str
    fulfillment_type: str
    total_amount: float
    order_time: int
    delivery_address_snippet: str | None = None


class OrderStatusUpdateForCustomer(BaseModel):
    """顧客に注文の状態・予定時刻の変化を通知する"""
    order_uid: str
    order_number: str
    new_status: str
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    updated_estimated_ready_time: int | None = None
    updated_estimated_delivery_time: int | None = None


class CustomerCancellationRequest(BaseModel):
    """顧客が受付済みの注文のキャンセルを依頼した"""
    order_uid: str
    order_number: str


EVENT_NAMES = {
    NewOrderForOperator: "new_order_for_operator",
    OrderStatusUpdateForCustomer: "order_status_update_for_customer",
    CustomerCancellationRequest: "customer_cancellation_request",
}


def envelope(payload: BaseModel) -> dict:
    return {"event": EVENT_NAMES[type(payload)], "data": payload.model_dump()}
