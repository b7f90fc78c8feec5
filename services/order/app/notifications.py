"""
Order Service — 通知ディスパッチャー

コミット成功後にだけ呼ばれる純粋なファンアウト。

  - リアルタイム: Redis Pub/Sub で相手ユーザーのチャネル (user:<role>_<uid>) に publish。
    WebSocket で接続中のセッションが購読している（realtime.py）。
  - メール: SendGrid。未設定ならスキップ。

どちらもベストエフォート。失敗はログに残すだけで、再試行も、
コミット済みの注文状態への影響もない。
"""

import json
import logging
from typing import Protocol

import httpx
import redis.asyncio as aioredis
from pydantic import BaseModel

from .events import (
    CustomerCancellationRequest,
    NewOrderForOperator,
    OrderStatusUpdateForCustomer,
    envelope,
)
from .money import format_amount

logger = logging.getLogger(__name__)

CUSTOMER = "customer"
OPERATOR = "operator"


def user_channel(role: str, user_uid: str) -> str:
    return f"user:{role}_{user_uid}"


class Mailer(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None: ...


class SendGridMailer:
    url = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str, sender: str, timeout: float = 30.0):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def send(self, to: str, subject: str, body: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                self.url,
                json={
                    "personalizations": [{"to": [{"email": to}], "subject": subject}],
                    "from": {"email": self.sender},
                    "content": [{"type": "text/plain", "value": body}],
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
        logger.info("Email queued via SendGrid to %s", to)


class SkippingMailer:
    """SendGrid 未設定時。送信せずに警告だけ出す。"""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.warning("SendGrid not configured; skipping email to %s (%s)", to, subject)


_STATUS_EMAILS = {
    "rejected": ("Order #{number} Rejected", "Unfortunately, your order was rejected. Reason: {reason}"),
    "cancelled": (
        "Order #{number} Cancelled",
        "Your order has been cancelled. Reason: {reason}. A refund has been issued.",
    ),
    "ready_for_pickup": ("Order #{number} Ready for Pickup!", "Your order is now ready for pickup."),
    "out_for_delivery": ("Order #{number} Out for Delivery!", "Your order is on its way!"),
}


class NotificationDispatcher:
    def __init__(self, redis: aioredis.Redis, mailer: Mailer):
        self.redis = redis
        self.mailer = mailer

    async def push(self, role: str, user_uid: str, payload: BaseModel) -> None:
        message = envelope(payload)
        try:
            await self.redis.publish(user_channel(role, user_uid), json.dumps(message, default=str))
            logger.info("Pushed %s to %s_%s", message["event"], role, user_uid)
        except Exception:
            logger.exception("Failed to push %s to %s_%s", message["event"], role, user_uid)

    async def email(self, to: str | None, subject: str, body: str) -> None:
        if not to:
            return
        try:
            await self.mailer.send(to, subject, body)
        except Exception:
            logger.exception("Failed to send email to %s (%s)", to, subject)

    # ── 注文イベントごとの通知 ───────────────────

    async def order_placed(
        self,
        operator_uid: str,
        payload: NewOrderForOperator,
        customer_email: str | None,
        truck_name: str,
        total_cents: int,
    ) -> None:
        await self.push(OPERATOR, operator_uid, payload)
        await self.email(
            customer_email,
            f"Your StreetEats Hub Order #{payload.order_number} Confirmed!",
            (
                "Thank you for your order!\n\n"
                f"Order Number: {payload.order_number}\n"
                f"Truck: {truck_name}\n"
                f"Total: {format_amount(total_cents)}\n"
                f"Type: {payload.fulfillment_type}\n\n"
                "You can track your order status in the app."
            ),
        )

    async def status_changed(
        self,
        customer_uid: str,
        customer_email: str | None,
        payload: OrderStatusUpdateForCustomer,
        reason: str | None,
    ) -> None:
        await self.push(CUSTOMER, customer_uid, payload)
        template = _STATUS_EMAILS.get(payload.new_status)
        if template:
            subject, body = template
            await self.email(
                customer_email,
                subject.format(number=payload.order_number),
                body.format(reason=reason),
            )

    async def cancellation_requested(self, operator_uid: str, payload: CustomerCancellationRequest) -> None:
        await self.push(OPERATOR, operator_uid, payload)
