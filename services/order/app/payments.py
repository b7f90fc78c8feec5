"""
Order Service — 決済オーケストレーター

1. 支払い手段の解決: 保存済み（本人のもの）か、新しいゲートウェイトークン
2. 合計金額（セント）を同期的に課金する（冪等キー付き）
3. 保存を希望された場合、課金成功後にゲートウェイの顧客に紐付けて
   ローカルに参照を記録する（失敗してもログのみ。注文は失敗させない）
4. 状態機械から呼ばれる返金
5. 結果不明の課金の照会（突き合わせの sweep から）
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .db import now_ms
from .errors import NotFoundError, PaymentError, PaymentPending, RefundError, ValidationError
from .gateway import (
    ChargeId,
    ChargeResult,
    GatewayError,
    GatewayUnavailable,
    PaymentGateway,
    PaymentIntentId,
    RefundResult,
)

logger = logging.getLogger(__name__)

REFUND_OK_STATUSES = ("succeeded", "pending")
# まだ確定していない（後で succeeded になりうる）
UNSETTLED_STATUSES = ("processing",)
# 課金されていないことが確定している
NOT_CHARGED_STATUSES = ("requires_payment_method", "requires_confirmation", "requires_action", "canceled")


@dataclass(frozen=True)
class PaymentMethodRequest:
    payment_method_uid: str | None = None
    payment_method_token: str | None = None
    save_method: bool = False


@dataclass(frozen=True)
class ResolvedInstrument:
    instrument: str
    gateway_customer_id: str | None
    save: bool


@dataclass(frozen=True)
class CapturedCharge:
    charge_id: ChargeId
    payment_intent_id: PaymentIntentId | None
    amount_cents: int
    status: str


class PaymentOrchestrator:
    def __init__(self, gateway: PaymentGateway, currency: str = "usd"):
        self.gateway = gateway
        self.currency = currency

    # ── 支払い手段 ───────────────────────────────

    async def resolve_instrument(
        self,
        session: AsyncSession,
        customer_uid: str,
        method: PaymentMethodRequest,
    ) -> ResolvedInstrument:
        result = await session.execute(
            text("""
                SELECT payment_gateway_customer_id FROM payment_methods
                WHERE customer_user_uid = :uid
                ORDER BY created_at ASC
                LIMIT 1
            """),
            {"uid": customer_uid},
        )
        row = result.fetchone()
        gateway_customer_id = row.payment_gateway_customer_id if row else None

        if method.payment_method_uid:
            result = await session.execute(
                text("""
                    SELECT payment_gateway_method_id, payment_gateway_customer_id
                    FROM payment_methods
                    WHERE uid = :uid AND customer_user_uid = :customer_uid
                """),
                {"uid": method.payment_method_uid, "customer_uid": customer_uid},
            )
            saved = result.fetchone()
            if not saved:
                raise NotFoundError("Saved payment method not found.")
            if saved.payment_gateway_customer_id != gateway_customer_id:
                logger.error(
                    "Payment method %s belongs to gateway customer %s, expected %s",
                    method.payment_method_uid, saved.payment_gateway_customer_id, gateway_customer_id,
                )
                raise PaymentError("Payment method customer mismatch.")
            return ResolvedInstrument(
                instrument=saved.payment_gateway_method_id,
                gateway_customer_id=gateway_customer_id,
                save=False,
            )

        if not method.payment_method_token:
            raise ValidationError("Payment method selection or token is required.")

        save = method.save_method
        if save and not gateway_customer_id:
            logger.warning("No gateway customer for %s; payment method will not be saved", customer_uid)
            save = False
        return ResolvedInstrument(
            instrument=method.payment_method_token,
            gateway_customer_id=gateway_customer_id,
            save=save,
        )

    # ── 課金 ─────────────────────────────────────

    async def charge(
        self,
        resolved: ResolvedInstrument,
        amount_cents: int,
        idempotency_key: str,
    ) -> CapturedCharge:
        """
        合計金額を課金する。

        ゲートウェイが拒否した場合は PaymentError。
        結果がわからない場合（通信エラー・processing・charge ID なし）は PaymentPending。
        """
        try:
            result = await self.gateway.charge(
                amount_cents,
                self.currency,
                resolved.instrument,
                resolved.gateway_customer_id,
                idempotency_key,
            )
        except GatewayUnavailable as e:
            logger.error("Charge outcome unknown for %s: %s", idempotency_key, e)
            raise PaymentPending(f"Payment could not be confirmed: {e}") from e
        except GatewayError as e:
            reason = f" ({e.decline_code})" if e.decline_code else ""
            raise PaymentError(f"Payment failed: {e}{reason}") from e

        if result.status == "requires_action":
            raise PaymentError("Payment failed: payment requires additional authentication (e.g., 3D Secure).")
        if result.status in UNSETTLED_STATUSES:
            raise PaymentPending(
                f"Payment is still {result.status}; it will be refunded if it completes.",
                payment_intent_id=result.payment_intent_id,
                charge_id=result.charge_id,
            )
        if result.status != "succeeded":
            reason = f" ({result.decline_code})" if result.decline_code else ""
            raise PaymentError(f"Payment failed with status: {result.status}{reason}")
        if not result.charge_id:
            logger.error("PaymentIntent %s succeeded but charge ID missing", result.payment_intent_id)
            raise PaymentPending(
                "Payment succeeded but the charge could not be confirmed; it will be refunded.",
                payment_intent_id=result.payment_intent_id,
            )

        logger.info("Charged %s cents, charge=%s", amount_cents, result.charge_id)
        return CapturedCharge(
            charge_id=result.charge_id,
            payment_intent_id=result.payment_intent_id,
            amount_cents=amount_cents,
            status=result.status,
        )

    async def save_instrument(
        self,
        session_factory: sessionmaker,
        customer_uid: str,
        resolved: ResolvedInstrument,
    ) -> None:
        """課金成功後の支払い手段の保存（ベストエフォート）"""
        if not resolved.save or not resolved.gateway_customer_id:
            return
        try:
            attached = await self.gateway.attach_instrument(resolved.instrument, resolved.gateway_customer_id)
            now = now_ms()
            async with session_factory() as session, session.begin():
                await session.execute(
                    text("""
                        INSERT INTO payment_methods
                            (uid, customer_user_uid, payment_gateway_customer_id, payment_gateway_method_id,
                             card_type, last_4_digits, expiry_month, expiry_year, created_at, updated_at)
                        VALUES
                            (:uid, :customer_uid, :gateway_customer_id, :method_id,
                             :card_type, :last4, :exp_month, :exp_year, :now, :now)
                        ON CONFLICT (payment_gateway_method_id) DO NOTHING
                    """),
                    {
                        "uid": str(uuid.uuid4()),
                        "customer_uid": customer_uid,
                        "gateway_customer_id": attached.customer_id,
                        "method_id": attached.method_id,
                        "card_type": attached.card_brand,
                        "last4": attached.last4,
                        "exp_month": attached.exp_month,
                        "exp_year": attached.exp_year,
                        "now": now,
                    },
                )
            logger.info("Saved payment method %s for customer %s", attached.method_id, customer_uid)
        except Exception:
            logger.exception("Failed to save payment method after successful charge")

    async def find_charge(self, idempotency_key: str) -> ChargeResult | None:
        """結果不明の課金をゲートウェイに問い合わせる（GatewayError はそのまま送出）"""
        return await self.gateway.find_charge(idempotency_key)

    # ── 返金 ─────────────────────────────────────

    async def refund(self, charge_id: str | None, amount_cents: int | None = None) -> RefundResult:
        """
        課金を返金する。

        課金 ID がない・形式が不正な場合は、そもそも課金が確定していないことを意味するので
        RefundError とする。
        """
        if not charge_id or not charge_id.startswith(self.gateway.charge_id_prefix):
            logger.error("Invalid charge reference for refund: %r", charge_id)
            raise RefundError("Invalid charge reference; the order was never captured.")
        try:
            result = await self.gateway.refund(ChargeId(charge_id), amount_cents)
        except GatewayError as e:
            raise RefundError(f"Refund failed: {e}") from e
        if result.status not in REFUND_OK_STATUSES:
            raise RefundError(f"Refund failed with status: {result.status}")
        logger.info("Refunded charge %s (refund=%s)", charge_id, result.refund_id)
        return result
