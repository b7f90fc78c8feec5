"""
Order Service — 決済ゲートウェイクライアント

Stripe の REST API（PaymentIntents / Refunds / PaymentMethods）を httpx で呼ぶ。
STRIPE_SECRET_KEY が未設定の場合は SimulatedGateway が成功を返す。

Stripe の ID は 2 種類ある:
  - PaymentIntent ID (pi_...): 決済の意図
  - Charge ID (ch_...):        実際に確定した課金。返金にはこちらを使う
両者を取り違えないよう別の型として扱う。
"""

import logging
import uuid
from dataclasses import dataclass
from typing import NewType, Protocol

import httpx

logger = logging.getLogger(__name__)

ChargeId = NewType("ChargeId", str)
PaymentIntentId = NewType("PaymentIntentId", str)
RefundId = NewType("RefundId", str)


class GatewayError(Exception):
    """ゲートウェイへのリクエスト自体が失敗した（拒否・通信エラー）"""

    def __init__(self, message: str, decline_code: str | None = None) -> None:
        super().__init__(message)
        self.decline_code = decline_code


class GatewayUnavailable(GatewayError):
    """通信エラー・タイムアウト・5xx。リクエストが処理されたかどうかわからない"""


@dataclass(frozen=True)
class ChargeResult:
    charge_id: ChargeId | None
    payment_intent_id: PaymentIntentId | None
    status: str
    amount_cents: int
    currency: str
    decline_code: str | None = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: RefundId
    charge_id: ChargeId
    amount_cents: int | None
    status: str


@dataclass(frozen=True)
class AttachedInstrument:
    method_id: str
    customer_id: str
    card_brand: str
    last4: str
    exp_month: int
    exp_year: int


class PaymentGateway(Protocol):
    charge_id_prefix: str

    async def charge(
        self,
        amount_cents: int,
        currency: str,
        instrument: str,
        customer: str | None,
        idempotency_key: str,
    ) -> ChargeResult: ...

    async def find_charge(self, idempotency_key: str) -> ChargeResult | None: ...

    async def refund(self, charge_id: ChargeId, amount_cents: int | None = None) -> RefundResult: ...

    async def attach_instrument(self, instrument: str, customer: str) -> AttachedInstrument: ...

    async def detach_instrument(self, instrument: str) -> None: ...


def _stripe_error(resp: httpx.Response) -> GatewayError:
    try:
        error = resp.json().get("error", {})
    except ValueError:
        error = {}
    message = error.get("message") or f"Stripe request failed with HTTP {resp.status_code}"
    if resp.status_code >= 500:
        return GatewayUnavailable(message)
    return GatewayError(message, decline_code=error.get("decline_code"))


def _charge_result(intent: dict, amount_cents: int, currency: str) -> ChargeResult:
    last_error = intent.get("last_payment_error") or {}
    return ChargeResult(
        charge_id=intent.get("latest_charge"),
        payment_intent_id=intent.get("id"),
        status=intent.get("status", "unknown"),
        amount_cents=intent.get("amount", amount_cents),
        currency=intent.get("currency", currency),
        decline_code=last_error.get("decline_code"),
    )


class StripeGateway:
    charge_id_prefix = "ch_"

    def __init__(self, secret_key: str, base_url: str = "https://api.stripe.com/v1", timeout: float = 30.0):
        self.secret_key = secret_key
        self.base_url = base_url
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        data: dict | None = None,
        params: dict | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.request(
                    method, f"{self.base_url}{path}", data=data, params=params, headers=headers
                )
            except httpx.HTTPError as e:
                logger.error("Stripe %s transport error: %s", path, e)
                raise GatewayUnavailable(f"Payment gateway unreachable: {e}") from e
        if resp.is_error:
            err = _stripe_error(resp)
            logger.error("Stripe %s failed (%s): %s", path, resp.status_code, err)
            raise err
        return resp.json()

    async def _post(self, path: str, data: dict | None = None, idempotency_key: str | None = None) -> dict:
        return await self._request("POST", path, data=data, idempotency_key=idempotency_key)

    async def charge(self, amount_cents, currency, instrument, customer, idempotency_key) -> ChargeResult:
        data = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "payment_method": instrument,
            "confirm": "true",
            "capture_method": "automatic",
            # 応答を受け取れなかった課金を後から検索するため
            "metadata[checkout_key]": idempotency_key,
        }
        if customer:
            data["customer"] = customer
        intent = await self._post("/payment_intents", data, idempotency_key=idempotency_key)
        logger.info("Stripe PaymentIntent %s status=%s", intent.get("id"), intent.get("status"))
        return _charge_result(intent, amount_cents, currency)

    async def find_charge(self, idempotency_key) -> ChargeResult | None:
        """課金時の冪等キーで PaymentIntent を検索する。見つからなければ None。"""
        escaped = idempotency_key.replace("'", "\\'")
        found = await self._request(
            "GET",
            "/payment_intents/search",
            params={"query": f"metadata['checkout_key']:'{escaped}'", "limit": 1},
        )
        intents = found.get("data") or []
        if not intents:
            return None
        intent = intents[0]
        return _charge_result(intent, intent.get("amount", 0), intent.get("currency", ""))

    async def refund(self, charge_id, amount_cents=None) -> RefundResult:
        data = {"charge": charge_id}
        if amount_cents is not None:
            data["amount"] = amount_cents
        refund = await self._post("/refunds", data, idempotency_key=f"refund-{charge_id}")
        logger.info("Stripe Refund %s status=%s", refund.get("id"), refund.get("status"))
        return RefundResult(
            refund_id=refund["id"],
            charge_id=refund.get("charge", charge_id),
            amount_cents=refund.get("amount"),
            status=refund.get("status", "unknown"),
        )

    async def attach_instrument(self, instrument, customer) -> AttachedInstrument:
        method = await self._post(f"/payment_methods/{instrument}/attach", {"customer": customer})
        card = method.get("card") or {}
        return AttachedInstrument(
            method_id=method["id"],
            customer_id=method.get("customer", customer),
            card_brand=card.get("brand", "unknown"),
            last4=card.get("last4", "0000"),
            exp_month=card.get("exp_month", 0),
            exp_year=card.get("exp_year", 0),
        )

    async def detach_instrument(self, instrument) -> None:
        await self._post(f"/payment_methods/{instrument}/detach")
        logger.info("Stripe PaymentMethod detached: %s", instrument)


class SimulatedGateway:
    """開発用。すべての操作が成功する。"""

    charge_id_prefix = "sim_ch_"

    async def charge(self, amount_cents, currency, instrument, customer, idempotency_key) -> ChargeResult:
        logger.warning("Stripe not configured; simulating successful charge of %s %s", amount_cents, currency)
        suffix = uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex
        return ChargeResult(
            charge_id=ChargeId(f"sim_ch_{suffix}"),
            payment_intent_id=PaymentIntentId(f"sim_pi_{suffix}"),
            status="succeeded",
            amount_cents=amount_cents,
            currency=currency,
        )

    async def find_charge(self, idempotency_key) -> ChargeResult | None:
        return None

    async def refund(self, charge_id, amount_cents=None) -> RefundResult:
        logger.warning("Stripe not configured; simulating refund for charge %s", charge_id)
        return RefundResult(
            refund_id=RefundId(f"sim_re_{uuid.uuid4().hex}"),
            charge_id=charge_id,
            amount_cents=amount_cents,
            status="succeeded",
        )

    async def attach_instrument(self, instrument, customer) -> AttachedInstrument:
        return AttachedInstrument(
            method_id=instrument,
            customer_id=customer,
            card_brand="visa",
            last4="4242",
            exp_month=12,
            exp_year=2030,
        )

    async def detach_instrument(self, instrument) -> None:
        logger.warning("Stripe not configured; simulating detach of %s", instrument)
