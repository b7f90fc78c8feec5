"""
Order Service — チェックアウト（注文トランザクションの調整役）

「完全に有効で課金済みの注文が存在する」か「何も存在しない」かのどちらか。

外部 API（決済・ジオコーディング）の呼び出し中にトラック行のロックを保持すると、
ゲートウェイの遅延でそのトラックへの全チェックアウトが直列化してしまう。
そのため、課金はロックの外で行い、コミット時にロックを取って再検証する。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 検証 (ロックなし)                                        │
  │     トラック online 確認 → 価格計算 → 配達先解決 → 税・合計   │
  │     ここでの失敗は課金前                                     │
  │  2. 冪等キーで既存注文を確認 → あればそれを返す              │
  │  3. 課金 (ロックなし, 冪等キー付き)                          │
  │     前回の試行が台帳にあればキーに retry-N を付ける          │
  │     結果不明 → 台帳に unconfirmed で記録 → 再送出            │
  │  4. コミット (1 トランザクション)                            │
  │     トラック行ロック → online 再確認 → 価格・配達条件の再検証 │
  │     → 注文・明細・オプション・イベントを INSERT → COMMIT     │
  │     ├─ 成功 → 支払い手段の保存 (任意) → 通知                │
  │     └─ 失敗 → 返金 (補償) + 突き合わせ台帳に記録 → 再送出  │
  └──────────────────────────────────────────────────────────────┘
"""

import json
import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import event_store, reconciliation
from .db import now_ms
from .delivery import DeliveryAddress, DeliveryResolution, check_delivery_rules, resolve_delivery
from .errors import (
    AvailabilityConflict,
    DeliveryConflict,
    PaymentError,
    PaymentPending,
    RefundError,
    TruckUnavailable,
    ValidationError,
)
from .events import ORDER_PLACED, NewOrderForOperator
from .geocoding import Geocoder
from .money import tax_cents, to_amount
from .notifications import NotificationDispatcher
from .payments import CapturedCharge, PaymentMethodRequest, PaymentOrchestrator, ResolvedInstrument
from .pricing import CartLine, PricedCart, price_cart
from .state_machine import DELIVERY, FULFILLMENT_TYPES, PENDING_CONFIRMATION, PICKUP
from .trucks import Truck, load_truck

logger = logging.getLogger(__name__)

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class CheckoutRequest:
    customer_uid: str
    truck_uid: str
    fulfillment_type: str
    items: tuple[CartLine, ...]
    payment_method: PaymentMethodRequest
    idempotency_key: str
    delivery_address: DeliveryAddress | None = None


@dataclass(frozen=True)
class Quote:
    """検証フェーズの結果。課金額はここで確定する。"""
    truck: Truck
    cart: PricedCart
    delivery: DeliveryResolution | None
    delivery_fee_cents: int
    tax_cents: int
    instrument: ResolvedInstrument

    @property
    def total_cents(self) -> int:
        return self.cart.subtotal_cents + self.tax_cents + self.delivery_fee_cents


@dataclass(frozen=True)
class PlacedOrder:
    order_uid: str
    order_number: str
    status: str
    fulfillment_type: str
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    total_cents: int
    order_time: int
    estimated_ready_time: int | None
    estimated_delivery_time: int | None
    pickup_location_address_snapshot: str | None
    delivery_address_snapshot: dict | None
    replayed: bool = False


def generate_order_number() -> str:
    return "STX-" + "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))


def _validate_request(req: CheckoutRequest) -> None:
    """副作用の前に検出できる入力不正"""
    if not req.truck_uid:
        raise ValidationError("Missing required order field: food_truck_uid.")
    if req.fulfillment_type not in FULFILLMENT_TYPES:
        raise ValidationError("Invalid fulfillment type.")
    if not req.items:
        raise ValidationError("Order must contain at least one item.")
    if req.fulfillment_type == DELIVERY and req.delivery_address is None:
        raise ValidationError("Delivery address is required for delivery orders.")
    if not req.payment_method.payment_method_uid and not req.payment_method.payment_method_token:
        raise ValidationError("Payment method selection or token is required.")
    if not req.idempotency_key:
        raise ValidationError("Idempotency key is required.")


class CheckoutCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker,
        payments: PaymentOrchestrator,
        geocoder: Geocoder,
        dispatcher: NotificationDispatcher,
        tax_rate: Decimal,
        default_preparation_minutes: int = 15,
        delivery_buffer_minutes: int = 15,
    ):
        self.session_factory = session_factory
        self.payments = payments
        self.geocoder = geocoder
        self.dispatcher = dispatcher
        self.tax_rate = tax_rate
        self.default_preparation_minutes = default_preparation_minutes
        self.delivery_buffer_minutes = delivery_buffer_minutes

    async def place_order(self, req: CheckoutRequest) -> PlacedOrder:
        _validate_request(req)
        # 冪等キーは顧客ごとの名前空間に入れる
        key = f"{req.customer_uid}:{req.idempotency_key}"

        # ── Step 1-2: 検証 (ロックなし) ─────────────
        async with self.session_factory() as session:
            existing = await find_order_by_idempotency_key(session, key)
            if existing:
                logger.info("Idempotent replay of checkout %s -> order %s", key, existing.order.order_uid)
                return existing.order
            quote = await self._quote(session, req)
            # 前回の課金が返金・保留されている場合、同じキーではゲートウェイが
            # その課金を返してしまうので、試行ごとに別のキーを使う
            attempts = await reconciliation.count_attempts(session, key)
        gateway_key = key if attempts == 0 else f"{key}:retry-{attempts}"

        # ── Step 3: 課金 (ロックなし) ────────────────
        try:
            charge = await self.payments.charge(quote.instrument, quote.total_cents, gateway_key)
        except PaymentPending as e:
            await self._flag_unconfirmed(req, quote, key, gateway_key, e)
            raise

        async with self.session_factory() as session:
            if await reconciliation.is_flagged(session, charge.charge_id):
                logger.error("Gateway returned already-reconciled charge %s for %s", charge.charge_id, gateway_key)
                raise PaymentError("Payment was already refunded for this checkout; please try again.")

        # ── Step 4: コミット ────────────────────────
        try:
            placed = await self._commit(req, quote, charge, key)
        except IntegrityError as e:
            # 同じ冪等キーの並行リクエストが先にコミットした場合は同じ課金の注文がある
            async with self.session_factory() as session:
                existing = await find_order_by_idempotency_key(session, key)
            if existing and existing.charge_id == charge.charge_id:
                return existing.order
            await self._compensate(req, charge, key, gateway_key, e)
            raise
        except Exception as e:
            await self._compensate(req, charge, key, gateway_key, e)
            raise

        # ── Step 5: コミット後 (結果には影響しない) ──
        await self.payments.save_instrument(self.session_factory, req.customer_uid, quote.instrument)
        await self._notify(req, quote.truck, placed)
        return placed

    # ── 検証フェーズ ─────────────────────────────

    async def _quote(self, session: AsyncSession, req: CheckoutRequest) -> Quote:
        truck = await load_truck(session, req.truck_uid)
        if not truck.is_online:
            raise TruckUnavailable(
                f"Truck '{truck.name}' is currently {truck.current_status} and not accepting orders."
            )

        cart = await price_cart(session, truck.uid, list(req.items))

        delivery = None
        delivery_fee = 0
        if req.fulfillment_type == DELIVERY:
            delivery = await resolve_delivery(
                session, self.geocoder, truck, req.customer_uid, req.delivery_address, cart.subtotal_cents
            )
            delivery_fee = delivery.delivery_fee_cents

        instrument = await self.payments.resolve_instrument(session, req.customer_uid, req.payment_method)

        return Quote(
            truck=truck,
            cart=cart,
            delivery=delivery,
            delivery_fee_cents=delivery_fee,
            tax_cents=tax_cents(cart.subtotal_cents, self.tax_rate),
            instrument=instrument,
        )

    # ── コミットフェーズ ─────────────────────────

    async def _commit(
        self,
        req: CheckoutRequest,
        quote: Quote,
        charge: CapturedCharge,
        key: str,
    ) -> PlacedOrder:
        async with self.session_factory() as session, session.begin():
            truck = await load_truck(session, req.truck_uid, lock=True)
            if not truck.is_online:
                raise TruckUnavailable(
                    f"Truck '{truck.name}' is currently {truck.current_status} and not accepting orders."
                )

            cart = await price_cart(session, truck.uid, list(req.items))
            if cart.subtotal_cents != quote.cart.subtotal_cents:
                raise AvailabilityConflict("Menu prices changed during checkout; please review your cart.")

            delivery_fee = 0
            if quote.delivery is not None:
                check_delivery_rules(truck, quote.delivery.coordinates, cart.subtotal_cents)
                delivery_fee = truck.delivery_fee_cents
                if delivery_fee != quote.delivery_fee_cents:
                    raise DeliveryConflict("Delivery fee changed during checkout; please review your order.")

            total = cart.subtotal_cents + quote.tax_cents + delivery_fee
            if total != charge.amount_cents:
                raise AvailabilityConflict("Order total changed during checkout; please review your cart.")

            placed = self._build_order(req, truck, cart, quote, delivery_fee)
            await _insert_order(session, req, placed, cart, charge, key)
            await event_store.append_event(
                session,
                placed.order_uid,
                ORDER_PLACED,
                {
                    "order_uid": placed.order_uid,
                    "order_number": placed.order_number,
                    "total_cents": placed.total_cents,
                    "charge_id": charge.charge_id,
                },
                0,
            )
        logger.info(
            "Order %s (%s) placed for truck %s, total=%s cents",
            placed.order_uid, placed.order_number, truck.uid, placed.total_cents,
        )
        return placed

    def _build_order(
        self,
        req: CheckoutRequest,
        truck: Truck,
        cart: PricedCart,
        quote: Quote,
        delivery_fee: int,
    ) -> PlacedOrder:
        now = now_ms()
        prep_ms = (truck.average_preparation_minutes or self.default_preparation_minutes) * 60 * 1000
        buffer_ms = self.delivery_buffer_minutes * 60 * 1000
        is_pickup = req.fulfillment_type == PICKUP
        return PlacedOrder(
            order_uid=str(uuid.uuid4()),
            order_number=generate_order_number(),
            status=PENDING_CONFIRMATION,
            fulfillment_type=req.fulfillment_type,
            subtotal_cents=cart.subtotal_cents,
            tax_cents=quote.tax_cents,
            delivery_fee_cents=delivery_fee,
            total_cents=cart.subtotal_cents + quote.tax_cents + delivery_fee,
            order_time=now,
            estimated_ready_time=now + prep_ms if is_pickup else None,
            estimated_delivery_time=None if is_pickup else now + prep_ms + buffer_ms,
            pickup_location_address_snapshot=truck.current_location_address if is_pickup else None,
            delivery_address_snapshot=dict(quote.delivery.address_snapshot) if quote.delivery else None,
        )

    # ── 補償 ─────────────────────────────────────

    async def _compensate(
        self,
        req: CheckoutRequest,
        charge: CapturedCharge,
        key: str,
        gateway_key: str,
        error: Exception,
    ) -> None:
        """
        課金後にコミットできなかった場合の補償トランザクション。
        返金を試み、結果にかかわらず突き合わせ台帳に記録する。
        """
        logger.warning("Order commit failed after charge %s: %s; refunding", charge.charge_id, error)
        refund_id = None
        refund_error = None
        try:
            refund = await self.payments.refund(charge.charge_id, charge.amount_cents)
            refund_id = refund.refund_id
        except RefundError as e:
            refund_error = str(e)
            logger.error("Compensating refund failed for charge %s: %s", charge.charge_id, e)

        try:
            async with self.session_factory() as session, session.begin():
                await reconciliation.flag_orphaned_charge(
                    session,
                    charge,
                    req.customer_uid,
                    req.truck_uid,
                    key,
                    gateway_key,
                    reason=f"{type(error).__name__}: {error}",
                    refund_id=refund_id,
                    last_error=refund_error,
                )
        except Exception:
            logger.critical(
                "Could not record orphaned charge %s (%s cents) in reconciliation ledger",
                charge.charge_id, charge.amount_cents, exc_info=True,
            )

    async def _flag_unconfirmed(
        self,
        req: CheckoutRequest,
        quote: Quote,
        key: str,
        gateway_key: str,
        error: PaymentPending,
    ) -> None:
        """課金の結果がわからない。課金されていれば sweep が返金する。"""
        try:
            async with self.session_factory() as session, session.begin():
                await reconciliation.flag_unconfirmed_charge(
                    session,
                    quote.total_cents,
                    req.customer_uid,
                    req.truck_uid,
                    key,
                    gateway_key,
                    reason=f"{type(error).__name__}: {error}",
                    payment_intent_id=error.payment_intent_id,
                    charge_id=error.charge_id,
                )
        except Exception:
            logger.critical(
                "Could not record unconfirmed charge %s (%s cents) in reconciliation ledger",
                gateway_key, quote.total_cents, exc_info=True,
            )

    # ── 通知 ─────────────────────────────────────

    async def _notify(self, req: CheckoutRequest, truck: Truck, placed: PlacedOrder) -> None:
        try:
            async with self.session_factory() as session:
                customer = await load_customer(session, req.customer_uid)
            snippet = (placed.delivery_address_snapshot or {}).get("street_address")
            await self.dispatcher.order_placed(
                truck.operator_user_uid,
                NewOrderForOperator(
                    order_uid=placed.order_uid,
                    order_number=placed.order_number,
                    customer_name=customer["display_name"],
                    status=placed.status,
                    fulfillment_type=placed.fulfillment_type,
                    total_amount=float(to_amount(placed.total_cents)),
                    order_time=placed.order_time,
                    delivery_address_snippet=snippet,
                ),
                customer["email"],
                truck.name,
                placed.total_cents,
            )
        except Exception:
            logger.exception("Post-commit notification failed for order %s", placed.order_uid)


# ── 永続化 ───────────────────────────────────────

async def _insert_order(
    session: AsyncSession,
    req: CheckoutRequest,
    placed: PlacedOrder,
    cart: PricedCart,
    charge: CapturedCharge,
    key: str,
) -> None:
    now = placed.order_time
    await session.execute(
        text("""
            INSERT INTO orders
                (uid, order_number, customer_user_uid, food_truck_uid, status, fulfillment_type,
                 delivery_address_snapshot, pickup_location_address_snapshot, special_instructions,
                 subtotal_cents, tax_cents, delivery_fee_cents, total_cents,
                 payment_charge_id, payment_intent_id, idempotency_key,
                 order_time, estimated_ready_time, estimated_delivery_time, created_at, updated_at)
            VALUES
                (:uid, :order_number, :customer_uid, :truck_uid, :status, :fulfillment_type,
                 :delivery_snapshot, :pickup_snapshot, :special_instructions,
                 :subtotal, :tax, :delivery_fee, :total,
                 :charge_id, :intent_id, :key,
                 :now, :ready, :delivery_time, :now, :now)
        """),
        {
            "uid": placed.order_uid,
            "order_number": placed.order_number,
            "customer_uid": req.customer_uid,
            "truck_uid": req.truck_uid,
            "status": placed.status,
            "fulfillment_type": placed.fulfillment_type,
            "delivery_snapshot": (
                json.dumps(placed.delivery_address_snapshot) if placed.delivery_address_snapshot else None
            ),
            "pickup_snapshot": placed.pickup_location_address_snapshot,
            "special_instructions": cart.special_instructions,
            "subtotal": placed.subtotal_cents,
            "tax": placed.tax_cents,
            "delivery_fee": placed.delivery_fee_cents,
            "total": placed.total_cents,
            "charge_id": charge.charge_id,
            "intent_id": charge.payment_intent_id,
            "key": key,
            "now": now,
            "ready": placed.estimated_ready_time,
            "delivery_time": placed.estimated_delivery_time,
        },
    )

    for position, line in enumerate(cart.lines):
        item_uid = str(uuid.uuid4())
        await session.execute(
            text("""
                INSERT INTO order_items
                    (uid, order_uid, position, menu_item_uid, item_name_snapshot, quantity,
                     base_price_cents, total_item_price_cents, special_instructions)
                VALUES
                    (:uid, :order_uid, :position, :item_id, :name, :quantity,
                     :base_price, :total, :special_instructions)
            """),
            {
                "uid": item_uid,
                "order_uid": placed.order_uid,
                "position": position,
                "item_id": line.item_id,
                "name": line.name,
                "quantity": line.quantity,
                "base_price": line.base_price_cents,
                "total": line.total_cents,
                "special_instructions": line.special_instructions,
            },
        )
        for option_position, option in enumerate(line.options):
            await session.execute(
                text("""
                    INSERT INTO order_item_options
                        (uid, order_item_uid, position, modifier_option_uid,
                         modifier_group_name_snapshot, option_name_snapshot, price_adjustment_cents)
                    VALUES
                        (:uid, :item_uid, :position, :option_id, :group_name, :name, :price)
                """),
                {
                    "uid": str(uuid.uuid4()),
                    "item_uid": item_uid,
                    "position": option_position,
                    "option_id": option.option_id,
                    "group_name": option.group_name,
                    "name": option.name,
                    "price": option.price_adjustment_cents,
                },
            )


@dataclass(frozen=True)
class ExistingOrder:
    order: PlacedOrder
    charge_id: str


async def find_order_by_idempotency_key(session: AsyncSession, key: str) -> ExistingOrder | None:
    result = await session.execute(
        text("""
            SELECT uid, order_number, status, fulfillment_type,
                   subtotal_cents, tax_cents, delivery_fee_cents, total_cents, order_time,
                   estimated_ready_time, estimated_delivery_time,
                   pickup_location_address_snapshot, delivery_address_snapshot, payment_charge_id
            FROM orders
            WHERE idempotency_key = :key
        """),
        {"key": key},
    )
    row = result.fetchone()
    if not row:
        return None
    return ExistingOrder(
        order=PlacedOrder(
            order_uid=row.uid,
            order_number=row.order_number,
            status=row.status,
            fulfillment_type=row.fulfillment_type,
            subtotal_cents=row.subtotal_cents,
            tax_cents=row.tax_cents,
            delivery_fee_cents=row.delivery_fee_cents,
            total_cents=row.total_cents,
            order_time=row.order_time,
            estimated_ready_time=row.estimated_ready_time,
            estimated_delivery_time=row.estimated_delivery_time,
            pickup_location_address_snapshot=row.pickup_location_address_snapshot,
            delivery_address_snapshot=(
                json.loads(row.delivery_address_snapshot) if row.delivery_address_snapshot else None
            ),
            replayed=True,
        ),
        charge_id=row.payment_charge_id,
    )


async def load_customer(session: AsyncSession, customer_uid: str) -> dict:
    result = await session.execute(
        text("SELECT email, first_name, last_name FROM users WHERE uid = :uid"),
        {"uid": customer_uid},
    )
    row = result.fetchone()
    if not row:
        return {"email": None, "display_name": "Customer"}
    initial = f" {row.last_name[:1]}." if row.last_name else ""
    return {"email": row.email, "display_name": f"{row.first_name}{initial}"}
