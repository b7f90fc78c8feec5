"""
Order Service — Request / Response Models

金額はレスポンスでのみ小数（ドル）で返す。内部はすべてセント。
"""

from pydantic import BaseModel, Field

from .checkout import CheckoutRequest, PlacedOrder
from .commands import TransitionResult
from .delivery import DeliveryAddress
from .money import to_amount
from .payments import PaymentMethodRequest
from .pricing import CartLine


# ── Checkout ─────────────────────────────────────

class OrderItemIn(BaseModel):
    menu_item_uid: str
    quantity: int
    selected_options: list[str] = Field(default_factory=list)
    special_instructions: str | None = None


class DeliveryAddressIn(BaseModel):
    address_uid: str | None = None
    street_address: str | None = None
    apt_suite: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


class PaymentMethodIn(BaseModel):
    payment_method_uid: str | None = None
    payment_method_token: str | None = None
    save_method: bool = False


class CreateOrderRequest(BaseModel):
    food_truck_uid: str
    fulfillment_type: str
    items: list[OrderItemIn]
    payment_method: PaymentMethodIn
    delivery_address: DeliveryAddressIn | None = None

    def to_checkout(self, customer_uid: str, idempotency_key: str) -> CheckoutRequest:
        return CheckoutRequest(
            customer_uid=customer_uid,
            truck_uid=self.food_truck_uid,
            fulfillment_type=self.fulfillment_type,
            items=tuple(
                CartLine(
                    item_id=item.menu_item_uid,
                    quantity=item.quantity,
                    selected_option_ids=tuple(item.selected_options),
                    special_instructions=item.special_instructions,
                )
                for item in self.items
            ),
            payment_method=PaymentMethodRequest(
                payment_method_uid=self.payment_method.payment_method_uid,
                payment_method_token=self.payment_method.payment_method_token,
                save_method=self.payment_method.save_method,
            ),
            idempotency_key=idempotency_key,
            delivery_address=(
                DeliveryAddress(**self.delivery_address.model_dump()) if self.delivery_address else None
            ),
        )


class CreateOrderResponse(BaseModel):
    order_uid: str
    order_number: str
    status: str
    fulfillment_type: str
    subtotal: float
    tax_amount: float
    delivery_fee: float
    total_amount: float
    order_time: int
    estimated_ready_time: int | None = None
    estimated_delivery_time: int | None = None

    @classmethod
    def from_placed(cls, placed: PlacedOrder) -> "CreateOrderResponse":
        return cls(
            order_uid=placed.order_uid,
            order_number=placed.order_number,
            status=placed.status,
            fulfillment_type=placed.fulfillment_type,
            subtotal=float(to_amount(placed.subtotal_cents)),
            tax_amount=float(to_amount(placed.tax_cents)),
            delivery_fee=float(to_amount(placed.delivery_fee_cents)),
            total_amount=float(to_amount(placed.total_cents)),
            order_time=placed.order_time,
            estimated_ready_time=placed.estimated_ready_time,
            estimated_delivery_time=placed.estimated_delivery_time,
        )


# ── 状態遷移 ─────────────────────────────────────

class UpdateStatusRequest(BaseModel):
    new_status: str
    reason: str | None = None
    updated_estimated_ready_time: int | None = None
    updated_estimated_delivery_time: int | None = None


class StatusResponse(BaseModel):
    order_uid: str
    order_number: str
    status: str
    updated_at: int
    estimated_ready_time: int | None = None
    estimated_delivery_time: int | None = None
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    refunded: bool = False

    @classmethod
    def from_result(cls, result: TransitionResult) -> "StatusResponse":
        return cls(
            order_uid=result.order_uid,
            order_number=result.order_number,
            status=result.status,
            updated_at=result.updated_at,
            estimated_ready_time=result.estimated_ready_time,
            estimated_delivery_time=result.estimated_delivery_time,
            rejection_reason=result.rejection_reason,
            cancellation_reason=result.cancellation_reason,
            refunded=result.refund_id is not None,
        )
