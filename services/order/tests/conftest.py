"""
Shared fixtures for the order service tests.

The store is a throwaway SQLite file per test; external services
(payment gateway, geocoder, mail, Redis) are in-memory fakes.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from dataclasses import replace
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.checkout import CheckoutCoordinator, CheckoutRequest
from app.delivery import DeliveryAddress
from app.gateway import (
    AttachedInstrument,
    ChargeId,
    ChargeResult,
    GatewayError,
    GatewayUnavailable,
    PaymentIntentId,
    RefundId,
    RefundResult,
)
from app.geocoding import Coordinates, GeocodingError
from app.notifications import NotificationDispatcher
from app.payments import PaymentMethodRequest, PaymentOrchestrator
from app.pricing import CartLine
from app.schema import create_schema

TRUCK_LAT = 34.0522
TRUCK_LON = -118.2437
# 緯度 1 度 ≈ 111.19 km
NEAR = Coordinates(lat=TRUCK_LAT + 0.027, lon=TRUCK_LON)   # ~3 km
FAR = Coordinates(lat=TRUCK_LAT + 0.054, lon=TRUCK_LON)    # ~6 km

NEAR_ADDRESS = "10 Near St, Los Angeles, CA 90012"
FAR_ADDRESS = "99 Far Rd, Los Angeles, CA 90012"
UNKNOWN_ADDRESS = "1 Nowhere Ln, Los Angeles, CA 90012"


# ============================================================================
# Fakes
# ============================================================================


class FakeGateway:
    """
    Like the real gateway, a repeated idempotency key returns the cached
    result instead of charging again.
    """

    charge_id_prefix = "ch_"

    def __init__(self):
        self.charges: list[dict] = []
        self.by_key: dict[str, ChargeResult] = {}
        self.refunds: list[tuple[str, int | None]] = []
        self.attached: list[tuple[str, str]] = []
        self.decline_code: str | None = None
        self.charge_status = "succeeded"
        self.unreachable = False
        self.lose_responses = False
        self.fail_lookups = False
        self.fail_refunds = False
        self.fail_attach = False

    async def charge(self, amount_cents, currency, instrument, customer, idempotency_key):
        if self.unreachable:
            raise GatewayUnavailable("Payment gateway unreachable: connect timeout")
        if self.decline_code:
            raise GatewayError("Your card was declined.", decline_code=self.decline_code)
        if idempotency_key not in self.by_key:
            self.charges.append({
                "amount_cents": amount_cents,
                "currency": currency,
                "instrument": instrument,
                "customer": customer,
                "idempotency_key": idempotency_key,
            })
            n = len(self.charges)
            self.by_key[idempotency_key] = ChargeResult(
                charge_id=ChargeId(f"ch_{n}"),
                payment_intent_id=PaymentIntentId(f"pi_{n}"),
                status=self.charge_status,
                amount_cents=amount_cents,
                currency=currency,
            )
        if self.lose_responses:
            raise GatewayUnavailable("Payment gateway unreachable: read timeout")
        return self.by_key[idempotency_key]

    def settle(self, idempotency_key, status="succeeded"):
        self.by_key[idempotency_key] = replace(self.by_key[idempotency_key], status=status)

    async def find_charge(self, idempotency_key):
        if self.fail_lookups:
            raise GatewayUnavailable("Payment gateway unreachable: search timeout")
        return self.by_key.get(idempotency_key)

    async def refund(self, charge_id, amount_cents=None):
        if self.fail_refunds:
            raise GatewayError("Refund rejected by gateway")
        self.refunds.append((charge_id, amount_cents))
        return RefundResult(
            refund_id=RefundId(f"re_{len(self.refunds)}"),
            charge_id=charge_id,
            amount_cents=amount_cents,
            status="succeeded",
        )

    async def attach_instrument(self, instrument, customer):
        if self.fail_attach:
            raise GatewayError("Attach failed")
        self.attached.append((instrument, customer))
        return AttachedInstrument(
            method_id=instrument,
            customer_id=customer,
            card_brand="visa",
            last4="4242",
            exp_month=12,
            exp_year=2030,
        )

    async def detach_instrument(self, instrument):
        pass


class FakeGeocoder:
    def __init__(self):
        self.places = {NEAR_ADDRESS: NEAR, FAR_ADDRESS: FAR}
        self.calls: list[str] = []

    async def geocode(self, address):
        self.calls.append(address)
        if address not in self.places:
            raise GeocodingError("Geocoding failed: no results found for address")
        return self.places[address]

    async def reverse_geocode(self, lat, lon):
        return "Address not found"


class FakeMailer:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to, subject, body):
        self.sent.append((to, subject, body))


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.fail = False

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1


# ============================================================================
# Store
# ============================================================================


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await create_schema(conn)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


SEED = [
    ("""INSERT INTO users (uid, email, first_name, last_name) VALUES
        ('cust-1', 'jane@example.com', 'Jane', 'Doe'),
        ('cust-2', 'sam@example.com', 'Sam', 'Roe'),
        ('op-1', 'op1@example.com', 'Olive', 'Park'),
        ('op-2', 'op2@example.com', 'Omar', 'Lee')""", {}),
    ("""INSERT INTO food_trucks
        (uid, operator_user_uid, name, current_status, location_latitude, location_longitude,
         current_location_address, delivery_enabled, delivery_fee_cents, delivery_minimum_order_cents,
         delivery_radius_km, average_preparation_minutes)
        VALUES
        ('truck-1', 'op-1', 'Taco Wheels', 'online', :lat, :lon, '123 Main St, Los Angeles, CA',
         TRUE, 500, 1500, 5.0, 20),
        ('truck-2', 'op-2', 'Noodle Bus', 'online', :lat, :lon, '500 Spring St, Los Angeles, CA',
         FALSE, 0, 0, NULL, NULL)""", {"lat": TRUCK_LAT, "lon": TRUCK_LON}),
    ("""INSERT INTO menu_categories (uid, food_truck_uid, name, is_available) VALUES
        ('cat-1', 'truck-1', 'Mains', TRUE),
        ('cat-2', 'truck-1', 'Specials', FALSE),
        ('cat-3', 'truck-2', 'Noodles', TRUE)""", {}),
    ("""INSERT INTO menu_items (uid, food_truck_uid, menu_category_uid, name, base_price_cents, is_available)
        VALUES
        ('item-burrito', 'truck-1', 'cat-1', 'Burrito', 1000, TRUE),
        ('item-taco', 'truck-1', 'cat-1', 'Taco', 300, TRUE),
        ('item-soldout', 'truck-1', 'cat-1', 'Churro', 400, FALSE),
        ('item-special', 'truck-1', 'cat-2', 'Birria', 1200, TRUE),
        ('item-ramen', 'truck-2', 'cat-3', 'Ramen', 800, TRUE)""", {}),
    ("""INSERT INTO modifier_groups (uid, menu_item_uid, name) VALUES
        ('grp-extras', 'item-burrito', 'Extras'),
        ('grp-size', 'item-taco', 'Size')""", {}),
    ("""INSERT INTO modifier_options (uid, modifier_group_uid, name, price_adjustment_cents) VALUES
        ('opt-cheese', 'grp-extras', 'Cheese', 150),
        ('opt-guac', 'grp-extras', 'Guacamole', 200),
        ('opt-large', 'grp-size', 'Large', 100)""", {}),
    ("""INSERT INTO addresses (uid, customer_user_uid, street_address, city, state, zip_code) VALUES
        ('addr-near', 'cust-1', '10 Near St', 'Los Angeles', 'CA', '90012'),
        ('addr-far', 'cust-1', '99 Far Rd', 'Los Angeles', 'CA', '90012'),
        ('addr-sam', 'cust-2', '10 Near St', 'Los Angeles', 'CA', '90012')""", {}),
    ("""INSERT INTO payment_methods
        (uid, customer_user_uid, payment_gateway_customer_id, payment_gateway_method_id,
         card_type, last_4_digits, expiry_month, expiry_year, created_at, updated_at)
        VALUES
        ('pm-jane', 'cust-1', 'cus_jane', 'pm_saved_jane', 'visa', '4242', 12, 2030, 1, 1),
        ('pm-sam', 'cust-2', 'cus_sam', 'pm_saved_sam', 'mastercard', '5555', 1, 2031, 1, 1)""", {}),
]


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session, session.begin():
        for statement, params in SEED:
            await session.execute(text(statement), params)
    return session_factory


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def dispatcher(redis, mailer):
    return NotificationDispatcher(redis, mailer)


@pytest.fixture
def payments(gateway):
    return PaymentOrchestrator(gateway, "usd")


@pytest.fixture
def coordinator(seeded, payments, geocoder, dispatcher):
    return CheckoutCoordinator(seeded, payments, geocoder, dispatcher, Decimal("0.09"))


@pytest.fixture
async def client(seeded, payments, dispatcher, coordinator, redis):
    from app.main import Services, app

    app.state.services = Services(
        session_factory=seeded,
        redis=redis,
        payments=payments,
        dispatcher=dispatcher,
        checkout=coordinator,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ============================================================================
# Helpers
# ============================================================================


def make_request(**overrides) -> CheckoutRequest:
    """2 x Burrito + Cheese, pickup, new card token"""
    fields = {
        "customer_uid": "cust-1",
        "truck_uid": "truck-1",
        "fulfillment_type": "pickup",
        "items": (CartLine("item-burrito", 2, ("opt-cheese",)),),
        "payment_method": PaymentMethodRequest(payment_method_token="pm_card_visa"),
        "idempotency_key": "key-1",
        "delivery_address": None,
    }
    fields.update(overrides)
    return CheckoutRequest(**fields)


def delivery_request(address_uid: str = "addr-near", **overrides) -> CheckoutRequest:
    return make_request(
        fulfillment_type="delivery",
        delivery_address=DeliveryAddress(address_uid=address_uid),
        **overrides,
    )


async def fetch_order(session_factory, order_uid: str):
    async with session_factory() as session:
        result = await session.execute(text("SELECT * FROM orders WHERE uid = :uid"), {"uid": order_uid})
        return result.fetchone()


async def count_rows(session_factory, table: str) -> int:
    async with session_factory() as session:
        result = await session.execute(text(f"SELECT COUNT(*) AS n FROM {table}"))
        return result.fetchone().n


async def set_truck_status(session_factory, truck_uid: str, status: str) -> None:
    async with session_factory() as session, session.begin():
        await session.execute(
            text("UPDATE food_trucks SET current_status = :status WHERE uid = :uid"),
            {"status": status, "uid": truck_uid},
        )
