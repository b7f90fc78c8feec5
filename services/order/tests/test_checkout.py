"""
Checkout: either a fully valid, charged order exists, or nothing does
(and any captured charge is refunded and recorded for reconciliation).
"""

import json

import pytest
from sqlalchemy import text

from app import reconciliation
from app.errors import (
    AvailabilityConflict,
    DeliveryConflict,
    NotFoundError,
    PaymentError,
    PaymentPending,
    TruckUnavailable,
    ValidationError,
)
from app.payments import PaymentMethodRequest
from app.pricing import CartLine

from conftest import count_rows, delivery_request, fetch_order, make_request, set_truck_status

MINUTE_MS = 60 * 1000


async def _reconciliation_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(text("SELECT * FROM payment_reconciliation"))
        return result.fetchall()


async def test_pickup_order(coordinator, seeded, gateway):
    placed = await coordinator.place_order(make_request())

    assert placed.status == "pending_confirmation"
    assert placed.order_number.startswith("STX-") and len(placed.order_number) == 10
    assert (placed.subtotal_cents, placed.tax_cents, placed.delivery_fee_cents) == (2300, 207, 0)
    assert placed.total_cents == 2507
    assert placed.estimated_ready_time == placed.order_time + 20 * MINUTE_MS
    assert placed.estimated_delivery_time is None
    assert placed.replayed is False
    assert gateway.charges[0]["amount_cents"] == 2507

    row = await fetch_order(seeded, placed.order_uid)
    assert row.total_cents == row.subtotal_cents + row.tax_cents + row.delivery_fee_cents
    assert row.payment_charge_id == "ch_1"
    assert row.payment_intent_id == "pi_1"
    assert row.idempotency_key == "cust-1:key-1"
    assert row.pickup_location_address_snapshot == "123 Main St, Los Angeles, CA"
    assert row.delivery_address_snapshot is None
    assert not row.refunded


async def test_line_items_and_options_are_snapshotted(coordinator, seeded):
    placed = await coordinator.place_order(make_request(items=(
        CartLine("item-burrito", 1, ("opt-cheese", "opt-guac"), "extra salsa"),
        CartLine("item-taco", 2),
    )))
    async with seeded() as session:
        items = (await session.execute(
            text("SELECT * FROM order_items WHERE order_uid = :uid ORDER BY position"),
            {"uid": placed.order_uid},
        )).fetchall()
        options = (await session.execute(
            text("""
                SELECT op.* FROM order_item_options op
                JOIN order_items i ON op.order_item_uid = i.uid
                WHERE i.order_uid = :uid ORDER BY op.position
            """),
            {"uid": placed.order_uid},
        )).fetchall()
    assert [(i.item_name_snapshot, i.quantity, i.base_price_cents, i.total_item_price_cents) for i in items] == [
        ("Burrito", 1, 1000, 1350),
        ("Taco", 2, 300, 600),
    ]
    assert [(o.modifier_group_name_snapshot, o.option_name_snapshot, o.price_adjustment_cents) for o in options] == [
        ("Extras", "Cheese", 150),
        ("Extras", "Guacamole", 200),
    ]
    row = await fetch_order(seeded, placed.order_uid)
    assert row.special_instructions == "extra salsa"


async def test_delivery_order(coordinator, seeded):
    placed = await coordinator.place_order(delivery_request())

    assert placed.delivery_fee_cents == 500
    assert placed.total_cents == 2300 + 207 + 500
    assert placed.estimated_ready_time is None
    # preparation (20) + delivery buffer (15)
    assert placed.estimated_delivery_time == placed.order_time + 35 * MINUTE_MS

    row = await fetch_order(seeded, placed.order_uid)
    snapshot = json.loads(row.delivery_address_snapshot)
    assert snapshot["street_address"] == "10 Near St"
    assert "lat" not in snapshot
    assert row.pickup_location_address_snapshot is None


async def test_delivery_outside_radius_is_never_charged(coordinator, seeded, gateway):
    with pytest.raises(DeliveryConflict, match="delivery radius"):
        await coordinator.place_order(delivery_request("addr-far"))
    assert gateway.charges == []
    assert await count_rows(seeded, "orders") == 0


async def test_idempotent_replay_returns_original_order(coordinator, seeded, gateway):
    first = await coordinator.place_order(make_request())
    second = await coordinator.place_order(make_request())

    assert second.order_uid == first.order_uid
    assert second.replayed is True
    assert len(gateway.charges) == 1
    assert await count_rows(seeded, "orders") == 1


async def test_idempotency_keys_are_scoped_per_customer(coordinator, seeded, gateway):
    first = await coordinator.place_order(make_request())
    second = await coordinator.place_order(make_request(customer_uid="cust-2"))
    assert first.order_uid != second.order_uid
    assert len(gateway.charges) == 2


async def test_offline_truck_rejected_before_charge(coordinator, seeded, gateway):
    await set_truck_status(seeded, "truck-1", "offline")
    with pytest.raises(TruckUnavailable, match="Taco Wheels"):
        await coordinator.place_order(make_request())
    assert gateway.charges == []


async def test_unknown_truck(coordinator, gateway):
    with pytest.raises(NotFoundError, match="Food truck not found"):
        await coordinator.place_order(make_request(truck_uid="truck-missing"))
    assert gateway.charges == []


async def test_declined_payment_leaves_nothing(coordinator, seeded, gateway):
    gateway.decline_code = "card_declined"
    with pytest.raises(PaymentError):
        await coordinator.place_order(make_request())
    assert await count_rows(seeded, "orders") == 0
    assert gateway.refunds == []


@pytest.mark.parametrize("overrides", [
    {"fulfillment_type": "drone"},
    {"items": ()},
    {"fulfillment_type": "delivery"},
    {"payment_method": PaymentMethodRequest()},
])
async def test_invalid_requests_fail_before_side_effects(coordinator, gateway, geocoder, overrides):
    with pytest.raises(ValidationError):
        await coordinator.place_order(make_request(**overrides))
    assert gateway.charges == []
    assert geocoder.calls == []


async def test_truck_goes_offline_after_charge(coordinator, seeded, gateway):
    charge = gateway.charge

    async def charge_then_go_offline(*args, **kwargs):
        result = await charge(*args, **kwargs)
        await set_truck_status(seeded, "truck-1", "offline")
        return result

    gateway.charge = charge_then_go_offline

    with pytest.raises(TruckUnavailable):
        await coordinator.place_order(make_request())

    assert await count_rows(seeded, "orders") == 0
    assert gateway.refunds == [("ch_1", 2507)]
    [entry] = await _reconciliation_rows(seeded)
    assert entry.charge_id == "ch_1"
    assert entry.amount_cents == 2507
    assert entry.state == "refunded"
    assert entry.refund_id == "re_1"
    assert entry.reason.startswith("TruckUnavailable")


async def test_price_change_during_charge(coordinator, seeded, gateway):
    charge = gateway.charge

    async def charge_then_reprice(*args, **kwargs):
        result = await charge(*args, **kwargs)
        async with seeded() as session, session.begin():
            await session.execute(text("UPDATE menu_items SET base_price_cents = 1100 WHERE uid = 'item-burrito'"))
        return result

    gateway.charge = charge_then_reprice

    with pytest.raises(AvailabilityConflict, match="prices changed"):
        await coordinator.place_order(make_request())
    assert await count_rows(seeded, "orders") == 0
    assert gateway.refunds == [("ch_1", 2507)]


async def test_failed_compensating_refund_stays_pending(coordinator, seeded, gateway):
    charge = gateway.charge

    async def charge_then_go_offline(*args, **kwargs):
        result = await charge(*args, **kwargs)
        await set_truck_status(seeded, "truck-1", "paused")
        return result

    gateway.charge = charge_then_go_offline
    gateway.fail_refunds = True

    with pytest.raises(TruckUnavailable):
        await coordinator.place_order(make_request())

    [entry] = await _reconciliation_rows(seeded)
    assert entry.state == "pending"
    assert entry.refund_id is None
    assert "Refund failed" in entry.last_error


async def test_concurrent_duplicate_returns_committed_order(coordinator, seeded, gateway):
    """A parallel request with the same key committed first with the same charge."""
    charge = gateway.charge

    async def charge_while_other_request_commits(*args, **kwargs):
        result = await charge(*args, **kwargs)
        async with seeded() as session, session.begin():
            await session.execute(
                text("""
                    INSERT INTO orders
                        (uid, order_number, customer_user_uid, food_truck_uid, status, fulfillment_type,
                         subtotal_cents, tax_cents, delivery_fee_cents, total_cents,
                         payment_charge_id, idempotency_key, order_time, created_at, updated_at)
                    VALUES
                        ('order-winner', 'STX-WINNER', 'cust-1', 'truck-1', 'pending_confirmation', 'pickup',
                         2300, 207, 0, 2507, :charge_id, 'cust-1:key-1', 1, 1, 1)
                """),
                {"charge_id": result.charge_id},
            )
        return result

    gateway.charge = charge_while_other_request_commits

    placed = await coordinator.place_order(make_request())
    assert placed.order_uid == "order-winner"
    assert placed.replayed is True
    assert gateway.refunds == []
    assert await count_rows(seeded, "orders") == 1


async def test_order_placed_event_and_notifications(coordinator, seeded, redis, mailer):
    placed = await coordinator.place_order(make_request())

    async with seeded() as session:
        events = (await session.execute(
            text("SELECT event_type, version FROM order_events WHERE order_uid = :uid"),
            {"uid": placed.order_uid},
        )).fetchall()
    assert [(e.event_type, e.version) for e in events] == [("OrderPlaced", 1)]

    [(channel, message)] = redis.published
    assert channel == "user:operator_op-1"
    payload = json.loads(message)
    assert payload["event"] == "new_order_for_operator"
    assert payload["data"]["order_uid"] == placed.order_uid
    assert payload["data"]["customer_name"] == "Jane D."
    assert payload["data"]["total_amount"] == 25.07

    [(to, subject, body)] = mailer.sent
    assert to == "jane@example.com"
    assert placed.order_number in subject
    assert "$25.07" in body


async def test_notification_failure_does_not_affect_order(coordinator, seeded, redis):
    redis.fail = True
    placed = await coordinator.place_order(make_request())
    row = await fetch_order(seeded, placed.order_uid)
    assert row.status == "pending_confirmation"


async def test_new_payment_method_saved_after_success(coordinator, seeded, gateway):
    await coordinator.place_order(make_request(
        payment_method=PaymentMethodRequest(payment_method_token="pm_brand_new", save_method=True),
    ))
    assert gateway.attached == [("pm_brand_new", "cus_jane")]
    assert await count_rows(seeded, "payment_methods") == 3


async def _fail_first_commit(coordinator, seeded, gateway):
    """Charge succeeds, the truck goes offline before commit, the charge is refunded."""
    charge = gateway.charge

    async def charge_then_go_offline(*args, **kwargs):
        result = await charge(*args, **kwargs)
        await set_truck_status(seeded, "truck-1", "offline")
        return result

    gateway.charge = charge_then_go_offline
    with pytest.raises(TruckUnavailable):
        await coordinator.place_order(make_request())
    gateway.charge = charge
    await set_truck_status(seeded, "truck-1", "online")


async def test_retry_after_refunded_attempt_charges_again(coordinator, seeded, gateway):
    await _fail_first_commit(coordinator, seeded, gateway)
    assert gateway.refunds == [("ch_1", 2507)]

    placed = await coordinator.place_order(make_request())

    assert [c["idempotency_key"] for c in gateway.charges] == ["cust-1:key-1", "cust-1:key-1:retry-1"]
    row = await fetch_order(seeded, placed.order_uid)
    assert row.payment_charge_id == "ch_2"
    assert row.idempotency_key == "cust-1:key-1"

    again = await coordinator.place_order(make_request())
    assert again.order_uid == placed.order_uid
    assert again.replayed is True
    assert len(gateway.charges) == 2


async def test_refunded_charge_is_never_reused_for_an_order(coordinator, seeded, gateway):
    await _fail_first_commit(coordinator, seeded, gateway)
    refunded = gateway.by_key["cust-1:key-1"]

    async def return_refunded_charge(*args, **kwargs):
        return refunded

    gateway.charge = return_refunded_charge

    with pytest.raises(PaymentError, match="already refunded"):
        await coordinator.place_order(make_request())
    assert await count_rows(seeded, "orders") == 0
    assert gateway.refunds == [("ch_1", 2507)]


async def test_lost_charge_response_is_flagged_for_reconciliation(coordinator, seeded, gateway, payments):
    gateway.lose_responses = True

    with pytest.raises(PaymentPending):
        await coordinator.place_order(make_request())

    assert len(gateway.charges) == 1
    assert await count_rows(seeded, "orders") == 0
    [entry] = await _reconciliation_rows(seeded)
    assert entry.state == "unconfirmed"
    assert entry.charge_id is None
    assert entry.amount_cents == 2507
    assert entry.checkout_key == entry.idempotency_key == "cust-1:key-1"

    await reconciliation.sweep(seeded, payments, unconfirmed_grace_ms=0)
    assert gateway.refunds == [("ch_1", 2507)]


async def test_retry_after_lost_response_gets_its_own_charge(coordinator, seeded, gateway, payments):
    gateway.lose_responses = True
    with pytest.raises(PaymentPending):
        await coordinator.place_order(make_request())
    gateway.lose_responses = False

    placed = await coordinator.place_order(make_request())
    assert (await fetch_order(seeded, placed.order_uid)).payment_charge_id == "ch_2"

    await reconciliation.sweep(seeded, payments, unconfirmed_grace_ms=0)
    assert gateway.refunds == [("ch_1", 2507)]


async def test_unreachable_gateway_is_flagged_not_declined(coordinator, seeded, gateway):
    gateway.unreachable = True
    with pytest.raises(PaymentPending, match="could not be confirmed"):
        await coordinator.place_order(make_request())
    [entry] = await _reconciliation_rows(seeded)
    assert entry.state == "unconfirmed"


async def test_processing_charge_is_flagged_with_its_ids(coordinator, seeded, gateway):
    gateway.charge_status = "processing"
    with pytest.raises(PaymentPending, match="processing"):
        await coordinator.place_order(make_request())
    assert await count_rows(seeded, "orders") == 0
    [entry] = await _reconciliation_rows(seeded)
    assert (entry.state, entry.charge_id, entry.payment_intent_id) == ("unconfirmed", "ch_1", "pi_1")
