"""
HTTP surface: identity headers, status codes, and the {"error": ...} body.
"""

import pytest

from app import config, main

CUSTOMER = {"X-User-Uid": "cust-1", "X-User-Role": "customer", "X-User-Email": "jane@example.com"}
OTHER_CUSTOMER = {"X-User-Uid": "cust-2", "X-User-Role": "customer"}
OPERATOR = {"X-User-Uid": "op-1", "X-User-Role": "operator"}
INTERNAL = {"X-Internal-Token": "internal-secret"}

ORDER_BODY = {
    "food_truck_uid": "truck-1",
    "fulfillment_type": "pickup",
    "items": [{"menu_item_uid": "item-burrito", "quantity": 2, "selected_options": ["opt-cheese"]}],
    "payment_method": {"payment_method_token": "pm_card_visa"},
}


@pytest.fixture(autouse=True)
def internal_token(monkeypatch):
    monkeypatch.setattr(config, "INTERNAL_API_TOKEN", "internal-secret")


async def _place(client, headers=CUSTOMER, body=ORDER_BODY, key="api-key-1"):
    return await client.post("/orders", json=body, headers={**headers, "Idempotency-Key": key})


async def test_place_order(client, gateway):
    resp = await _place(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending_confirmation"
    assert body["total_amount"] == 25.07
    assert body["subtotal"] == 23.0
    assert body["tax_amount"] == 2.07
    assert body["estimated_ready_time"] is not None
    assert gateway.charges[0]["idempotency_key"] == "cust-1:api-key-1"


async def test_retry_with_same_idempotency_key(client, gateway):
    first = await _place(client)
    second = await _place(client)
    assert second.status_code == 200
    assert second.json()["order_uid"] == first.json()["order_uid"]
    assert len(gateway.charges) == 1


async def test_missing_identity(client):
    resp = await client.post("/orders", json=ORDER_BODY)
    assert resp.status_code == 401
    assert resp.json() == {"error": "Authentication required."}


async def test_operator_cannot_place_order(client):
    resp = await _place(client, headers=OPERATOR)
    assert resp.status_code == 403
    assert "customer" in resp.json()["error"]


async def test_malformed_body_is_400(client):
    resp = await _place(client, body={"food_truck_uid": "truck-1"})
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.parametrize("body, status", [
    ({**ORDER_BODY, "food_truck_uid": "truck-missing"}, 404),
    ({**ORDER_BODY, "items": [{"menu_item_uid": "item-soldout", "quantity": 1}]}, 409),
    ({**ORDER_BODY, "items": [{"menu_item_uid": "item-taco", "quantity": 1, "selected_options": ["opt-cheese"]}]}, 400),
    ({**ORDER_BODY, "fulfillment_type": "delivery", "delivery_address": {"address_uid": "addr-far"}}, 409),
])
async def test_checkout_errors(client, gateway, body, status):
    resp = await _place(client, body=body)
    assert resp.status_code == status
    assert set(resp.json()) == {"error"}
    assert gateway.charges == []


async def test_payment_declined_is_402(client, gateway):
    gateway.decline_code = "insufficient_funds"
    resp = await _place(client)
    assert resp.status_code == 402
    assert "insufficient_funds" in resp.json()["error"]


async def test_status_update_flow(client, gateway):
    order_uid = (await _place(client)).json()["order_uid"]

    resp = await client.put(
        f"/operators/me/orders/{order_uid}/status", json={"new_status": "accepted"}, headers=OPERATOR
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"

    resp = await client.put(
        f"/operators/me/orders/{order_uid}/status", json={"new_status": "completed"}, headers=OPERATOR
    )
    assert resp.status_code == 409

    resp = await client.put(
        f"/operators/me/orders/{order_uid}/status",
        json={"new_status": "cancelled", "reason": "Ran out of food"},
        headers=OPERATOR,
    )
    assert resp.status_code == 200
    assert resp.json()["refunded"] is True
    assert resp.json()["cancellation_reason"] == "Ran out of food"


async def test_refund_failure_is_502(client, gateway):
    order_uid = (await _place(client)).json()["order_uid"]
    gateway.fail_refunds = True
    resp = await client.put(
        f"/operators/me/orders/{order_uid}/status",
        json={"new_status": "rejected", "reason": "Closed"},
        headers=OPERATOR,
    )
    assert resp.status_code == 502

    detail = await client.get(f"/operators/me/orders/{order_uid}", headers=OPERATOR)
    assert detail.json()["status"] == "pending_confirmation"


async def test_customer_cannot_update_status(client):
    order_uid = (await _place(client)).json()["order_uid"]
    resp = await client.put(
        f"/operators/me/orders/{order_uid}/status", json={"new_status": "accepted"}, headers=CUSTOMER
    )
    assert resp.status_code == 403


async def test_request_cancellation(client):
    order_uid = (await _place(client)).json()["order_uid"]

    resp = await client.post(f"/orders/me/{order_uid}/request_cancellation", headers=CUSTOMER)
    assert resp.status_code == 409

    await client.put(f"/operators/me/orders/{order_uid}/status", json={"new_status": "accepted"}, headers=OPERATOR)
    resp = await client.post(f"/orders/me/{order_uid}/request_cancellation", headers=CUSTOMER)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancellation_requested"


async def test_customer_reads(client):
    order_uid = (await _place(client)).json()["order_uid"]

    active = (await client.get("/orders/me/active", headers=CUSTOMER)).json()
    assert [o["order_uid"] for o in active] == [order_uid]
    assert "payment_charge_id" not in active[0]
    assert (await client.get("/orders/me/history", headers=CUSTOMER)).json() == []

    detail = (await client.get(f"/orders/me/{order_uid}", headers=CUSTOMER)).json()
    assert detail["food_truck_name"] == "Taco Wheels"
    assert "payment_charge_id" not in detail
    [item] = detail["items"]
    assert item["item_name"] == "Burrito"
    assert item["total_item_price"] == 23.0
    assert item["selected_options"][0]["option_name"] == "Cheese"

    resp = await client.get(f"/orders/me/{order_uid}", headers=OTHER_CUSTOMER)
    assert resp.status_code == 404


async def test_operator_reads(client):
    order_uid = (await _place(client)).json()["order_uid"]
    await _place(client, key="api-key-2")

    listing = (await client.get("/operators/me/orders?status=pending", headers=OPERATOR)).json()
    assert listing["total"] == 2
    assert {o["payment_charge_id"] for o in listing["orders"]} == {"ch_1", "ch_2"}

    page = (await client.get("/operators/me/orders?limit=1&offset=1", headers=OPERATOR)).json()
    assert len(page["orders"]) == 1
    assert page["total"] == 2

    active = (await client.get("/operators/me/orders?status=active", headers=OPERATOR)).json()
    assert active["total"] == 0

    resp = await client.get("/operators/me/orders?status=bogus", headers=OPERATOR)
    assert resp.status_code == 400

    await client.put(f"/operators/me/orders/{order_uid}/status", json={"new_status": "accepted"}, headers=OPERATOR)
    events = (await client.get(f"/operators/me/orders/{order_uid}/events", headers=OPERATOR)).json()
    assert events["status"] == events["replayed_status"] == "accepted"
    assert [e["event_type"] for e in events["events"]] == ["OrderPlaced", "OrderStatusChanged"]


async def test_reconciliation_sweep_endpoint(client):
    resp = await client.post("/internal/reconciliation/sweep", headers=INTERNAL)
    assert resp.status_code == 200
    assert resp.json() == {"checked": 0, "refunded": 0, "void": 0, "still_pending": 0}


@pytest.mark.parametrize("method, path", [
    ("GET", "/internal/reconciliation/pending"),
    ("POST", "/internal/reconciliation/sweep"),
])
@pytest.mark.parametrize("headers, status", [
    ({}, 401),
    (OTHER_CUSTOMER, 401),
    ({**OPERATOR, "X-Internal-Token": "guess"}, 403),
])
async def test_internal_endpoints_require_token(client, gateway, method, path, headers, status):
    resp = await client.request(method, path, headers=headers)
    assert resp.status_code == status
    assert set(resp.json()) == {"error"}
    assert gateway.refunds == []


async def test_internal_endpoints_disabled_without_configured_token(client, monkeypatch):
    monkeypatch.setattr(config, "INTERNAL_API_TOKEN", None)
    resp = await client.get("/internal/reconciliation/pending", headers=INTERNAL)
    assert resp.status_code == 403


async def test_unconfirmed_payment_is_502_and_listed(client, gateway):
    gateway.lose_responses = True
    resp = await _place(client)
    assert resp.status_code == 502
    assert "could not be confirmed" in resp.json()["error"]

    pending = (await client.get("/internal/reconciliation/pending", headers=INTERNAL)).json()
    assert [(p["state"], p["amount_cents"]) for p in pending] == [("unconfirmed", 2507)]


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok", "service": "order-service"}


def test_serve_runs_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    main.serve()
    [(args, kwargs)] = calls
    assert args == ("app.main:app",)
    assert kwargs["port"] == config.PORT
