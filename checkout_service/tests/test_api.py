import json
import time

import pytest

from checkout_service.models import Order
from checkout_service.webhooks import SIGNATURE_HEADER, sign_payload

ADMIN = {"X-User-Id": "ops", "X-User-Role": "admin"}


def user(uid="u1", key=None):
    headers = {"X-User-Id": uid}
    if key:
        headers["Idempotency-Key"] = key
    return headers


def body(product, qty=1, coupon=None, shipping=None):
    payload = {"items": [{"product_id": product.id, "qty": qty}],
               "shipping": shipping or {"mode": "store_pickup"}}
    if coupon:
        payload["coupon_code"] = coupon
    return payload


def signed_event(session_obj, secret="whsec_test", event_type="checkout.session.completed", **overrides):
    obj = {"id": session_obj.id, "payment_status": "paid", "payment_intent": session_obj.payment_intent_id,
           "amount_total": session_obj.amount_total_minor, "currency": "ils"}
    obj.update(overrides)
    raw = json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()
    return raw, {SIGNATURE_HEADER: sign_payload(raw, secret, int(time.time())),
                 "Content-Type": "application/json"}


def test_quote_reference_scenario(client, catalog):
    p = catalog.product(price=1000, stock=5)
    area = catalog.delivery_area(fee=250)
    catalog.coupon(code="SAVE10", value=10, min_total=500)

    r = client.post("/checkout/quote", json=body(p, coupon=" save10 ",
                                                 shipping={"mode": "delivery", "delivery_area_id": area.id}))

    assert r.status_code == 200
    data = r.json()
    assert data["subtotal_minor"] == 1000
    assert data["shipping_fee_minor"] == 250
    assert data["discounts"]["coupon"] == {"code": "SAVE10", "amount_minor": 100}
    assert data["total_minor"] == 1150
    assert data["total_before_vat_minor"] == 974
    assert data["vat_minor"] == 176
    assert data["major"]["total"] == "11.50"


def test_error_envelope_echoes_request_id(client):
    r = client.post("/checkout/quote", json={"items": [], "shipping": {"mode": "STORE_PICKUP"}},
                    headers={"X-Request-ID": "rid-42"})

    assert r.status_code == 400
    assert r.json()["code"] == "EMPTY_CART"
    assert r.json()["requestId"] == "rid-42"
    assert r.headers["X-Request-ID"] == "rid-42"


def test_validation_and_unknown_route_use_envelope(client):
    r = client.post("/checkout/quote", json={"items": [{"product_id": "p", "qty": "many"}]})
    assert r.status_code == 422
    assert r.json()["code"] == "VALIDATION_ERROR"
    assert r.json()["requestId"]

    r = client.get("/nowhere")
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"


def test_cod_requires_user_and_key(client, catalog):
    p = catalog.product(stock=5)

    r = client.post("/checkout/cod", json=body(p))
    assert r.status_code == 401
    assert r.json()["code"] == "UNAUTHENTICATED"

    r = client.post("/checkout/cod", json=body(p), headers=user())
    assert r.status_code == 400
    assert r.json()["code"] == "MISSING_IDEMPOTENCY_KEY"


def test_cod_created_replayed_and_conflicting(client, catalog):
    p = catalog.product(price=1000, stock=5)

    first = client.post("/checkout/cod", json=body(p), headers=user(key="k1"))
    assert first.status_code == 201
    order = first.json()["order"]
    assert order["status"] == "pending_cod"
    assert order["order_number"].startswith("ORD-2026-")

    replay = client.post("/checkout/cod", json=body(p), headers=user(key="k1"))
    assert replay.status_code == 200
    assert replay.headers["Idempotent-Replay"] == "true"
    assert replay.json()["order"]["id"] == order["id"]

    conflict = client.post("/checkout/cod", json=body(p, qty=2), headers=user(key="k1"))
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "IDEMPOTENCY_CONFLICT"
    assert catalog.stock(p.id) == 4


def test_out_of_stock_is_409(client, catalog):
    p = catalog.product(stock=1)

    r = client.post("/checkout/cod", json=body(p, qty=3), headers=user(key="k1"))

    assert r.status_code == 409
    assert r.json()["code"] == "OUT_OF_STOCK_PARTIAL"


def test_card_checkout_webhook_and_admin_refund(client, catalog, gateway):
    p = catalog.product(price=1000, stock=5)

    r = client.post("/checkout/card", json=body(p), headers=user(key="c1"))
    assert r.status_code == 201
    order_id = r.json()["order"]["id"]
    assert r.json()["order"]["status"] == "pending_payment"
    session_obj = next(iter(gateway.sessions.values()))
    assert r.json()["checkout_url"] == session_obj.url

    raw, headers = signed_event(session_obj)
    r = client.post("/webhooks/payment", content=raw, headers=headers)
    assert r.status_code == 200
    assert r.json() == {"received": True}
    r = client.post("/webhooks/payment", content=raw, headers=headers)
    assert r.status_code == 200

    r = client.post(f"/admin/orders/{order_id}/refund", json={"amount_minor": 400}, headers=user(key="r1"))
    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"

    r = client.post(f"/admin/orders/{order_id}/refund", json={"amount_minor": 400, "reason": "damaged"},
                    headers={**ADMIN, "Idempotency-Key": "r1"})
    assert r.status_code == 200
    order = r.json()["order"]
    assert order["status"] == "partially_refunded"
    assert order["amount_refunded_minor"] == 400
    assert order["confirmed_at"] is not None

    r = client.post(f"/admin/orders/{order_id}/refund", json={"amount_minor": 400, "reason": "damaged"},
                    headers={**ADMIN, "Idempotency-Key": "r1"})
    assert r.status_code == 200
    assert len(gateway.refunds) == 1


def test_card_provider_outage_is_502(client, catalog, gateway):
    p = catalog.product(stock=5)
    gateway.fail_sessions = True

    r = client.post("/checkout/card", json=body(p), headers=user(key="c1"))

    assert r.status_code == 502
    assert r.json()["code"] == "PAYMENT_PROVIDER_ERROR"
    assert catalog.stock(p.id) == 5


@pytest.mark.parametrize("headers", [{SIGNATURE_HEADER: "t=1,v1=00"}, {}])
def test_webhook_rejects_bad_signatures(client, headers):
    raw = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_x"}}}).encode()

    r = client.post("/webhooks/payment", content=raw, headers=headers)

    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_SIGNATURE"


def test_webhook_rejects_malformed_payload(client):
    raw = b"not json"
    headers = {SIGNATURE_HEADER: sign_payload(raw, "whsec_test", int(time.time()))}

    r = client.post("/webhooks/payment", content=raw, headers=headers)

    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_PAYLOAD"


def test_webhook_acknowledges_unknown_sessions(client):
    raw = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_x"}}}).encode()
    headers = {SIGNATURE_HEADER: sign_payload(raw, "whsec_test", int(time.time()))}

    assert client.post("/webhooks/payment", content=raw, headers=headers).json() == {"received": True}


def test_refund_validation(client, catalog):
    r = client.post("/admin/orders/nope/refund", json={"amount_minor": 0}, headers={**ADMIN, "Idempotency-Key": "x"})
    assert r.status_code == 422

    r = client.post("/admin/orders/nope/refund", json={}, headers={**ADMIN, "Idempotency-Key": "x"})
    assert r.status_code == 404
    assert r.json()["code"] == "ORDER_NOT_FOUND"


def test_return_refund_endpoint(client, catalog, gateway):
    p = catalog.product(price=500, stock=5)
    r = client.post("/checkout/card", json=body(p, qty=2), headers=user(key="c1"))
    order_id = r.json()["order"]["id"]
    raw, headers = signed_event(next(iter(gateway.sessions.values())))
    client.post("/webhooks/payment", content=raw, headers=headers)

    items = {"items": [{"product_id": p.id, "qty": 1}]}

    r = client.post(f"/admin/orders/{order_id}/return-refund", json=items, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["code"] == "MISSING_IDEMPOTENCY_KEY"

    r = client.post(f"/admin/orders/{order_id}/return-refund", json=items,
                    headers={**ADMIN, "Idempotency-Key": "ret-1"})
    assert r.status_code == 200
    assert r.json()["order"]["amount_refunded_minor"] == 500
    assert r.json()["order"]["refund_reason"] == "return"

    r = client.post(f"/admin/orders/{order_id}/return-refund", json=items,
                    headers={**ADMIN, "Idempotency-Key": "ret-2"})
    assert r.status_code == 200
    assert r.json()["order"]["amount_refunded_minor"] == 1000
    assert r.json()["order"]["status"] == "refunded"
    assert [rf.amount_minor for rf in gateway.refunds] == [500, 500]


def test_expire_endpoint_is_admin_only(client, catalog, clock):
    p = catalog.product(stock=5)
    client.post("/checkout/card", json=body(p, qty=2), headers=user(key="c1"))
    clock.advance(minutes=30)

    assert client.post("/admin/reservations/expire", headers=user()).status_code == 403
    r = client.post("/admin/reservations/expire", headers=ADMIN)
    assert r.status_code == 200
    assert r.json() == {"expired": {"reservations": 1, "coupons": 0}}
    assert catalog.stock(p.id) == 5


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "components": {"db": {"ok": True}}}


def test_webhook_rejects_non_integer_amount(client, catalog, gateway, session):
    p = catalog.product(price=1000, stock=5)
    r = client.post("/checkout/card", json=body(p), headers=user(key="c1"))
    order_id = r.json()["order"]["id"]
    raw, headers = signed_event(next(iter(gateway.sessions.values())), amount_total="10.00")

    r = client.post("/webhooks/payment", content=raw, headers=headers)

    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_PAYLOAD"
    assert session.get(Order, order_id).status == "pending_payment"


def test_cancel_endpoint(client, catalog, gateway):
    p = catalog.product(price=1000, stock=5)
    r = client.post("/checkout/card", json=body(p, qty=2), headers=user(key="c1"))
    order_id = r.json()["order"]["id"]
    assert catalog.stock(p.id) == 3

    r = client.post(f"/orders/{order_id}/cancel", headers=user())
    assert r.status_code == 400
    assert r.json()["code"] == "MISSING_IDEMPOTENCY_KEY"
    assert client.post(f"/orders/{order_id}/cancel", headers=user("u2", key="x1")).status_code == 404

    r = client.post(f"/orders/{order_id}/cancel", json={"reason": "changed my mind"}, headers=user(key="x1"))
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "cancelled"
    assert r.json()["order"]["cancel_reason"] == "changed my mind"
    assert catalog.stock(p.id) == 5
    assert gateway.expired == set(gateway.sessions)

    again = client.post(f"/orders/{order_id}/cancel", headers=user(key="x1"))
    assert again.status_code == 200
    assert again.json()["order"]["status"] == "cancelled"


def test_cancel_after_payment_is_409(client, catalog, gateway):
    p = catalog.product(price=1000, stock=5)
    r = client.post("/checkout/card", json=body(p), headers=user(key="c1"))
    order_id = r.json()["order"]["id"]
    raw, headers = signed_event(next(iter(gateway.sessions.values())))
    client.post("/webhooks/payment", content=raw, headers=headers)

    r = client.post(f"/orders/{order_id}/cancel", headers=user(key="x1"))

    assert r.status_code == 409
    assert r.json()["code"] == "ORDER_CANCEL_NOT_ALLOWED"
