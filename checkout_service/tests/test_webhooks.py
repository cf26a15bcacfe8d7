import json

import pytest
from sqlalchemy import select

from checkout_service.domain import CurrentUser
from checkout_service.errors import ValidationError
from checkout_service.models import CartItem
from checkout_service.repository import CartRepository
from checkout_service.reservations import ReservationStore
from checkout_service.webhooks import (
    ASYNC_FAILED,
    ASYNC_SUCCEEDED,
    SESSION_EXPIRED,
    PaymentWebhookProcessor,
    parse_event,
    sign_payload,
    verify_signature,
)


@pytest.fixture
def processor(session, settings, gateway, notifier, clock):
    return PaymentWebhookProcessor(session, settings, gateway, notifier, clock)


def confirmations(notifier):
    return [s for s in notifier.sent if s[0] == "order_confirmed"]


def test_paid_session_confirms_order_once(session, catalog, processor, place_card_order, make_event, notifier):
    p = catalog.product(price=1000, stock=5)
    catalog.coupon(code="SAVE10", value=10, usage_limit=1)
    catalog.cart("u1", p, qty=1)
    order = place_card_order(p, coupon="SAVE10")

    assert processor.process(make_event(order)) == "confirmed"
    assert processor.process(make_event(order)) == "duplicate"

    session.refresh(order)
    assert order.status == "confirmed"
    assert order.paid_at is not None and order.confirmed_at is not None
    assert ReservationStore(session).get(order.id).status == "confirmed"
    assert catalog.stock(p.id) == 4
    assert catalog.coupon_counts("SAVE10") == (1, 0)
    assert session.scalars(select(CartItem)).all() == []
    assert len(confirmations(notifier)) == 1


def test_unpaid_completion_waits_for_async_success(session, catalog, processor, place_card_order, make_event):
    p = catalog.product(stock=5)
    order = place_card_order(p)

    assert processor.process(make_event(order, payment_status="unpaid")) == "awaiting_payment"
    session.refresh(order)
    assert order.status == "pending_payment"

    assert processor.process(make_event(order, ASYNC_SUCCEEDED)) == "confirmed"


@pytest.mark.parametrize("event_type", [SESSION_EXPIRED, ASYNC_FAILED])
def test_failed_or_expired_session_cancels_and_releases(session, catalog, processor, place_card_order,
                                                        make_event, event_type):
    p = catalog.product(stock=5)
    catalog.coupon(code="SAVE10", value=10, usage_limit=1)
    order = place_card_order(p, qty=2, coupon="SAVE10")

    assert processor.process(make_event(order, event_type)) == "cancelled"

    session.refresh(order)
    assert order.status == "cancelled"
    assert catalog.stock(p.id) == 5
    assert catalog.coupon_counts("SAVE10") == (0, 0)
    assert processor.process(make_event(order)) == "duplicate"


def test_lapsed_hold_with_stock_left_still_confirms(session, catalog, processor, place_card_order, make_event,
                                                    clock):
    p = catalog.product(stock=5)
    catalog.coupon(code="SAVE10", value=10, usage_limit=1)
    order = place_card_order(p, qty=2, coupon="SAVE10")
    clock.advance(minutes=20)

    assert processor.process(make_event(order)) == "confirmed"

    assert catalog.stock(p.id) == 3
    assert catalog.coupon_counts("SAVE10") == (1, 0)


def test_stock_sold_after_hold_expired_leaves_refund_pending(session, settings, gateway, clock, catalog,
                                                              orchestrator, place_card_order, make_event,
                                                              make_command):
    p = catalog.product(stock=2)
    order = place_card_order(p, qty=2)
    clock.advance(minutes=16)
    orchestrator.checkout_pay_on_delivery(CurrentUser("u2"), make_command(p, 2), "k2")
    assert catalog.stock(p.id) == 0

    manual = settings.model_copy(update={"auto_refund_out_of_stock": False})
    outcome = PaymentWebhookProcessor(session, manual, gateway, None, clock).process(make_event(order))

    session.refresh(order)
    assert outcome == "refund_pending"
    assert order.status == "refund_pending"
    assert order.refund_reason == "out_of_stock"
    assert gateway.refunds == []
    assert catalog.stock(p.id) == 0


def test_stock_sold_after_hold_expired_is_refunded_automatically(session, catalog, orchestrator, processor,
                                                                  place_card_order, make_event, make_command,
                                                                  clock, gateway):
    p = catalog.product(stock=2)
    order = place_card_order(p, qty=2)
    clock.advance(minutes=16)
    orchestrator.checkout_pay_on_delivery(CurrentUser("u2"), make_command(p, 2), "k2")

    assert processor.process(make_event(order)) == "refund_pending"

    session.refresh(order)
    assert order.status == "refunded"
    assert order.amount_refunded_minor == order.total_minor
    assert [r.amount_minor for r in gateway.refunds] == [order.total_minor]
    assert catalog.stock(p.id) == 0


def test_failed_compensating_refund_is_recorded(session, catalog, orchestrator, processor, place_card_order,
                                                make_event, make_command, clock, gateway):
    p = catalog.product(stock=1)
    order = place_card_order(p)
    clock.advance(minutes=16)
    orchestrator.checkout_pay_on_delivery(CurrentUser("u2"), make_command(p), "k2")
    gateway.fail_refunds = True

    assert processor.process(make_event(order)) == "refund_pending"

    session.refresh(order)
    assert order.status == "refund_pending"
    assert order.refund_status == "failed"


def test_amount_mismatch_releases_holds(session, settings, gateway, clock, catalog, place_card_order, make_event):
    p = catalog.product(price=1000, stock=5)
    catalog.coupon(code="SAVE10", value=10, usage_limit=1)
    order = place_card_order(p, coupon="SAVE10")
    manual = settings.model_copy(update={"auto_refund_out_of_stock": False})

    outcome = PaymentWebhookProcessor(session, manual, gateway, None, clock).process(
        make_event(order, amount_total=999))

    session.refresh(order)
    assert outcome == "refund_pending"
    assert order.refund_reason == "amount_mismatch"
    assert catalog.stock(p.id) == 5
    assert catalog.coupon_counts("SAVE10") == (0, 0)


def test_amount_mismatch_refunds_what_was_paid(session, catalog, processor, place_card_order, make_event, gateway):
    p = catalog.product(price=1000, stock=5)
    order = place_card_order(p)

    assert processor.process(make_event(order, amount_total=400)) == "refund_pending"

    session.refresh(order)
    assert [r.amount_minor for r in gateway.refunds] == [400]
    assert order.amount_refunded_minor == 400
    assert order.status == "partially_refunded"


def test_currency_mismatch_is_not_confirmed(session, catalog, processor, place_card_order, make_event):
    p = catalog.product(stock=5)
    order = place_card_order(p)

    assert processor.process(make_event(order, currency="usd")) == "refund_pending"


def test_unknown_session_and_ignored_events(catalog, processor, place_card_order, make_event):
    p = catalog.product(stock=5)
    order = place_card_order(p)

    assert processor.process(make_event(order, id="cs_unknown")) == "unknown_session"
    assert processor.process(make_event(order, "payment_intent.created")) == "ignored"


def test_signature_round_trip_and_rejections():
    raw = b'{"type":"checkout.session.completed"}'
    header = sign_payload(raw, "whsec_test", 1_700_000_000)

    verify_signature(raw, header, "whsec_test", now=1_700_000_100)

    for bad_header, now in [
        (None, 1_700_000_000),
        ("v1=abc", 1_700_000_000),
        (header, 1_700_001_000),
        (sign_payload(raw, "whsec_other", 1_700_000_000), 1_700_000_000),
    ]:
        with pytest.raises(ValidationError) as e:
            verify_signature(raw, bad_header, "whsec_test", now=now)
        assert e.value.code == "INVALID_SIGNATURE"

    with pytest.raises(ValidationError):
        verify_signature(raw + b" ", header, "whsec_test", now=1_700_000_000)


def test_signature_accepts_any_matching_v1():
    raw = b"{}"
    good = sign_payload(raw, "whsec_test", 1_700_000_000)
    header = f"t=1700000000,v1=deadbeef,{good.split(',')[1]}"

    verify_signature(raw, header, "whsec_test", now=1_700_000_000)


@pytest.mark.parametrize("raw", [b"not json", b"[]", b'{"type": "x"}', b'{"type": "x", "data": {}}'])
def test_parse_event_rejects_malformed_bodies(raw):
    with pytest.raises(ValidationError) as e:
        parse_event(raw)
    assert e.value.code == "INVALID_PAYLOAD"


def test_parse_event_accepts_well_formed_body():
    event = {"id": "evt_1", "type": SESSION_EXPIRED, "data": {"object": {"id": "cs_1"}}}
    assert parse_event(json.dumps(event).encode()) == event


@pytest.mark.parametrize("overrides", [{"amount_total": "10.00"}, {"amount_total": True}, {"currency": 376}])
def test_parse_event_rejects_badly_typed_amounts(overrides):
    obj = {"id": "cs_1", "amount_total": 1000, "currency": "ils"}
    obj.update(overrides)

    with pytest.raises(ValidationError) as e:
        parse_event(json.dumps({"type": ASYNC_SUCCEEDED, "data": {"object": obj}}).encode())
    assert e.value.code == "INVALID_PAYLOAD"


def test_unusable_amount_counts_as_mismatch(session, settings, gateway, clock, catalog, place_card_order,
                                            make_event):
    p = catalog.product(price=1000, stock=5)
    order = place_card_order(p)
    manual = settings.model_copy(update={"auto_refund_out_of_stock": False})

    outcome = PaymentWebhookProcessor(session, manual, gateway, None, clock).process(
        make_event(order, amount_total="10.00"))

    session.refresh(order)
    assert outcome == "refund_pending"
    assert order.refund_reason == "amount_mismatch"
    assert catalog.stock(p.id) == 5


def _failing_cart_cleanup(self, *args, **kwargs):
    raise RuntimeError("cart table unavailable")


def test_settlement_failure_without_transactions_parks_order(session, settings, gateway, clock, catalog,
                                                             place_card_order, make_event, monkeypatch):
    p = catalog.product(price=1000, stock=5)
    catalog.coupon(code="SAVE10", value=10, usage_limit=1)
    order = place_card_order(p, qty=2, coupon="SAVE10")
    fallback = settings.model_copy(update={"db_transactions": False, "auto_refund_out_of_stock": False})
    processor = PaymentWebhookProcessor(session, fallback, gateway, None, clock)
    monkeypatch.setattr(CartRepository, "remove_purchased", _failing_cart_cleanup)

    assert processor.process(make_event(order)) == "refund_pending"

    session.refresh(order)
    assert order.status == "refund_pending"
    assert order.refund_reason == "settlement_failed"
    assert catalog.stock(p.id) == 5
    assert catalog.coupon_counts("SAVE10") == (0, 0)
    assert processor.process(make_event(order)) == "duplicate"
    session.refresh(order)
    assert order.status == "refund_pending"


def test_settlement_failure_without_transactions_is_refunded(session, settings, gateway, clock, catalog,
                                                             place_card_order, make_event, monkeypatch):
    p = catalog.product(price=1000, stock=5)
    order = place_card_order(p)
    fallback = settings.model_copy(update={"db_transactions": False})
    monkeypatch.setattr(CartRepository, "remove_purchased", _failing_cart_cleanup)

    outcome = PaymentWebhookProcessor(session, fallback, gateway, None, clock).process(make_event(order))

    session.refresh(order)
    assert outcome == "refund_pending"
    assert order.status == "refunded"
    assert [r.amount_minor for r in gateway.refunds] == [order.total_minor]
    assert catalog.stock(p.id) == 5


def test_settlement_failure_in_transaction_rolls_back(session, catalog, processor, place_card_order, make_event,
                                                      monkeypatch):
    p = catalog.product(price=1000, stock=5)
    catalog.coupon(code="SAVE10", value=10, usage_limit=1)
    order = place_card_order(p, coupon="SAVE10")
    monkeypatch.setattr(CartRepository, "remove_purchased", _failing_cart_cleanup)

    with pytest.raises(RuntimeError):
        processor.process(make_event(order))

    session.refresh(order)
    assert order.status == "pending_payment"
    assert catalog.coupon_counts("SAVE10") == (0, 1)

    monkeypatch.undo()
    assert processor.process(make_event(order)) == "confirmed"
    assert catalog.coupon_counts("SAVE10") == (1, 0)
