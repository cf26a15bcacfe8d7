from datetime import timedelta

from checkout_service.coupons import CouponLedger

from conftest import NOW


def test_single_use_coupon_cannot_be_reserved_twice(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)

    first = ledger.reserve_atomic("once", "o1", "u1", 15, NOW)
    second = ledger.reserve_atomic("ONCE", "o2", "u2", 15, NOW)

    assert first.success and first.expires_at == NOW + timedelta(minutes=15)
    assert not second.success
    assert second.error == "COUPON_LIMIT_REACHED"
    assert catalog.coupon_counts("ONCE") == (0, 1)


def test_release_frees_capacity(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)
    ledger.reserve_atomic("ONCE", "o1", now=NOW)

    assert ledger.release_reservation("ONCE", "o1").success
    assert ledger.release_reservation("ONCE", "o1").error == "RESERVATION_NOT_FOUND"
    assert ledger.reserve_atomic("ONCE", "o2", now=NOW).success
    assert catalog.coupon_counts("ONCE") == (0, 1)


def test_repeated_reserve_for_same_order_is_idempotent(session, catalog):
    catalog.coupon(code="TWICE", usage_limit=2)
    ledger = CouponLedger(session)

    ledger.reserve_atomic("TWICE", "o1", now=NOW)
    again = ledger.reserve_atomic("TWICE", "o1", now=NOW)

    assert again.success and again.already
    assert catalog.coupon_counts("TWICE") == (0, 1)


def test_capacity_never_exceeds_limit(session, catalog):
    catalog.coupon(code="THREE", usage_limit=3)
    ledger = CouponLedger(session)

    results = [ledger.reserve_atomic("THREE", f"o{i}", now=NOW) for i in range(10)]

    assert sum(r.success for r in results) == 3
    assert catalog.coupon_counts("THREE") == (0, 3)


def test_consume_converts_reservation_once(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)
    ledger.reserve_atomic("ONCE", "o1", now=NOW)

    first = ledger.consume_atomic("ONCE", "o1", "u1", 100, NOW + timedelta(minutes=1))
    second = ledger.consume_atomic("ONCE", "o1", "u1", 100, NOW + timedelta(minutes=2))

    assert first.success and not first.already
    assert second.success and second.already
    assert catalog.coupon_counts("ONCE") == (1, 0)


def test_consume_without_reservation_respects_limit(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)

    assert ledger.consume_atomic("ONCE", "o1", now=NOW).success
    result = ledger.consume_atomic("ONCE", "o2", now=NOW)

    assert result.error == "COUPON_LIMIT_REACHED"
    assert catalog.coupon_counts("ONCE") == (1, 0)


def test_reserve_rejects_inactive_and_expired(session, catalog):
    catalog.coupon(code="OFF", is_active=False)
    catalog.coupon(code="OLD", end_at=NOW - timedelta(days=1))
    ledger = CouponLedger(session)

    assert ledger.reserve_atomic("OFF", "o1", now=NOW).error == "COUPON_INACTIVE"
    assert ledger.reserve_atomic("OLD", "o1", now=NOW).error == "COUPON_EXPIRED"
    assert ledger.reserve_atomic("GHOST", "o1", now=NOW).error == "COUPON_NOT_FOUND"


def test_expire_sweep_frees_lapsed_holds(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)
    ledger.reserve_atomic("ONCE", "o1", ttl_minutes=15, now=NOW)

    assert ledger.expire_sweep(NOW + timedelta(minutes=5)) == 0
    assert ledger.expire_sweep(NOW + timedelta(minutes=16)) == 1
    assert catalog.coupon_counts("ONCE") == (0, 0)
    assert ledger.reserve_atomic("ONCE", "o2", now=NOW + timedelta(minutes=16)).success


def test_consume_after_hold_lapsed_still_counts_under_limit(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)
    ledger.reserve_atomic("ONCE", "o1", ttl_minutes=15, now=NOW)

    result = ledger.consume_atomic("ONCE", "o1", now=NOW + timedelta(minutes=20))

    assert result.success
    assert catalog.coupon_counts("ONCE") == (1, 0)


def test_revert_consumption_gives_the_use_back_once(session, catalog):
    catalog.coupon(code="ONCE", usage_limit=1)
    ledger = CouponLedger(session)
    ledger.consume_atomic("ONCE", "o1", "u1", 100, NOW)

    assert ledger.revert_consumption("ONCE", "o1").success
    assert ledger.revert_consumption("ONCE", "o1").error == "REDEMPTION_NOT_FOUND"
    assert catalog.coupon_counts("ONCE") == (0, 0)
    assert ledger.consume_atomic("ONCE", "o2", "u2", 100, NOW).success
