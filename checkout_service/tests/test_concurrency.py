"""Concurrent writers against a file-backed SQLite database.

Each worker gets its own session (and connection) and all of them are
released at once by a barrier, so the conditional updates really race.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from checkout_service.coupons import CouponLedger
from checkout_service.db import build_engine, build_session_factory, init_db
from checkout_service.domain import StockItem
from checkout_service.errors import ConflictError
from checkout_service.models import StockReservation
from checkout_service.reservations import ReservationStore

from conftest import NOW, Catalog

WORKERS = 8


@pytest.fixture
def file_sessions(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def seed(file_sessions):
    s = file_sessions()
    yield Catalog(s)
    s.close()


def run_together(factory, fn):
    barrier = threading.Barrier(WORKERS)

    def _worker(i):
        s = factory()
        try:
            barrier.wait()
            return fn(s, i)
        finally:
            s.close()

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        return list(pool.map(_worker, range(WORKERS)))


def test_single_use_coupon_reserved_by_exactly_one_worker(file_sessions, seed):
    seed.coupon(code="ONCE", usage_limit=1)

    def _reserve(s, i):
        result = CouponLedger(s).reserve_atomic("ONCE", f"o{i}", f"u{i}", 15, NOW)
        s.commit()
        return result.success

    results = run_together(file_sessions, _reserve)

    assert results.count(True) == 1
    assert seed.coupon_counts("ONCE") == (0, 1)


def test_direct_consumption_never_exceeds_limit(file_sessions, seed):
    seed.coupon(code="TWICE", usage_limit=2)

    def _consume(s, i):
        result = CouponLedger(s).consume_atomic("TWICE", f"o{i}", f"u{i}", 100, NOW)
        s.commit()
        return result.success

    results = run_together(file_sessions, _consume)

    assert results.count(True) == 2
    assert seed.coupon_counts("TWICE") == (2, 0)


def test_stock_holds_never_oversell(file_sessions, seed):
    p = seed.product(stock=3)

    def _hold(s, i):
        try:
            ReservationStore(s).reserve(f"o{i}", [StockItem(p.id, "", 1)], 15, f"u{i}", NOW)
        except ConflictError:
            s.rollback()
            return False
        s.commit()
        return True

    results = run_together(file_sessions, _hold)

    assert results.count(True) == 3
    assert seed.stock(p.id) == 0
    held = seed.session.scalar(select(func.count()).select_from(StockReservation))
    assert held == 3
