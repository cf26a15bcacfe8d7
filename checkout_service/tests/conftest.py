from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from checkout_service.adapters import LoggingNotifier, StubPaymentGateway
from checkout_service.checkout import CheckoutOrchestrator
from checkout_service.db import build_engine, build_session_factory, init_db
from checkout_service.domain import CartLine, CheckoutCommand, CurrentUser, ShippingSelection
from checkout_service.main import create_app
from checkout_service.models import (
    CartItem,
    Campaign,
    Coupon,
    DeliveryArea,
    GiftRule,
    Offer,
    PickupPoint,
    Product,
    ProductVariant,
    StorePickupConfig,
)
from checkout_service.settings import Settings

NOW = datetime(2026, 3, 1, 12, 0, 0)


class Clock:
    """Settable clock shared by the orchestrators under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Catalog:
    """Seeds catalog and cart rows; every helper commits."""

    def __init__(self, session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def product(self, title="Widget", price=1000, stock=10, **kw) -> Product:
        return self._save(Product(title=title, price_minor=price, stock=stock, **kw))

    def variant(self, product, stock=5, price_override=None, sku="V1") -> ProductVariant:
        v = self._save(ProductVariant(product_id=product.id, stock=stock, price_override_minor=price_override,
                                      sku=sku))
        self.session.refresh(product)
        return v

    def delivery_area(self, fee=250, name="Center") -> DeliveryArea:
        return self._save(DeliveryArea(name=name, fee_minor=fee))

    def pickup_point(self, fee=0, name="Locker 1") -> PickupPoint:
        return self._save(PickupPoint(name=name, fee_minor=fee))

    def store_pickup(self, fee=0, enabled=True) -> StorePickupConfig:
        return self._save(StorePickupConfig(fee_minor=fee, is_enabled=enabled))

    def campaign(self, **kw) -> Campaign:
        kw.setdefault("name", "Campaign")
        return self._save(Campaign(**kw))

    def coupon(self, code="SAVE10", type="percent", value=10, min_total=0, **kw) -> Coupon:
        return self._save(Coupon(code=code, type=type, value=value, min_order_total_minor=min_total, **kw))

    def offer(self, **kw) -> Offer:
        kw.setdefault("name", kw["type"].lower())
        return self._save(Offer(**kw))

    def gift_rule(self, gift, **kw) -> GiftRule:
        kw.setdefault("name", "Gift")
        return self._save(GiftRule(gift_product_id=gift.id, **kw))

    def cart(self, user_id, product, qty=1, variant_id="") -> CartItem:
        return self._save(CartItem(user_id=user_id, product_id=product.id, variant_id=variant_id, qty=qty))

    def stock(self, product_id) -> int:
        return self.session.scalar(select(Product.stock).where(Product.id == product_id))

    def coupon_counts(self, code) -> tuple:
        row = self.session.execute(
            select(Coupon.used_count, Coupon.reserved_count).where(Coupon.code == code)
        ).one()
        return tuple(row)


@pytest.fixture
def settings():
    return Settings(_env_file=None, database_url="sqlite://", vat_rate=Decimal("0.18"), currency="ILS",
                    payment_webhook_secret="whsec_test")


@pytest.fixture
def session_factory(settings):
    engine = build_engine(settings.database_url)
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def catalog(session):
    return Catalog(session)


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def gateway():
    return StubPaymentGateway()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def orchestrator(session, settings, gateway, notifier, clock):
    return CheckoutOrchestrator(session, settings, gateway, notifier, clock)


@pytest.fixture
def client(settings, gateway, notifier, session_factory, clock):
    app = create_app(settings=settings, gateway=gateway, notifier=notifier,
                     session_factory=session_factory, clock=clock)
    return TestClient(app)


@pytest.fixture
def delivery(catalog):
    area = catalog.delivery_area(fee=250)
    return ShippingSelection(mode="DELIVERY", delivery_area_id=area.id)


def command(product, qty=1, shipping=None, coupon=None, variant_id=""):
    return CheckoutCommand(
        shipping=shipping or ShippingSelection(mode="STORE_PICKUP"),
        items=(CartLine(product.id, variant_id, qty),),
        coupon_code=coupon,
    )


@pytest.fixture
def make_command():
    return command


@pytest.fixture
def place_card_order(orchestrator):
    """Create a pending card order and return it."""

    def _place(product, qty=1, coupon=None, shipping=None, user_id="u1", key="card-1"):
        outcome = orchestrator.checkout_card_payment(
            CurrentUser(user_id), command(product, qty, shipping, coupon), key
        )
        return outcome.order

    return _place


@pytest.fixture
def make_event():
    def _event(order, event_type="checkout.session.completed", **overrides):
        obj = {
            "id": order.payment_session_id,
            "payment_status": "paid",
            "payment_intent": order.payment_intent_id,
            "amount_total": order.total_minor,
            "currency": order.currency.lower(),
        }
        obj.update(overrides)
        return {"id": "evt_test", "type": event_type, "data": {"object": obj}}

    return _event
