"""SQLAlchemy models for the checkout store.

The schema covers the catalog tables read by pricing (products, variants,
shipping options, campaigns, offers, gift rules), the server-side cart, and
the tables mutated by checkout: orders, stock reservations, coupon counters
with their per-order reservation/redemption rows, refund attempts and the
year-scoped order-number counter.

All money columns are integer minor units. Datetimes are naive UTC.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, mapped_column, relationship

from .domain import (
    CouponReservationStatus,
    OrderStatus,
    RefundStatus,
    ReservationStatus,
    utcnow,
)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


# ---------------- Catalog ---------------- #

class Product(Base):
    """Catalog product.

    Attributes:
        price_minor: List price in minor units.
        sale_price_minor: Optional sale price; only effective when strictly
            lower than the list price and inside the sale window.
        stock: Available units for products without variants.
    """

    __tablename__ = "products"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    title = mapped_column(String(200), nullable=False, default="")
    price_minor = mapped_column(Integer, nullable=False, default=0)
    sale_price_minor = mapped_column(Integer, nullable=True)
    sale_start_at = mapped_column(DateTime, nullable=True)
    sale_end_at = mapped_column(DateTime, nullable=True)
    stock = mapped_column(Integer, nullable=False, default=0)
    category_id = mapped_column(String(36), nullable=True)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)

    variants = relationship("ProductVariant", back_populates="product", lazy="selectin")


class ProductVariant(Base):
    """Product variant with its own stock and an optional price override."""

    __tablename__ = "product_variants"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    product_id = mapped_column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    sku = mapped_column(String(64), nullable=False, default="")
    price_override_minor = mapped_column(Integer, nullable=True)
    stock = mapped_column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")


class DeliveryArea(Base):
    __tablename__ = "delivery_areas"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    name = mapped_column(String(120), nullable=False, default="")
    fee_minor = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)


class PickupPoint(Base):
    __tablename__ = "pickup_points"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    name = mapped_column(String(120), nullable=False, default="")
    address = mapped_column(String(255), nullable=False, default="")
    fee_minor = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)


class StorePickupConfig(Base):
    __tablename__ = "store_pickup_config"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    is_enabled = mapped_column(Boolean, nullable=False, default=True)
    fee_minor = mapped_column(Integer, nullable=False, default=0)
    address = mapped_column(String(255), nullable=False, default="")
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)


class Campaign(Base):
    """Store-wide or targeted automatic discount; at most one applies per quote.

    Attributes:
        type: ``percent`` (value is 0..100) or ``fixed`` (value in minor units).
        applies_to: ``all``, ``products`` or ``categories``.
        priority: Lower wins; defaults to 100.
    """

    __tablename__ = "campaigns"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    name = mapped_column(String(120), nullable=False, default="")
    type = mapped_column(String(16), nullable=False, default="percent")
    value = mapped_column(Integer, nullable=False, default=0)
    applies_to = mapped_column(String(16), nullable=False, default="all")
    product_ids = mapped_column(JSON, nullable=False, default=list)
    category_ids = mapped_column(JSON, nullable=False, default=list)
    priority = mapped_column(Integer, nullable=False, default=100)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    start_at = mapped_column(DateTime, nullable=True)
    end_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)


class Coupon(Base):
    """Redeemable discount code with usage counters.

    ``used_count + reserved_count`` never exceeds ``usage_limit`` when a
    limit is set; both counters only move through conditional updates in
    ``coupons.CouponLedger``.
    """

    __tablename__ = "coupons"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    code = mapped_column(String(64), nullable=False, unique=True)
    type = mapped_column(String(16), nullable=False, default="percent")
    value = mapped_column(Integer, nullable=False, default=0)
    min_order_total_minor = mapped_column(Integer, nullable=False, default=0)
    max_discount_minor = mapped_column(Integer, nullable=True)
    usage_limit = mapped_column(Integer, nullable=True)
    used_count = mapped_column(Integer, nullable=False, default=0)
    reserved_count = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    start_at = mapped_column(DateTime, nullable=True)
    end_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)


class CouponReservation(Base):
    """In-flight hold on one unit of a coupon's capacity for one order."""

    __tablename__ = "coupon_reservations"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    coupon_id = mapped_column(String(36), ForeignKey("coupons.id"), nullable=False)
    order_id = mapped_column(String(36), nullable=False, index=True)
    user_id = mapped_column(String(64), nullable=True)
    coupon_code = mapped_column(String(64), nullable=False)
    status = mapped_column(String(16), nullable=False, default=CouponReservationStatus.ACTIVE.value)
    expires_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="ux_coupon_reservation_order"),
    )


class CouponRedemption(Base):
    """Permanent record that a coupon was used by an order (at most once)."""

    __tablename__ = "coupon_redemptions"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    coupon_id = mapped_column(String(36), ForeignKey("coupons.id"), nullable=False)
    order_id = mapped_column(String(36), nullable=False)
    user_id = mapped_column(String(64), nullable=True)
    coupon_code = mapped_column(String(64), nullable=False)
    discount_minor = mapped_column(Integer, nullable=False, default=0)
    redeemed_at = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="ux_coupon_redemption_order"),
    )


class Offer(Base):
    """Promotional offer evaluated after the coupon.

    Attributes:
        type: ``PERCENT_OFF``, ``FIXED_OFF``, ``FREE_SHIPPING`` or
            ``BUY_X_GET_Y``.
        stackable: When False, evaluation stops after this offer.
    """

    __tablename__ = "offers"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    name = mapped_column(String(120), nullable=False, default="")
    type = mapped_column(String(16), nullable=False)
    value = mapped_column(Integer, nullable=False, default=0)
    min_total_minor = mapped_column(Integer, nullable=False, default=0)
    max_discount_minor = mapped_column(Integer, nullable=True)
    stackable = mapped_column(Boolean, nullable=False, default=True)
    priority = mapped_column(Integer, nullable=False, default=100)
    product_ids = mapped_column(JSON, nullable=False, default=list)
    category_ids = mapped_column(JSON, nullable=False, default=list)
    buy_product_id = mapped_column(String(36), nullable=True)
    buy_variant_id = mapped_column(String(36), nullable=True)
    buy_qty = mapped_column(Integer, nullable=False, default=1)
    get_product_id = mapped_column(String(36), nullable=True)
    get_variant_id = mapped_column(String(36), nullable=True)
    get_qty = mapped_column(Integer, nullable=False, default=1)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    start_at = mapped_column(DateTime, nullable=True)
    end_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)


class GiftRule(Base):
    """Grants one unit of a gift product when all set conditions match."""

    __tablename__ = "gift_rules"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    name = mapped_column(String(120), nullable=False, default="")
    gift_product_id = mapped_column(String(36), nullable=False)
    gift_variant_id = mapped_column(String(36), nullable=True)
    min_order_total_minor = mapped_column(Integer, nullable=True)
    required_product_id = mapped_column(String(36), nullable=True)
    required_category_id = mapped_column(String(36), nullable=True)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    start_at = mapped_column(DateTime, nullable=True)
    end_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)


class CartItem(Base):
    __tablename__ = "cart_items"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id = mapped_column(String(64), nullable=False, index=True)
    product_id = mapped_column(String(36), nullable=False)
    variant_id = mapped_column(String(36), nullable=False, default="")
    qty = mapped_column(Integer, nullable=False, default=1)
    added_at = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", "variant_id", name="ux_cart_line"),
    )


# ---------------- Orders ---------------- #

class OrderCounter(Base):
    """One row per calendar year holding the last issued order sequence."""

    __tablename__ = "order_counters"

    year = mapped_column(Integer, primary_key=True)
    seq = mapped_column(Integer, nullable=False, default=0)


class Order(Base):
    """Aggregate root of a purchase.

    The pricing snapshot is frozen at checkout time. ``checkout_key`` plus
    ``user_id`` and ``payment_method`` identify an idempotent checkout
    attempt; ``checkout_request_hash`` detects key reuse with a different
    payload. ``cancel_key`` records the key of the request that cancelled an
    unpaid order.
    """

    __tablename__ = "orders"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number = mapped_column(String(32), nullable=False, unique=True)
    user_id = mapped_column(String(64), nullable=False, index=True)
    payment_method = mapped_column(String(8), nullable=False)
    status = mapped_column(String(24), nullable=False, default=OrderStatus.PENDING_PAYMENT.value)

    items = mapped_column(JSON, nullable=False, default=list)
    gifts = mapped_column(JSON, nullable=False, default=list)
    shipping = mapped_column(JSON, nullable=False, default=dict)

    currency = mapped_column(String(3), nullable=False)
    subtotal_minor = mapped_column(Integer, nullable=False, default=0)
    shipping_fee_minor = mapped_column(Integer, nullable=False, default=0)
    campaign_discount_minor = mapped_column(Integer, nullable=False, default=0)
    coupon_discount_minor = mapped_column(Integer, nullable=False, default=0)
    offer_discount_minor = mapped_column(Integer, nullable=False, default=0)
    discount_total_minor = mapped_column(Integer, nullable=False, default=0)
    vat_rate = mapped_column(String(8), nullable=False, default="0")
    vat_minor = mapped_column(Integer, nullable=False, default=0)
    total_before_vat_minor = mapped_column(Integer, nullable=False, default=0)
    total_minor = mapped_column(Integer, nullable=False, default=0)
    coupon_code = mapped_column(String(64), nullable=True)
    campaign_id = mapped_column(String(36), nullable=True)

    payment_session_id = mapped_column(String(128), nullable=True, unique=True)
    payment_url = mapped_column(String(512), nullable=True)
    payment_intent_id = mapped_column(String(128), nullable=True)
    charge_id = mapped_column(String(128), nullable=True)

    refund_status = mapped_column(String(16), nullable=True)
    refund_reason = mapped_column(String(64), nullable=True)
    refund_requested_minor = mapped_column(Integer, nullable=True)
    amount_refunded_minor = mapped_column(Integer, nullable=False, default=0)
    refund_provider_id = mapped_column(String(128), nullable=True)
    refund_failure_message = mapped_column(String(500), nullable=True)
    refund_requested_at = mapped_column(DateTime, nullable=True)
    refunded_at = mapped_column(DateTime, nullable=True)

    checkout_key = mapped_column(String(200), nullable=True)
    checkout_request_hash = mapped_column(String(64), nullable=True)
    cancel_key = mapped_column(String(200), nullable=True)
    cancel_reason = mapped_column(String(200), nullable=True)

    created_at = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = mapped_column(DateTime, nullable=True)
    confirmed_at = mapped_column(DateTime, nullable=True)
    cancelled_at = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "checkout_key", "payment_method", name="ux_order_checkout_key"),
    )


class StockReservation(Base):
    """Hold on inventory tied 1:1 to an order.

    Attributes:
        items: List of ``{"product_id", "variant_id", "qty"}`` decremented
            from stock when the hold was created.
        status: ``reserved``, ``confirmed``, ``released`` or ``expired``.
        expires_at: TTL deadline while ``reserved``; cleared on confirm.
    """

    __tablename__ = "stock_reservations"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id = mapped_column(String(36), nullable=False, unique=True)
    user_id = mapped_column(String(64), nullable=True)
    items = mapped_column(JSON, nullable=False, default=list)
    status = mapped_column(String(16), nullable=False, default=ReservationStatus.RESERVED.value)
    expires_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class RefundRecord(Base):
    """One refund attempt against an order, keyed by its idempotency key."""

    __tablename__ = "refund_records"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    idempotency_key = mapped_column(String(200), nullable=False, unique=True)
    amount_minor = mapped_column(Integer, nullable=False)
    reason = mapped_column(String(64), nullable=True)
    request_hash = mapped_column(String(64), nullable=True)
    status = mapped_column(String(16), nullable=False, default=RefundStatus.PENDING.value)
    provider_refund_id = mapped_column(String(128), nullable=True)
    failure_message = mapped_column(String(500), nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
