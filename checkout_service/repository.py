"""Order persistence helpers: numbering, construction, lookup and cart cleanup.

Derived fields of an order (pricing snapshot, discount total, number) are
computed by the explicit ``build_order`` factory at construction time so the
model itself carries no save hooks.
"""

import hashlib
import json
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from .domain import OrderStatus, PaymentMethod, ShippingSelection, utcnow
from .models import CartItem, Order, OrderCounter
from .pricing import PricedQuote

ORDER_NUMBER_PREFIX = "ORD"


def canonical_hash(payload: dict) -> str:
    """Deterministic SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def next_order_number(session: Session, now: Optional[datetime] = None) -> str:
    """Issue the next year-scoped order number, e.g. ``ORD-2026-000042``.

    The per-year counter row is bumped with a single ``UPDATE seq = seq + 1``
    so concurrent checkouts serialize on that row; the row is created on the
    first order of a year.
    """
    year = (now or utcnow()).year
    res = session.execute(
        update(OrderCounter).where(OrderCounter.year == year).values(seq=OrderCounter.seq + 1)
    )
    if res.rowcount == 0:
        session.add(OrderCounter(year=year, seq=1))
        session.flush()
    seq = session.scalar(select(OrderCounter.seq).where(OrderCounter.year == year))
    return f"{ORDER_NUMBER_PREFIX}-{year}-{seq:06d}"


def build_order(
    session: Session,
    *,
    quote: PricedQuote,
    user_id: str,
    payment_method: PaymentMethod,
    shipping: ShippingSelection,
    checkout_key: str,
    request_hash: str,
    now: Optional[datetime] = None,
    order_id: Optional[str] = None,
) -> Order:
    """Construct (and add to the session) a new order from a priced quote.

    Returns:
        Order: The pending order, ``pending_cod`` or ``pending_payment``
        depending on ``payment_method``.
    """
    now = now or utcnow()
    status = OrderStatus.PENDING_COD if payment_method == PaymentMethod.COD else OrderStatus.PENDING_PAYMENT
    order = Order(
        id=order_id or str(uuid.uuid4()),
        order_number=next_order_number(session, now),
        user_id=user_id,
        payment_method=payment_method.value,
        status=status.value,
        items=[
            {
                "product_id": li.product_id,
                "variant_id": li.variant_id,
                "title": li.title,
                "category_id": li.category_id,
                "qty": li.qty,
                "unit_price_minor": li.unit_price_minor,
                "line_total_minor": li.line_total_minor,
            }
            for li in quote.lines
        ],
        gifts=[dict(g) for g in quote.gifts],
        shipping={
            "mode": quote.shipping_mode,
            "delivery_area_id": shipping.delivery_area_id,
            "pickup_point_id": shipping.pickup_point_id,
            "address": shipping.address or None,
        },
        currency=quote.currency,
        subtotal_minor=quote.subtotal_minor,
        shipping_fee_minor=quote.shipping_fee_minor,
        campaign_discount_minor=quote.campaign_discount_minor,
        coupon_discount_minor=quote.coupon_discount_minor,
        offer_discount_minor=quote.offer_discount_minor,
        discount_total_minor=quote.discount_total_minor,
        vat_rate=str(quote.vat_rate),
        vat_minor=quote.vat_minor,
        total_before_vat_minor=quote.total_before_vat_minor,
        total_minor=quote.total_minor,
        coupon_code=quote.coupon_code,
        campaign_id=quote.campaign_id,
        checkout_key=checkout_key,
        checkout_request_hash=request_hash,
        created_at=now,
        updated_at=now,
    )
    session.add(order)
    session.flush()
    return order


def find_checkout_order(session: Session, user_id: str, checkout_key: str,
                        payment_method: PaymentMethod) -> Optional[Order]:
    return session.scalar(
        select(Order).where(
            Order.user_id == user_id,
            Order.checkout_key == checkout_key,
            Order.payment_method == payment_method.value,
        )
    )


def find_by_session(session: Session, payment_session_id: str) -> Optional[Order]:
    if not payment_session_id:
        return None
    return session.scalar(select(Order).where(Order.payment_session_id == payment_session_id))


def transition(session: Session, order_id: str, from_status: OrderStatus, to_status: OrderStatus,
               **values) -> bool:
    """Conditionally move an order between states.

    Returns:
        bool: True when this call performed the transition; False when the
            order was no longer in ``from_status``.
    """
    res = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == from_status.value)
        .values(status=to_status.value, updated_at=utcnow(), **values)
    )
    return res.rowcount == 1


class CartRepository:
    """Server-side cart access."""

    def __init__(self, session: Session):
        self.session = session

    def lines(self, user_id: str) -> list[CartItem]:
        return list(self.session.scalars(
            select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.id)
        ).all())

    def remove_purchased(self, user_id: str, pairs: Iterable[tuple[str, str]]) -> int:
        """Delete only the purchased ``(product, variant)`` pairs from a user's cart.

        Lines added to the cart for other products while checkout was in
        flight are kept.

        Returns:
            int: Number of cart rows deleted.
        """
        conds = [
            and_(CartItem.product_id == pid, CartItem.variant_id == (vid or ""))
            for pid, vid in {(p, v or "") for p, v in pairs}
        ]
        if not conds:
            return 0
        res = self.session.execute(
            delete(CartItem).where(CartItem.user_id == user_id, or_(*conds))
        )
        return res.rowcount or 0


def purchased_pairs(order: Order) -> list[tuple[str, str]]:
    return [(it["product_id"], it.get("variant_id") or "") for it in order.items or []]
