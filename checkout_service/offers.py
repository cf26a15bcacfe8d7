"""Promotional offers evaluated after the coupon.

Offers are considered in priority order (lower first, newest on ties).
Each one is gated by its minimum total against the post-coupon subtotal and
by its product/category targeting, and monetary discounts are capped by the
offer's own ceiling and by what is left of the subtotal. A non-stackable
offer ends evaluation once it has been considered. Free shipping produces
no monetary discount; buy-X-get-Y produces gift requests.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from .coupons import is_active_at
from .models import Offer
from .money import cap, clamp, percent_of

PERCENT_OFF = "PERCENT_OFF"
FIXED_OFF = "FIXED_OFF"
FREE_SHIPPING = "FREE_SHIPPING"
BUY_X_GET_Y = "BUY_X_GET_Y"


@dataclass(frozen=True)
class GiftRequest:
    """A request for gift units, before stock is checked."""

    product_id: str
    variant_id: str
    qty: int
    source: str
    source_id: str


@dataclass
class OffersResult:
    applied: List[dict] = field(default_factory=list)
    discount_minor: int = 0
    free_shipping: bool = False
    gift_requests: List[GiftRequest] = field(default_factory=list)


def load_active_offers(session: Session, now: datetime) -> list[Offer]:
    rows = session.scalars(
        select(Offer)
        .where(Offer.is_active.is_(True))
        .order_by(Offer.priority.asc(), Offer.created_at.desc(), Offer.id.asc())
    ).all()
    return [o for o in rows if is_active_at(o, now)]


def _eligible_minor(offer: Offer, lines) -> int:
    products = set(offer.product_ids or [])
    categories = set(offer.category_ids or [])
    total = 0
    for li in lines:
        if not products and not categories:
            total += li.line_total_minor
        elif li.product_id in products or (li.category_id and li.category_id in categories):
            total += li.line_total_minor
    return total


def _cart_qty(lines, product_id: str, variant_id: str | None) -> int:
    qty = 0
    for li in lines:
        if li.product_id != product_id:
            continue
        if variant_id and li.variant_id != variant_id:
            continue
        qty += li.qty
    return qty


def evaluate_offers(offers: list[Offer], lines, subtotal_after_coupon_minor: int,
                    shipping_fee_minor: int) -> OffersResult:
    """Apply ``offers`` to priced ``lines``.

    Args:
        offers: Active offers, already in evaluation order.
        lines: Priced quote lines (``product_id``, ``variant_id``,
            ``category_id``, ``qty``, ``line_total_minor``).
        subtotal_after_coupon_minor: Base the discounts are taken from.
        shipping_fee_minor: Shipping fee before offers.

    Returns:
        OffersResult: Applied offers, cumulative discount (never above the
        base), free-shipping flag and buy-X-get-Y gift requests.
    """
    out = OffersResult()
    if not lines:
        return out

    for offer in offers:
        if offer.min_total_minor and subtotal_after_coupon_minor < offer.min_total_minor:
            continue
        eligible = _eligible_minor(offer, lines)
        if eligible <= 0:
            continue
        remaining = max(0, subtotal_after_coupon_minor - out.discount_minor)

        if offer.type == FREE_SHIPPING:
            if shipping_fee_minor > 0:
                out.free_shipping = True
                out.applied.append({"offer_id": offer.id, "type": offer.type, "name": offer.name,
                                    "discount_minor": 0})
        elif offer.type in (PERCENT_OFF, FIXED_OFF):
            if offer.type == PERCENT_OFF:
                amount = percent_of(eligible, offer.value)
            else:
                amount = max(0, offer.value or 0)
            amount = cap(amount, offer.max_discount_minor or None, remaining)
            if amount > 0:
                out.discount_minor += amount
                out.applied.append({"offer_id": offer.id, "type": offer.type, "name": offer.name,
                                    "value": offer.value, "discount_minor": amount})
        elif offer.type == BUY_X_GET_Y:
            if offer.buy_product_id and offer.get_product_id:
                buy_qty = clamp(offer.buy_qty or 1, 1, 999)
                in_cart = _cart_qty(lines, offer.buy_product_id, offer.buy_variant_id)
                if in_cart >= buy_qty:
                    units = clamp((in_cart // buy_qty) * clamp(offer.get_qty or 1, 1, 50), 1, 50)
                    out.gift_requests.append(GiftRequest(
                        product_id=offer.get_product_id,
                        variant_id=offer.get_variant_id or "",
                        qty=units,
                        source="offer",
                        source_id=offer.id,
                    ))
                    out.applied.append({"offer_id": offer.id, "type": offer.type, "name": offer.name,
                                        "discount_minor": 0, "gift_product_id": offer.get_product_id,
                                        "gift_qty": units})
        else:
            continue

        if not offer.stackable:
            break

    out.discount_minor = min(out.discount_minor, subtotal_after_coupon_minor)
    return out
