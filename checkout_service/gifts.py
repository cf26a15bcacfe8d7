"""Gift rules and gift grants.

Rule-based gifts grant one unit each when every condition set on the rule
matches; offer-based gifts come from buy-X-get-Y offers. All requests are
merged by ``(product, variant)`` with summed quantities and then checked
against live stock, net of what the cart itself takes from the same
product.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from .coupons import is_active_at
from .models import GiftRule, Product, ProductVariant
from .money import clamp
from .offers import GiftRequest

GIFT_OUT_OF_STOCK = "GIFT_OUT_OF_STOCK"
GIFT_PARTIAL_STOCK = "GIFT_PARTIAL_STOCK"
GIFT_PRODUCT_NOT_FOUND = "GIFT_PRODUCT_NOT_FOUND"


@dataclass
class GiftsResult:
    gifts: List[dict] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)


def load_active_rules(session: Session, now: datetime) -> list[GiftRule]:
    rows = session.scalars(
        select(GiftRule)
        .where(GiftRule.is_active.is_(True))
        .order_by(GiftRule.created_at.desc(), GiftRule.id.asc())
    ).all()
    return [g for g in rows if is_active_at(g, now)]


def match_rules(rules: list[GiftRule], lines, order_total_minor: int) -> list[GiftRequest]:
    """Return one-unit gift requests for every rule the cart satisfies."""
    product_ids = {li.product_id for li in lines}
    category_ids = {li.category_id for li in lines if li.category_id}
    out = []
    for g in rules:
        if g.min_order_total_minor is not None and order_total_minor < g.min_order_total_minor:
            continue
        if g.required_product_id and g.required_product_id not in product_ids:
            continue
        if g.required_category_id and g.required_category_id not in category_ids:
            continue
        out.append(GiftRequest(g.gift_product_id, g.gift_variant_id or "", 1, "rule", g.id))
    return out


def merge_requests(requests: list[GiftRequest]) -> list[GiftRequest]:
    """Merge requests by ``(product, variant)``, summing quantities into 1..99.

    The first request for a key decides the reported source.
    """
    merged: dict[tuple[str, str], GiftRequest] = {}
    for r in requests:
        if not r.product_id:
            continue
        key = (r.product_id, r.variant_id or "")
        prev = merged.get(key)
        if prev is None:
            merged[key] = GiftRequest(r.product_id, r.variant_id or "", clamp(r.qty, 1, 99),
                                      r.source, r.source_id)
        else:
            merged[key] = GiftRequest(prev.product_id, prev.variant_id, clamp(prev.qty + r.qty, 1, 99),
                                      prev.source, prev.source_id)
    return list(merged.values())


def grant(session: Session, requests: list[GiftRequest], lines) -> GiftsResult:
    """Check merged requests against stock.

    Args:
        session: Session used for catalog reads.
        requests: Merged gift requests.
        lines: Priced cart lines; their quantities are subtracted from the
            stock available for a gift of the same product/variant.

    Returns:
        GiftsResult: Granted gifts (possibly reduced quantity) and warnings.
            ``GIFT_OUT_OF_STOCK`` warnings block checkout.
    """
    out = GiftsResult()
    if not requests:
        return out

    in_cart: dict[tuple[str, str], int] = {}
    for li in lines:
        key = (li.product_id, li.variant_id or "")
        in_cart[key] = in_cart.get(key, 0) + li.qty

    for req in requests:
        product = session.get(Product, req.product_id)
        if product is None or not product.is_active:
            out.warnings.append({
                "type": GIFT_PRODUCT_NOT_FOUND,
                "product_id": req.product_id,
                "variant_id": req.variant_id or None,
                "message": "Gift product not found or inactive",
            })
            continue

        if req.variant_id:
            variant = session.get(ProductVariant, req.variant_id)
            stock = variant.stock if variant is not None and variant.product_id == product.id else 0
        else:
            stock = product.stock
        available = max(0, (stock or 0) - in_cart.get((req.product_id, req.variant_id or ""), 0))
        granted = min(req.qty, available)

        if granted <= 0:
            out.warnings.append({
                "type": GIFT_OUT_OF_STOCK,
                "product_id": req.product_id,
                "variant_id": req.variant_id or None,
                "title": product.title,
                "requested_qty": req.qty,
                "available_stock": 0,
                "message": f'Gift "{product.title}" is out of stock',
            })
            continue
        if granted < req.qty:
            out.warnings.append({
                "type": GIFT_PARTIAL_STOCK,
                "product_id": req.product_id,
                "variant_id": req.variant_id or None,
                "title": product.title,
                "requested_qty": req.qty,
                "granted_qty": granted,
                "available_stock": available,
                "message": f'Gift "{product.title}" limited to {granted} (requested {req.qty})',
            })

        out.gifts.append({
            "product_id": product.id,
            "variant_id": req.variant_id or "",
            "title": product.title,
            "qty": granted,
            "source": req.source,
        })
    return out
