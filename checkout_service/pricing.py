"""Pricing engine: cart + shipping selection + coupon code → priced quote.

The computation is done entirely in integer minor units and always runs the
same seven steps in the same order, because each step's base depends on the
previous one:

1. line items at their effective unit price (sale price when active),
2. shipping fee for the selected mode,
3. at most one campaign,
4. at most one coupon on the post-campaign subtotal,
5. prioritized, optionally stackable offers on the post-coupon subtotal,
6. gifts from rules and from buy-X-get-Y offers, checked against stock,
7. VAT back-derived from the VAT-inclusive total.

Quoting reads the catalog only; it never writes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import gifts as gift_rules
from .coupons import CouponLedger, coupon_discount_minor, has_capacity, is_active_at
from .domain import CartLine, ShippingMode, ShippingSelection, StockItem, utcnow
from .errors import ConflictError, ValidationError
from .inventory import InventoryStore
from .models import Campaign, DeliveryArea, PickupPoint, Product, ProductVariant, StorePickupConfig
from .money import cap, clamp, percent_of, to_major, vat_breakdown
from .offers import evaluate_offers, load_active_offers
from .settings import Settings

logger = logging.getLogger("checkout.pricing")

MAX_LINE_QTY = 999


@dataclass(frozen=True)
class QuoteLine:
    """A priced cart line.

    Attributes:
        unit_price_minor: Effective unit price (sale price when active).
        list_price_minor: Price before any sale.
        line_total_minor: ``unit_price_minor * qty``.
    """

    product_id: str
    variant_id: str
    title: str
    category_id: Optional[str]
    qty: int
    unit_price_minor: int
    list_price_minor: int
    line_total_minor: int

    @property
    def on_sale(self) -> bool:
        return self.unit_price_minor < self.list_price_minor

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "category_id": self.category_id,
            "qty": self.qty,
            "unit_price_minor": self.unit_price_minor,
            "list_price_minor": self.list_price_minor,
            "line_total_minor": self.line_total_minor,
            "on_sale": self.on_sale,
            "unit_price": str(to_major(self.unit_price_minor)),
            "line_total": str(to_major(self.line_total_minor)),
        }


@dataclass
class PricedQuote:
    """Result of ``PricingEngine.quote``. Carries no identity and no side effects."""

    currency: str
    lines: List[QuoteLine]
    subtotal_minor: int
    shipping_fee_base_minor: int
    shipping_fee_minor: int
    free_shipping: bool
    campaign_id: Optional[str]
    campaign_name: Optional[str]
    campaign_discount_minor: int
    coupon_code: Optional[str]
    coupon_discount_minor: int
    offer_discount_minor: int
    applied_offers: List[dict]
    gifts: List[dict]
    gift_warnings: List[dict]
    vat_rate: Decimal
    total_before_vat_minor: int
    vat_minor: int
    total_minor: int
    shipping_mode: str = ""
    computed_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def discount_total_minor(self) -> int:
        return self.campaign_discount_minor + self.coupon_discount_minor + self.offer_discount_minor

    def blocking_gift_warnings(self) -> List[dict]:
        return [w for w in self.gift_warnings if w["type"] == gift_rules.GIFT_OUT_OF_STOCK]

    def stock_items(self) -> List[StockItem]:
        """Items and gifts to hold in one reservation."""
        items = [StockItem(li.product_id, li.variant_id, li.qty) for li in self.lines]
        items += [StockItem(g["product_id"], g.get("variant_id") or "", int(g["qty"])) for g in self.gifts]
        return items

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "items": [li.to_dict() for li in self.lines],
            "gifts": list(self.gifts),
            "subtotal_minor": self.subtotal_minor,
            "shipping_mode": self.shipping_mode,
            "shipping_fee_base_minor": self.shipping_fee_base_minor,
            "shipping_fee_minor": self.shipping_fee_minor,
            "free_shipping": self.free_shipping,
            "discounts": {
                "campaign": {"id": self.campaign_id, "name": self.campaign_name,
                             "amount_minor": self.campaign_discount_minor},
                "coupon": {"code": self.coupon_code, "amount_minor": self.coupon_discount_minor},
                "offer": {"amount_minor": self.offer_discount_minor, "applied": list(self.applied_offers)},
            },
            "discount_total_minor": self.discount_total_minor,
            "vat_rate": str(self.vat_rate),
            "vat_minor": self.vat_minor,
            "total_before_vat_minor": self.total_before_vat_minor,
            "total_minor": self.total_minor,
            "major": {
                "subtotal": str(to_major(self.subtotal_minor)),
                "shipping_fee": str(to_major(self.shipping_fee_minor)),
                "discount_total": str(to_major(self.discount_total_minor)),
                "vat": str(to_major(self.vat_minor)),
                "total_before_vat": str(to_major(self.total_before_vat_minor)),
                "total": str(to_major(self.total_minor)),
            },
            "warnings": list(self.gift_warnings),
        }


def sale_active(product: Product, now: datetime) -> bool:
    """A sale applies only when set, strictly cheaper than list price, and in its window."""
    if product.sale_price_minor is None:
        return False
    if not product.sale_price_minor < product.price_minor:
        return False
    if product.sale_start_at is not None and now < product.sale_start_at:
        return False
    if product.sale_end_at is not None and now > product.sale_end_at:
        return False
    return True


def effective_unit_price_minor(product: Product, variant: Optional[ProductVariant], now: datetime) -> int:
    base = product.price_minor
    if variant is not None and (variant.price_override_minor or 0) > 0:
        base = variant.price_override_minor
    if sale_active(product, now) and product.sale_price_minor < base:
        return product.sale_price_minor
    return base


def merge_cart_lines(cart_lines: List[CartLine]) -> List[CartLine]:
    merged: dict[tuple[str, str], int] = {}
    for c in cart_lines:
        pid = (c.product_id or "").strip()
        if not pid:
            continue
        key = (pid, (c.variant_id or "").strip())
        merged[key] = clamp(merged.get(key, 0) + clamp(c.qty, 1, MAX_LINE_QTY), 1, MAX_LINE_QTY)
    return [CartLine(pid, vid, qty) for (pid, vid), qty in merged.items()]


class PricingEngine:
    """Computes quotes from the catalog tables of one session.

    Args:
        session: Session used for read-only catalog lookups.
        settings: Provides the currency and VAT configuration.
    """

    def __init__(self, session: Session, settings: Settings):
        self.session = session
        self.settings = settings
        self.inventory = InventoryStore(session)
        self.coupons = CouponLedger(session)

    # ---- step 1 ----
    def resolve_lines(self, cart_lines: List[CartLine], now: datetime) -> List[QuoteLine]:
        if not cart_lines:
            raise ValidationError("EMPTY_CART", "Cart is empty")
        merged = merge_cart_lines(cart_lines)
        if not merged:
            raise ValidationError("INVALID_CART_ITEMS", "No valid product_id in cart items")

        products = self.inventory.load_products(c.product_id for c in merged)
        lines: List[QuoteLine] = []
        for c in merged:
            p = products.get(c.product_id)
            if p is None:
                continue
            variant = None
            if p.variants:
                variant = next((v for v in p.variants if v.id == c.variant_id), None)
                if variant is None:
                    raise ValidationError("VARIANT_REQUIRED", "variant_id is required for this product",
                                          details={"product_id": p.id})
                stock = max(0, variant.stock)
            else:
                stock = max(0, p.stock)
            variant_id = variant.id if variant is not None else ""

            if stock <= 0 or c.qty > stock:
                code = "OUT_OF_STOCK" if stock <= 0 else "OUT_OF_STOCK_PARTIAL"
                raise ConflictError(
                    code,
                    "Product is out of stock" if stock <= 0 else "Requested quantity exceeds available stock",
                    details={"items": [{"product_id": p.id, "variant_id": variant_id or None,
                                        "title": p.title, "requested": c.qty, "available": stock}]},
                )

            unit = effective_unit_price_minor(p, variant, now)
            list_price = variant.price_override_minor if variant is not None and (
                variant.price_override_minor or 0) > 0 else p.price_minor
            lines.append(QuoteLine(
                product_id=p.id, variant_id=variant_id, title=p.title, category_id=p.category_id,
                qty=c.qty, unit_price_minor=unit, list_price_minor=list_price,
                line_total_minor=unit * c.qty,
            ))

        if not lines:
            raise ValidationError("NO_AVAILABLE_ITEMS", "No available items in cart")
        return lines

    # ---- step 2 ----
    def resolve_shipping_fee(self, shipping: Optional[ShippingSelection]) -> tuple[str, int]:
        mode = ((shipping.mode if shipping else None) or "").strip().upper()
        if not mode:
            raise ValidationError("MISSING_SHIPPING_MODE", "shipping.mode is required")

        if mode == ShippingMode.DELIVERY.value:
            if not shipping.delivery_area_id:
                raise ValidationError("MISSING_DELIVERY_AREA", "delivery_area_id is required for DELIVERY")
            area = self.session.get(DeliveryArea, shipping.delivery_area_id)
            if area is None or not area.is_active:
                raise ValidationError("INVALID_DELIVERY_AREA", "Delivery area not found")
            return mode, max(0, area.fee_minor)

        if mode == ShippingMode.PICKUP_POINT.value:
            if not shipping.pickup_point_id:
                raise ValidationError("MISSING_PICKUP_POINT", "pickup_point_id is required for PICKUP_POINT")
            point = self.session.get(PickupPoint, shipping.pickup_point_id)
            if point is None or not point.is_active:
                raise ValidationError("INVALID_PICKUP_POINT", "Pickup point not found")
            return mode, max(0, point.fee_minor)

        if mode == ShippingMode.STORE_PICKUP.value:
            cfg = self.session.scalar(
                select(StorePickupConfig).order_by(StorePickupConfig.created_at.desc(),
                                                   StorePickupConfig.id.desc()).limit(1)
            )
            return mode, max(0, cfg.fee_minor) if cfg is not None and cfg.is_enabled else 0

        raise ValidationError("INVALID_SHIPPING_MODE", "Invalid shipping mode")

    # ---- step 3 ----
    def resolve_campaign(self, lines: List[QuoteLine], subtotal_minor: int,
                         now: datetime) -> tuple[Optional[Campaign], int]:
        rows = self.session.scalars(select(Campaign).where(Campaign.is_active.is_(True))).all()
        scored = []
        for c in rows:
            if not is_active_at(c, now):
                continue
            eligible = 0
            for li in lines:
                if c.applies_to in (None, "", "all"):
                    eligible += li.line_total_minor
                elif c.applies_to == "products" and li.product_id in (c.product_ids or []):
                    eligible += li.line_total_minor
                elif c.applies_to == "categories" and li.category_id in (c.category_ids or []):
                    eligible += li.line_total_minor
            potential = 0
            if eligible > 0:
                if c.type == "percent":
                    potential = percent_of(eligible, c.value)
                else:
                    potential = cap(c.value or 0, eligible)
                potential = min(potential, subtotal_minor)
            scored.append((c, potential))

        if not scored:
            return None, 0
        # newest first, then stable sort by priority and larger discount
        scored.sort(key=lambda x: (x[0].created_at, x[0].id), reverse=True)
        scored.sort(key=lambda x: (x[0].priority if x[0].priority is not None else 100, -x[1]))
        best, amount = scored[0]
        if amount <= 0:
            return None, 0
        return best, amount

    # ---- step 4 ----
    def resolve_coupon(self, code: Optional[str], base_minor: int, now: datetime) -> tuple[Optional[str], int]:
        coupon = self.coupons.find(code)
        if coupon is None or not is_active_at(coupon, now):
            return None, 0
        if base_minor < (coupon.min_order_total_minor or 0):
            return None, 0
        if not has_capacity(coupon):
            return None, 0
        return coupon.code, coupon_discount_minor(coupon, base_minor)

    def quote(self, cart_lines: List[CartLine], shipping: Optional[ShippingSelection],
              coupon_code: Optional[str] = None, now: Optional[datetime] = None) -> PricedQuote:
        """Price a cart.

        Args:
            cart_lines: Requested lines; duplicates are merged.
            shipping: Shipping selection.
            coupon_code: Optional coupon code; ignored when unknown or not
                eligible.
            now: Clock override (sale windows, campaign/offer/coupon windows).

        Returns:
            PricedQuote: The priced quote.

        Raises:
            ValidationError: Cart or shipping selection problems.
            ConflictError: ``OUT_OF_STOCK`` / ``OUT_OF_STOCK_PARTIAL``.
        """
        now = now or utcnow()

        lines = self.resolve_lines(cart_lines, now)
        subtotal = sum(li.line_total_minor for li in lines)

        mode, shipping_base = self.resolve_shipping_fee(shipping)
        shipping_fee = shipping_base

        campaign, campaign_minor = self.resolve_campaign(lines, subtotal, now)
        after_campaign = max(0, subtotal - campaign_minor)

        coupon_code_applied, coupon_minor = self.resolve_coupon(coupon_code, after_campaign, now)
        after_coupon = max(0, after_campaign - coupon_minor)

        offers = evaluate_offers(load_active_offers(self.session, now), lines, after_coupon, shipping_fee)
        offer_minor = min(after_coupon, offers.discount_minor)
        if offers.free_shipping:
            shipping_fee = 0

        before_shipping = max(0, after_coupon - offer_minor)
        requests = gift_rules.match_rules(gift_rules.load_active_rules(self.session, now), lines, before_shipping)
        granted = gift_rules.grant(
            self.session, gift_rules.merge_requests(requests + offers.gift_requests), lines
        )

        total = max(0, before_shipping + shipping_fee)
        rate = self.settings.effective_vat_rate
        before_vat, vat = vat_breakdown(total, rate)

        q = PricedQuote(
            currency=self.settings.currency,
            lines=lines,
            subtotal_minor=subtotal,
            shipping_fee_base_minor=shipping_base,
            shipping_fee_minor=shipping_fee,
            free_shipping=offers.free_shipping,
            campaign_id=campaign.id if campaign is not None else None,
            campaign_name=campaign.name if campaign is not None else None,
            campaign_discount_minor=campaign_minor,
            coupon_code=coupon_code_applied,
            coupon_discount_minor=coupon_minor,
            offer_discount_minor=offer_minor,
            applied_offers=offers.applied,
            gifts=granted.gifts,
            gift_warnings=granted.warnings,
            vat_rate=rate,
            total_before_vat_minor=before_vat,
            vat_minor=vat,
            total_minor=total,
            shipping_mode=mode,
            computed_at=now,
        )
        if before_vat + vat != total:
            logger.error("vat breakdown mismatch", extra={"total": total, "before_vat": before_vat, "vat": vat})
        return q
