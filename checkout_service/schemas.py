"""Pydantic request and response schemas for the checkout API.

Request models validate and normalize the HTTP payload and map it to the
domain command objects through ``to_domain()``. ``serialize_order`` renders
an order with its minor-unit amounts plus display-only major-unit mirrors.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .domain import CartLine, CheckoutCommand, ShippingSelection
from .models import Order
from .money import to_major
from .returns_policy import ReturnItem


class CartItemIn(BaseModel):
    """Input schema for a single cart line.

    Attributes:
        product_id: Catalog product id.
        variant_id: Variant id, required for products that have variants.
        qty: Requested units; the pricing engine clamps it to 1..999.
    """

    product_id: str = Field(min_length=1, max_length=36)
    variant_id: Optional[str] = Field(default=None, max_length=36)
    qty: int = 1

    @field_validator("product_id", "variant_id")
    @classmethod
    def strip_ids(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v


class ShippingIn(BaseModel):
    mode: Optional[str] = None
    delivery_area_id: Optional[str] = None
    pickup_point_id: Optional[str] = None
    address: Optional[dict] = None

    @field_validator("mode")
    @classmethod
    def upper_mode(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if isinstance(v, str) else v


class CheckoutRequest(BaseModel):
    """Body of ``/checkout/quote``, ``/checkout/cod`` and ``/checkout/card``.

    Attributes:
        items: Explicit cart lines; when omitted the caller's server-side
            cart is used.
        shipping: Shipping selection.
        coupon_code: Optional coupon code, normalized to uppercase.
    """

    items: Optional[List[CartItemIn]] = None
    shipping: ShippingIn = Field(default_factory=ShippingIn)
    coupon_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip().upper() or None

    def to_domain(self) -> CheckoutCommand:
        items = None
        if self.items is not None:
            items = tuple(CartLine(i.product_id, i.variant_id or "", i.qty) for i in self.items)
        return CheckoutCommand(
            shipping=ShippingSelection(
                mode=self.shipping.mode,
                delivery_area_id=self.shipping.delivery_area_id,
                pickup_point_id=self.shipping.pickup_point_id,
                address=self.shipping.address,
            ),
            items=items,
            coupon_code=self.coupon_code,
        )


class RefundRequest(BaseModel):
    """Admin refund body.

    Attributes:
        amount_minor: Amount to refund; omitted for the remaining total.
        reason: Free-text reason.
        restock: Return confirmed stock to inventory on a full refund.
    """

    amount_minor: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=64)
    restock: bool = False


class ReturnItemIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36)
    variant_id: Optional[str] = None
    qty: int = Field(default=1, gt=0)


class ReturnRefundRequest(BaseModel):
    items: List[ReturnItemIn] = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=64)
    include_shipping: Optional[bool] = None
    restock: bool = False

    def to_domain(self) -> List[ReturnItem]:
        return [ReturnItem(i.product_id, i.variant_id or "", i.qty) for i in self.items]


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


def serialize_order(order: Order) -> dict:
    """JSON-ready view of an order."""
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_method": order.payment_method,
        "user_id": order.user_id,
        "items": list(order.items or []),
        "gifts": list(order.gifts or []),
        "shipping": dict(order.shipping or {}),
        "currency": order.currency,
        "subtotal_minor": order.subtotal_minor,
        "shipping_fee_minor": order.shipping_fee_minor,
        "discounts": {
            "campaign_minor": order.campaign_discount_minor,
            "coupon_minor": order.coupon_discount_minor,
            "offer_minor": order.offer_discount_minor,
            "total_minor": order.discount_total_minor,
        },
        "coupon_code": order.coupon_code,
        "vat_rate": order.vat_rate,
        "vat_minor": order.vat_minor,
        "total_before_vat_minor": order.total_before_vat_minor,
        "total_minor": order.total_minor,
        "amount_refunded_minor": order.amount_refunded_minor or 0,
        "refund_status": order.refund_status,
        "refund_reason": order.refund_reason,
        "major": {
            "subtotal": str(to_major(order.subtotal_minor)),
            "shipping_fee": str(to_major(order.shipping_fee_minor)),
            "discount_total": str(to_major(order.discount_total_minor)),
            "vat": str(to_major(order.vat_minor)),
            "total": str(to_major(order.total_minor)),
            "amount_refunded": str(to_major(order.amount_refunded_minor or 0)),
        },
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "confirmed_at": order.confirmed_at.isoformat() if order.confirmed_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "cancel_reason": order.cancel_reason,
    }
