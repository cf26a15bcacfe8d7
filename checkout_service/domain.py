"""Domain enums, value objects and ports for the checkout pipeline.

This module holds the small immutable DTOs that flow between the pricing
engine, the stores and the orchestrators, the status enumerations for the
order, reservation and refund state machines, and the protocols (ports)
for the external payment provider and notification service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Protocol, Tuple


# ---- Enums ----
class OrderStatus(str, Enum):
    """Order lifecycle.

    ``pending_payment → paid → confirmed`` for card payments,
    ``pending_cod → confirmed`` for pay-on-delivery, with ``cancelled`` and
    the refund branch ``refund_pending → refunded | partially_refunded``.
    """

    PENDING_PAYMENT = "pending_payment"
    PENDING_COD = "pending_cod"
    PAID = "paid"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class CouponReservationStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    RELEASED = "released"
    EXPIRED = "expired"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    COD = "cod"


class ShippingMode(str, Enum):
    DELIVERY = "DELIVERY"
    PICKUP_POINT = "PICKUP_POINT"
    STORE_PICKUP = "STORE_PICKUP"


# ---- Value objects ----
@dataclass(frozen=True)
class CartLine:
    """A requested cart line before pricing.

    Attributes:
        product_id: Catalog product identifier.
        variant_id: Variant identifier, empty string for simple products.
        qty: Requested quantity (clamped by the pricing engine).
    """

    product_id: str
    variant_id: str = ""
    qty: int = 1


@dataclass(frozen=True)
class ShippingSelection:
    mode: Optional[str]
    delivery_area_id: Optional[str] = None
    pickup_point_id: Optional[str] = None
    address: Optional[dict] = None


@dataclass(frozen=True)
class CheckoutCommand:
    """Validated checkout/quote input.

    Attributes:
        shipping: Shipping selection.
        items: Explicit cart lines, or None to use the user's server-side cart.
        coupon_code: Optional coupon code.
    """

    shipping: ShippingSelection
    items: Optional[Tuple[CartLine, ...]] = None
    coupon_code: Optional[str] = None

    def to_payload(self) -> dict:
        """Canonical dict used for idempotency-key payload hashing."""
        return {
            "items": None if self.items is None else [
                [c.product_id, c.variant_id or "", c.qty] for c in self.items
            ],
            "shipping": {
                "mode": self.shipping.mode,
                "delivery_area_id": self.shipping.delivery_area_id,
                "pickup_point_id": self.shipping.pickup_point_id,
                "address": self.shipping.address,
            },
            "coupon_code": (self.coupon_code or "").strip().upper() or None,
        }


@dataclass(frozen=True)
class StockItem:
    """A quantity of one product (or variant) held by a reservation."""

    product_id: str
    variant_id: str
    qty: int

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "variant_id": self.variant_id, "qty": self.qty}

    @classmethod
    def from_dict(cls, d: dict) -> "StockItem":
        return cls(str(d["product_id"]), str(d.get("variant_id") or ""), int(d["qty"]))


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class SessionLineItem:
    """One priced line sent to the hosted payment page."""

    name: str
    unit_amount_minor: int
    quantity: int


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    payment_intent_id: Optional[str] = None
    amount_total_minor: Optional[int] = None


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount_minor: int


@dataclass
class CheckoutOutcome:
    """Result of a checkout call.

    Attributes:
        order: The persisted order (new or pre-existing).
        created: False when an idempotent retry returned an existing order.
        checkout_url: Hosted payment URL (card flow only).
        warnings: Non-blocking gift warnings from the quote.
    """

    order: object
    created: bool
    checkout_url: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)


# ---- Ports (DIP) ----
class PaymentGateway(Protocol):
    """Port describing the external payment provider.

    Implementations must be safe to call again with the same idempotency
    key: the provider is expected to return the original object.
    """

    def create_checkout_session(
        self,
        order_id: str,
        line_items: List[SessionLineItem],
        currency: str,
        idempotency_key: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict] = None,
    ) -> CheckoutSession:
        raise NotImplementedError()

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        raise NotImplementedError()

    def expire_session(self, session_id: str) -> None:
        """Close an open session so it can no longer be paid."""
        raise NotImplementedError()

    def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: Optional[int],
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> ProviderRefund:
        raise NotImplementedError()


class Notifier(Protocol):
    """Fire-and-forget notification port. Must never raise into callers."""

    def order_confirmed(self, order_id: str, order_number: str, user_id: str) -> None:
        raise NotImplementedError()

    def refund_issued(self, order_id: str, amount_minor: int, user_id: str) -> None:
        raise NotImplementedError()


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
