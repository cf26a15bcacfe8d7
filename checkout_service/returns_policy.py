"""Return eligibility and return-driven refund amounts."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List

from .errors import ValidationError
from .models import Order
from .money import allocate_proportionally, round_half_up
from .settings import Settings


@dataclass(frozen=True)
class ReturnItem:
    product_id: str
    variant_id: str = ""
    qty: int = 1


def return_window_start(order: Order) -> datetime:
    return order.confirmed_at or order.paid_at or order.created_at


def check_return_eligibility(order: Order, settings: Settings, now: datetime) -> None:
    """Raise unless ``order`` may be returned at ``now``.

    Raises:
        ValidationError: ``RETURN_NOT_ALLOWED`` for a status outside
            ``RETURN_ALLOWED_STATUSES``, ``RETURN_WINDOW_EXPIRED`` once
            ``RETURN_WINDOW_DAYS`` have passed.
    """
    if order.status not in settings.return_statuses:
        raise ValidationError("RETURN_NOT_ALLOWED", f"Orders in status {order.status} cannot be returned")
    deadline = return_window_start(order) + timedelta(days=settings.return_window_days)
    if now > deadline:
        raise ValidationError("RETURN_WINDOW_EXPIRED", "Return window has closed",
                              details={"deadline": deadline.isoformat()})


def compute_return_refund_amount(order: Order, return_items: Iterable[ReturnItem],
                                 include_shipping: bool = False) -> int:
    """Refund owed for returning ``return_items`` of ``order``.

    The order's discount total is first spread over its lines by the
    largest-remainder method; each returned unit refunds its share of the
    discounted line amount. Shipping is added only when ``include_shipping``.
    The result never exceeds what is still refundable on the order.

    Raises:
        ValidationError: ``INVALID_RETURN_ITEMS`` for an empty request, a
            non-positive quantity or an item the order does not contain;
            ``NOTHING_TO_REFUND`` when the amount comes to zero.
    """
    items: List[dict] = list(order.items or [])
    shares = allocate_proportionally(order.discount_total_minor or 0,
                                     [int(it["line_total_minor"]) for it in items])
    index = {(it["product_id"], it.get("variant_id") or ""): i for i, it in enumerate(items)}

    requested: dict = {}
    for r in return_items:
        if r.qty <= 0:
            raise ValidationError("INVALID_RETURN_ITEMS", "Return quantities must be positive")
        key = (r.product_id, r.variant_id or "")
        if key not in index:
            raise ValidationError("INVALID_RETURN_ITEMS", "Returned item is not part of the order",
                                  details={"product_id": r.product_id, "variant_id": r.variant_id or None})
        requested[key] = requested.get(key, 0) + r.qty
    if not requested:
        raise ValidationError("INVALID_RETURN_ITEMS", "No items to return")

    amount = 0
    for key, qty in requested.items():
        i = index[key]
        line = items[i]
        ordered = int(line["qty"])
        net = int(line["line_total_minor"]) - shares[i]
        returned = min(qty, ordered)
        amount += net if returned == ordered else round_half_up(Decimal(net) * returned / ordered)

    if include_shipping:
        amount += order.shipping_fee_minor or 0

    refundable = max(0, (order.total_minor or 0) - (order.amount_refunded_minor or 0))
    amount = min(amount, refundable)
    if amount <= 0:
        raise ValidationError("NOTHING_TO_REFUND", "Nothing left to refund for these items")
    return amount
