"""Admin refunds and return-driven refunds for card orders.

A refund attempt is recorded as a ``RefundRecord`` keyed by its
idempotency key before the provider is called, so a retried request with
the same key either returns the settled order or retries the same provider
refund (which the provider deduplicates by key).
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .adapters import PaymentProviderError, notify_safely
from .domain import Notifier, OrderStatus, PaymentGateway, PaymentMethod, RefundStatus, utcnow
from .errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from .models import Order, RefundRecord
from .repository import canonical_hash
from .reservations import ReservationStore
from .returns_policy import ReturnItem, check_return_eligibility, compute_return_refund_amount
from .settings import Settings

logger = logging.getLogger("checkout.refunds")

REFUNDABLE_STATUSES = {
    OrderStatus.PAID.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PARTIALLY_REFUNDED.value,
    OrderStatus.REFUND_PENDING.value,
}


def return_refund_key(order_id: str, idempotency_key: str) -> str:
    """Refund-record key for one return request; each request carries its own key."""
    return f"return:{order_id}:{canonical_hash({'key': idempotency_key})[:32]}"


def return_items_hash(items: Iterable[ReturnItem]) -> str:
    payload = sorted([i.product_id, i.variant_id or "", i.qty] for i in items)
    return canonical_hash({"items": payload})


class RefundOrchestrator:
    """Issues refunds through the payment provider and settles order state.

    Args:
        session: Request-scoped session.
        settings: Service settings (partial refunds, return policy).
        gateway: Payment provider port.
        notifier: Notification port.
        clock: Returns the current naive-UTC time.
    """

    def __init__(self, session: Session, settings: Settings, gateway: PaymentGateway,
                 notifier: Optional[Notifier] = None, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.settings = settings
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.reservations = ReservationStore(session)

    def _load(self, order_id: str) -> Order:
        order = self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", "Order not found")
        return order

    def refund(self, order_id: str, amount_minor: Optional[int] = None, reason: Optional[str] = None,
               idempotency_key: Optional[str] = None, restock: bool = False,
               request_hash: Optional[str] = None) -> Order:
        """Refund ``amount_minor`` (default: everything still refundable).

        Args:
            order_id: Card order to refund.
            amount_minor: Amount in minor units, None for the remaining total.
            reason: Free-text reason stored on the order and record.
            idempotency_key: Required; forwarded to the provider.
            restock: Return confirmed stock to inventory on a full refund.
            request_hash: Fingerprint of the request behind the key; a reused
                key with a different fingerprint is a conflict.

        Returns:
            Order: The order after the refund settled.

        Raises:
            NotFoundError: ``ORDER_NOT_FOUND``.
            ValidationError: ``REFUND_NOT_ALLOWED``, ``MISSING_PAYMENT_INTENT``,
                ``INVALID_REFUND_AMOUNT``, ``REFUND_EXCEEDS_TOTAL``,
                ``REFUND_EXCEEDS_REFUNDABLE``, ``PARTIAL_REFUNDS_DISABLED``.
            ConflictError: ``IDEMPOTENCY_CONFLICT`` or ``REFUND_IN_PROGRESS``.
            ExternalServiceError: ``REFUND_PROVIDER_ERROR``.
        """
        key = (idempotency_key or "").strip()
        if not key:
            raise ValidationError("MISSING_IDEMPOTENCY_KEY", "Idempotency-Key header is required")
        order = self._load(order_id)

        prior = self.session.scalar(select(RefundRecord).where(RefundRecord.idempotency_key == key))
        if prior is not None:
            if (prior.order_id != order.id
                    or (amount_minor is not None and amount_minor != prior.amount_minor)
                    or (request_hash is not None and prior.request_hash != request_hash)):
                raise ConflictError("IDEMPOTENCY_CONFLICT",
                                    "Idempotency-Key was already used with a different refund")
            if prior.status == RefundStatus.SUCCEEDED.value:
                return order

        if order.payment_method != PaymentMethod.CARD.value:
            raise ValidationError("REFUND_NOT_ALLOWED", "Only card orders can be refunded")
        if not order.payment_intent_id:
            raise ValidationError("MISSING_PAYMENT_INTENT", "Order has no captured payment")
        if order.status not in REFUNDABLE_STATUSES:
            raise ValidationError("REFUND_NOT_ALLOWED", f"Orders in status {order.status} cannot be refunded")

        total = order.total_minor or 0
        refunded = order.amount_refunded_minor or 0
        remaining = max(0, total - refunded)
        if prior is not None:
            amount = prior.amount_minor
        else:
            amount = remaining if amount_minor is None else int(amount_minor)
        if amount <= 0:
            raise ValidationError("INVALID_REFUND_AMOUNT", "Refund amount must be positive")
        if amount > total:
            raise ValidationError("REFUND_EXCEEDS_TOTAL", "Refund exceeds order total")
        if amount > remaining:
            raise ValidationError("REFUND_EXCEEDS_REFUNDABLE", "Refund exceeds the amount still refundable",
                                  details={"refundable_minor": remaining})
        if amount < remaining and not self.settings.allow_partial_refunds:
            raise ValidationError("PARTIAL_REFUNDS_DISABLED", "Partial refunds are disabled")

        now = self.clock()
        # only one refund per order may be in flight; a retry of the same key may take over
        guard = [Order.id == order.id, Order.amount_refunded_minor == refunded]
        if prior is None:
            guard.append(or_(Order.refund_status.is_(None), Order.refund_status != RefundStatus.PENDING.value))
        res = self.session.execute(
            update(Order).where(*guard).values(
                status=OrderStatus.REFUND_PENDING.value,
                refund_status=RefundStatus.PENDING.value,
                refund_reason=reason,
                refund_requested_minor=amount,
                refund_requested_at=now,
                refund_failure_message=None,
                updated_at=now,
            )
        )
        if res.rowcount != 1:
            self.session.rollback()
            raise ConflictError("REFUND_IN_PROGRESS", "Another refund for this order is in progress")
        if prior is None:
            prior = RefundRecord(order_id=order.id, idempotency_key=key, amount_minor=amount,
                                 reason=reason, request_hash=request_hash, status=RefundStatus.PENDING.value)
            self.session.add(prior)
        else:
            prior.status = RefundStatus.PENDING.value
            prior.failure_message = None
        self.session.commit()
        self.session.refresh(order)
        logger.info("refund requested", extra={"order_id": order.id, "amount_minor": amount, "reason": reason})

        try:
            provider_refund = self.gateway.create_refund(order.payment_intent_id, amount, key, reason)
        except PaymentProviderError as exc:
            message = str(exc)[:500]
            prior.status = RefundStatus.FAILED.value
            prior.failure_message = message
            order.refund_status = RefundStatus.FAILED.value
            order.refund_failure_message = message
            self.session.commit()
            logger.warning("refund failed at provider", extra={"order_id": order.id, "error": message})
            raise ExternalServiceError("REFUND_PROVIDER_ERROR", "Payment provider refused the refund") from exc

        settled = refunded + amount
        prior.status = RefundStatus.SUCCEEDED.value
        prior.provider_refund_id = provider_refund.id
        order.amount_refunded_minor = settled
        order.status = (OrderStatus.REFUNDED if settled >= total else OrderStatus.PARTIALLY_REFUNDED).value
        order.refund_status = RefundStatus.SUCCEEDED.value
        order.refund_provider_id = provider_refund.id
        order.refunded_at = now
        order.updated_at = now
        if restock and order.status == OrderStatus.REFUNDED.value:
            self.reservations.restock(order.id)
        self.session.commit()
        logger.info("refund settled", extra={"order_id": order.id, "status": order.status,
                                             "amount_refunded_minor": settled})
        if self.notifier is not None:
            notify_safely(self.notifier.refund_issued, order.id, amount, order.user_id)
        return order

    def refund_return(self, order_id: str, items: Iterable[ReturnItem], idempotency_key: Optional[str],
                      reason: Optional[str] = None, include_shipping: Optional[bool] = None,
                      restock: bool = False) -> Order:
        """Refund returned items, gated by the return window and allowed statuses.

        Each return request carries its own idempotency key, so two separate
        returns of the same items are two refunds while a retried request is
        one. Reusing a key for different items is an ``IDEMPOTENCY_CONFLICT``.
        """
        request_key = (idempotency_key or "").strip()
        if not request_key:
            raise ValidationError("MISSING_IDEMPOTENCY_KEY", "Idempotency-Key header is required")
        items = list(items)
        order = self._load(order_id)
        key = return_refund_key(order.id, request_key)
        items_hash = return_items_hash(items)
        prior = self.session.scalar(select(RefundRecord).where(RefundRecord.idempotency_key == key))
        if prior is not None and prior.request_hash != items_hash:
            raise ConflictError("IDEMPOTENCY_CONFLICT", "Idempotency-Key was already used with a different return")
        if prior is not None and prior.status == RefundStatus.SUCCEEDED.value:
            return order
        check_return_eligibility(order, self.settings, self.clock())
        if include_shipping is None:
            include_shipping = self.settings.return_include_shipping
        amount = prior.amount_minor if prior is not None else compute_return_refund_amount(
            order, items, include_shipping)
        return self.refund(order.id, amount, reason or "return", key, restock=restock, request_hash=items_hash)
