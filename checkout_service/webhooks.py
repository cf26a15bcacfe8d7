"""Payment-provider webhook verification and processing.

Events are matched to orders by the stored payment session id. The only
state a webhook may act on is ``pending_payment``; the first flip out of
it is a single conditional update, so redelivered or concurrent events for
the same session confirm the order and consume its coupon at most once.
"""

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .adapters import notify_safely
from .coupons import CouponLedger
from .db import UnitOfWork, with_transaction
from .domain import Notifier, OrderStatus, PaymentGateway, StockItem, utcnow
from .errors import CheckoutError, ValidationError
from .inventory import InventoryStore
from .models import Order
from .repository import CartRepository, find_by_session, purchased_pairs, transition
from .refunds import RefundOrchestrator
from .reservations import ReservationStore
from .settings import Settings

logger = logging.getLogger("checkout.webhooks")

SIGNATURE_HEADER = "Payment-Signature"

SESSION_COMPLETED = "checkout.session.completed"
ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_FAILED = "checkout.session.async_payment_failed"
SESSION_EXPIRED = "checkout.session.expired"

PAID_EVENTS = {SESSION_COMPLETED, ASYNC_SUCCEEDED}
FAILED_EVENTS = {ASYNC_FAILED, SESSION_EXPIRED}


def sign_payload(raw: bytes, secret: str, timestamp: int) -> str:
    """Build a ``Payment-Signature`` header value for ``raw``."""
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + raw, hashlib.sha256)
    return f"t={timestamp},v1={digest.hexdigest()}"


def verify_signature(raw: bytes, header: Optional[str], secret: str, tolerance_seconds: int = 300,
                     now: Optional[float] = None) -> None:
    """Check ``header`` against ``raw``.

    Raises:
        ValidationError: ``INVALID_SIGNATURE`` when the header is missing,
            malformed, stale, or none of its ``v1`` digests match.
    """
    if not header:
        raise ValidationError("INVALID_SIGNATURE", "Missing signature header")
    timestamp = None
    candidates = []
    for part in header.split(","):
        k, _, v = part.strip().partition("=")
        if k == "t":
            timestamp = v
        elif k == "v1" and v:
            candidates.append(v)
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        raise ValidationError("INVALID_SIGNATURE", "Malformed signature header")
    now = time.time() if now is None else now
    if tolerance_seconds and abs(now - ts) > tolerance_seconds:
        raise ValidationError("INVALID_SIGNATURE", "Signature timestamp outside tolerance")

    expected = sign_payload(raw, secret, ts).split("v1=", 1)[1]
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise ValidationError("INVALID_SIGNATURE", "Signature mismatch")


def parse_event(raw: bytes) -> dict:
    try:
        event = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("INVALID_PAYLOAD", "Webhook body is not valid JSON")
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ValidationError("INVALID_PAYLOAD", "Webhook event has no type")
    obj = (event.get("data") or {}).get("object") if isinstance(event.get("data"), dict) else None
    if not isinstance(obj, dict):
        raise ValidationError("INVALID_PAYLOAD", "Webhook event has no data object")
    amount = obj.get("amount_total")
    if amount is not None and _minor_amount(amount) is None:
        raise ValidationError("INVALID_PAYLOAD", "amount_total must be an integer amount in minor units")
    currency = obj.get("currency")
    if currency is not None and not isinstance(currency, str):
        raise ValidationError("INVALID_PAYLOAD", "currency must be a string")
    return event


def _minor_amount(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class PaymentWebhookProcessor:
    """Applies verified provider events to orders.

    ``process`` never raises for business outcomes: out-of-stock after
    payment, amount mismatches and duplicate deliveries all end in an order
    state and an acknowledged event.
    """

    def __init__(self, session: Session, settings: Settings, gateway: PaymentGateway,
                 notifier: Optional[Notifier] = None, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.settings = settings
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.inventory = InventoryStore(session)
        self.reservations = ReservationStore(session, self.inventory)
        self.coupons = CouponLedger(session)
        self.cart = CartRepository(session)

    def process(self, event: dict) -> str:
        """Handle one event.

        Returns:
            str: Outcome label: ``ignored``, ``unknown_session``,
            ``duplicate``, ``awaiting_payment``, ``confirmed``,
            ``refund_pending`` or ``cancelled``.
        """
        event_type = event.get("type")
        obj = event["data"]["object"]
        if event_type not in PAID_EVENTS and event_type not in FAILED_EVENTS:
            logger.info("webhook event ignored", extra={"event_type": event_type})
            return "ignored"

        order = find_by_session(self.session, str(obj.get("id") or ""))
        if order is None:
            logger.info("webhook for unknown session", extra={"event_type": event_type,
                                                              "session_id": obj.get("id")})
            return "unknown_session"
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            logger.info("webhook for settled order", extra={"order_id": order.id, "status": order.status})
            return "duplicate"

        if event_type in FAILED_EVENTS:
            return self._handle_failed(order, event_type)
        if event_type == SESSION_COMPLETED and obj.get("payment_status") != "paid":
            # delayed payment methods settle through the async events
            return "awaiting_payment"
        return self._handle_paid(order, obj)

    # ---- paid ----
    def _amount_matches(self, order: Order, obj: dict) -> bool:
        amount = obj.get("amount_total")
        currency = obj.get("currency")
        if amount is not None and _minor_amount(amount) != order.total_minor:
            return False
        if currency and str(currency).upper() != order.currency.upper():
            return False
        return True

    def _allocate(self, order: Order, now: datetime) -> bool:
        if self.reservations.confirm(order.id, now) is not None:
            return True
        # the hold lapsed; give back a stale unswept hold, then take the stock directly
        self.reservations.release(order.id)
        items = [StockItem.from_dict(it) for it in (order.items or [])]
        items += [StockItem.from_dict(g) for g in (order.gifts or [])]
        failed = self.inventory.decrement_all(items)
        if failed is None:
            logger.info("stock allocated after expired hold", extra={"order_id": order.id})
            return True
        logger.warning("stock unavailable after payment", extra={"order_id": order.id,
                                                                 "product_id": failed.product_id})
        return False

    def _settle_paid(self, uow: UnitOfWork, order: Order, obj: dict, now: datetime) -> str:
        order_id = order.id
        if not self._amount_matches(order, obj):
            logger.error("paid amount does not match order", extra={
                "order_id": order_id, "order_total_minor": order.total_minor,
                "amount_total": obj.get("amount_total"), "currency": obj.get("currency")})
            self._release_holds(order)
            transition(uow.session, order_id, OrderStatus.PAID, OrderStatus.REFUND_PENDING,
                       refund_reason="amount_mismatch")
            return "refund_pending"
        if not self._allocate(order, now):
            if order.coupon_code:
                self.coupons.release_reservation(order.coupon_code, order_id)
            transition(uow.session, order_id, OrderStatus.PAID, OrderStatus.REFUND_PENDING,
                       refund_reason="out_of_stock")
            return "refund_pending"
        uow.checkpoint()
        if order.coupon_code:
            result = self.coupons.consume_atomic(order.coupon_code, order_id, order.user_id,
                                                 order.coupon_discount_minor, now)
            if not result.success:
                # payment already taken at the discounted price; honour it
                logger.warning("coupon not consumed after payment",
                               extra={"order_id": order_id, "error": result.error})
        self.cart.remove_purchased(order.user_id, purchased_pairs(order))
        transition(uow.session, order_id, OrderStatus.PAID, OrderStatus.CONFIRMED, confirmed_at=now)
        return "confirmed"

    def _park_for_refund(self, order_id: str, reason: str) -> None:
        """Move a paid order that could not be settled to ``refund_pending``.

        Used in fallback mode, where the ``paid`` flip is already committed
        and a redelivery would stop at the ``pending_payment`` gate. Whatever
        the order still holds (stock, coupon hold or coupon use) is given back.
        """
        self.session.rollback()
        order = self.session.get(Order, order_id)
        if self.reservations.release(order_id) is None:
            self.reservations.restock(order_id)
        if order.coupon_code:
            self.coupons.release_reservation(order.coupon_code, order_id)
            self.coupons.revert_consumption(order.coupon_code, order_id)
        transition(self.session, order_id, OrderStatus.PAID, OrderStatus.REFUND_PENDING, refund_reason=reason)
        self.session.commit()

    def _handle_paid(self, order: Order, obj: dict) -> str:
        now = self.clock()
        order_id = order.id
        intent = obj.get("payment_intent") or order.payment_intent_id

        def _settle(uow: UnitOfWork) -> str:
            if not transition(uow.session, order_id, OrderStatus.PENDING_PAYMENT, OrderStatus.PAID,
                              paid_at=now, payment_intent_id=intent):
                return "duplicate"
            uow.checkpoint()
            try:
                return self._settle_paid(uow, order, obj, now)
            except Exception:
                if not uow.fallback:
                    raise
                logger.exception("payment settlement failed", extra={"order_id": order_id})
                self._park_for_refund(order_id, "settlement_failed")
                return "refund_pending"

        outcome = with_transaction(self.session, _settle, enabled=self.settings.db_transactions).value
        self.session.refresh(order)
        logger.info("payment webhook processed", extra={"order_id": order_id, "outcome": outcome})

        if outcome == "confirmed" and self.notifier is not None:
            notify_safely(self.notifier.order_confirmed, order.id, order.order_number, order.user_id)
        if outcome == "refund_pending":
            self._compensating_refund(order, _minor_amount(obj.get("amount_total")))
        return outcome

    def _compensating_refund(self, order: Order, paid_amount: Optional[int]) -> None:
        if not self.settings.auto_refund_out_of_stock:
            logger.warning("refund left for manual resolution", extra={"order_id": order.id})
            return
        if not order.payment_intent_id:
            logger.warning("no payment intent to refund", extra={"order_id": order.id})
            return
        amount = None
        if paid_amount is not None:
            amount = min(paid_amount, order.total_minor)
        reason = order.refund_reason or "out_of_stock"
        key = f"refund:{reason}:{order.id}:{order.payment_intent_id}"[:200]
        try:
            RefundOrchestrator(self.session, self.settings, self.gateway, self.notifier, self.clock).refund(
                order.id, amount, reason, key)
        except CheckoutError as exc:
            logger.warning("compensating refund failed", extra={"order_id": order.id, "code": exc.code})

    # ---- failed / expired ----
    def _release_holds(self, order: Order) -> None:
        self.reservations.release(order.id)
        if order.coupon_code:
            self.coupons.release_reservation(order.coupon_code, order.id)

    def _handle_failed(self, order: Order, event_type: str) -> str:
        now = self.clock()

        def _cancel(uow: UnitOfWork) -> str:
            if not transition(uow.session, order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED,
                              cancelled_at=now):
                return "duplicate"
            uow.checkpoint()
            self._release_holds(order)
            return "cancelled"

        outcome = with_transaction(self.session, _cancel, enabled=self.settings.db_transactions).value
        self.session.refresh(order)
        logger.info("payment webhook processed", extra={"order_id": order.id, "outcome": outcome,
                                                        "event_type": event_type})
        return outcome
