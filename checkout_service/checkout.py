"""Checkout orchestration: quote, pay-on-delivery, card checkout and cancellation.

Both checkout paths are idempotent per ``(user, Idempotency-Key, method)``:
a retry returns the order created by the first call, and reusing a key with
a different payload is rejected. Side effects are ordered coupon → stock →
order and unwound in reverse when a later step fails.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .adapters import PaymentProviderError, notify_safely
from .coupons import CouponLedger
from .db import UnitOfWork, with_transaction
from .domain import (
    CartLine,
    CheckoutCommand,
    CheckoutOutcome,
    CurrentUser,
    Notifier,
    OrderStatus,
    PaymentGateway,
    PaymentMethod,
    SessionLineItem,
    utcnow,
)
from .errors import ConflictError, ExternalServiceError, InvariantViolation, NotFoundError, ValidationError
from .models import Order
from .money import allocate_proportionally
from .pricing import PricedQuote, PricingEngine
from .repository import (
    CartRepository,
    build_order,
    canonical_hash,
    find_checkout_order,
    transition,
)
from .reservations import ReservationStore
from .settings import Settings

logger = logging.getLogger("checkout.orchestrator")

SHIPPING_LINE_NAME = "Shipping"

CANCELLABLE_STATUSES = {OrderStatus.PENDING_PAYMENT.value, OrderStatus.PENDING_COD.value}


def session_line_items(order: Order) -> List[SessionLineItem]:
    """Priced lines for the hosted payment page.

    The order's total discount is spread over the item lines with the
    largest-remainder method so the lines (plus shipping) add up to exactly
    ``order.total_minor``. A line whose discounted amount does not divide by
    its quantity is sent as a single line carrying the whole amount.
    """
    items = list(order.items or [])
    shares = allocate_proportionally(order.discount_total_minor or 0,
                                     [int(it["line_total_minor"]) for it in items])
    lines: List[SessionLineItem] = []
    for it, share in zip(items, shares):
        net = int(it["line_total_minor"]) - share
        qty = int(it["qty"])
        if net <= 0:
            continue
        if net % qty == 0:
            lines.append(SessionLineItem(it["title"], net // qty, qty))
        else:
            lines.append(SessionLineItem(f"{it['title']} x{qty}", net, 1))
    if order.shipping_fee_minor:
        lines.append(SessionLineItem(SHIPPING_LINE_NAME, order.shipping_fee_minor, 1))
    return lines


class CheckoutOrchestrator:
    """Coordinates pricing, stock, coupons, orders and the payment provider.

    Args:
        session: Request-scoped session.
        settings: Service settings.
        gateway: Payment provider port.
        notifier: Notification port.
        clock: Returns the current naive-UTC time; injectable for tests.
    """

    def __init__(self, session: Session, settings: Settings, gateway: PaymentGateway,
                 notifier: Optional[Notifier] = None, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.settings = settings
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.pricing = PricingEngine(session, settings)
        self.reservations = ReservationStore(session)
        self.coupons = CouponLedger(session)
        self.cart = CartRepository(session)

    # ---- helpers ----
    def _cart_lines(self, user: Optional[CurrentUser], command: CheckoutCommand) -> List[CartLine]:
        if command.items is not None:
            return list(command.items)
        if user is None:
            return []
        return [CartLine(c.product_id, c.variant_id or "", c.qty) for c in self.cart.lines(user.id)]

    def _replay(self, user: CurrentUser, key: str, method: PaymentMethod,
                request_hash: str) -> Optional[Order]:
        existing = find_checkout_order(self.session, user.id, key, method)
        if existing is None:
            return None
        if existing.checkout_request_hash and existing.checkout_request_hash != request_hash:
            raise ConflictError("IDEMPOTENCY_CONFLICT",
                                "Idempotency-Key was already used with a different request")
        logger.info("checkout replayed", extra={"order_id": existing.id, "payment_method": method.value})
        return existing

    @staticmethod
    def _require_key(idempotency_key: Optional[str]) -> str:
        key = (idempotency_key or "").strip()
        if not key:
            raise ValidationError("MISSING_IDEMPOTENCY_KEY", "Idempotency-Key header is required")
        if len(key) > 200:
            raise ValidationError("INVALID_IDEMPOTENCY_KEY", "Idempotency-Key is too long")
        return key

    @staticmethod
    def _block_on_gifts(quote: PricedQuote) -> None:
        blocking = quote.blocking_gift_warnings()
        if blocking:
            raise ValidationError("GIFT_OUT_OF_STOCK", "A gift in this order is out of stock",
                                  details={"warnings": blocking})

    def sweep_expired(self) -> dict:
        """Expire stale stock and coupon holds.

        Returns:
            dict: ``{"reservations": n, "coupons": m}`` counts.
        """
        now = self.clock()
        batch = self.settings.expire_sweep_batch
        reservations = self.reservations.expire_sweep(now, batch)
        coupons = self.coupons.expire_sweep(now, batch)
        self.session.commit()
        return {"reservations": reservations, "coupons": coupons}

    def _sweep_opportunistically(self) -> None:
        try:
            self.sweep_expired()
        except Exception:
            self.session.rollback()
            logger.warning("expiry sweep failed", exc_info=True)

    def _compensate(self, order_id: str, coupon_code: Optional[str], *, consumed: bool = False,
                    delete_order: bool = True) -> None:
        """Best-effort unwind of a failed checkout in fallback mode."""
        try:
            self.session.rollback()
            if self.reservations.release(order_id) is None:
                self.reservations.restock(order_id)
            if coupon_code and consumed:
                self.coupons.revert_consumption(coupon_code, order_id)
            elif coupon_code:
                self.coupons.release_reservation(coupon_code, order_id)
            if delete_order:
                order = self.session.get(Order, order_id)
                if order is not None:
                    self.session.delete(order)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.warning("checkout compensation failed", extra={"order_id": order_id}, exc_info=True)

    # ---- operations ----
    def quote(self, user: Optional[CurrentUser], command: CheckoutCommand) -> PricedQuote:
        return self.pricing.quote(self._cart_lines(user, command), command.shipping,
                                  command.coupon_code, now=self.clock())

    def checkout_pay_on_delivery(self, user: CurrentUser, command: CheckoutCommand,
                                 idempotency_key: Optional[str]) -> CheckoutOutcome:
        """Place a pay-on-delivery order.

        The coupon is consumed, then stock for items and gifts is reserved
        and confirmed at once, then the order is written, all in one unit of
        work.

        Raises:
            ValidationError: Cart, shipping, gift or idempotency-key problems.
            ConflictError: ``OUT_OF_STOCK``, ``COUPON_LIMIT_REACHED`` or
                ``IDEMPOTENCY_CONFLICT``.
        """
        key = self._require_key(idempotency_key)
        request_hash = canonical_hash(command.to_payload())
        existing = self._replay(user, key, PaymentMethod.COD, request_hash)
        if existing is not None:
            return CheckoutOutcome(order=existing, created=False)

        self._sweep_opportunistically()
        now = self.clock()
        quote = self.pricing.quote(self._cart_lines(user, command), command.shipping,
                                   command.coupon_code, now=now)
        self._block_on_gifts(quote)

        def _place(uow: UnitOfWork) -> Order:
            order_id = str(uuid.uuid4())
            try:
                if quote.coupon_code:
                    result = self.coupons.consume_atomic(quote.coupon_code, order_id, user.id,
                                                         quote.coupon_discount_minor, now)
                    if not result.success:
                        raise ConflictError(result.error or "COUPON_LIMIT_REACHED",
                                            "Coupon can no longer be applied")
                    uow.checkpoint()
                self.reservations.reserve(order_id, quote.stock_items(),
                                          self.settings.reservation_ttl_minutes, user.id, now)
                uow.checkpoint()
                if self.reservations.confirm(order_id, now) is None:
                    raise InvariantViolation("RESERVATION_CONFIRM_FAILED",
                                             "Fresh reservation could not be confirmed")
                uow.checkpoint()
                order = build_order(
                    uow.session, quote=quote, user_id=user.id, payment_method=PaymentMethod.COD,
                    shipping=command.shipping, checkout_key=key, request_hash=request_hash, now=now,
                    order_id=order_id,
                )
                self.cart.remove_purchased(user.id, [(li.product_id, li.variant_id) for li in quote.lines])
                uow.checkpoint()
                return order
            except Exception:
                if uow.fallback:
                    self._compensate(order_id, quote.coupon_code, consumed=True)
                raise

        try:
            order = with_transaction(self.session, _place, enabled=self.settings.db_transactions).value
        except IntegrityError:
            # concurrent request with the same key won the insert
            existing = self._replay(user, key, PaymentMethod.COD, request_hash)
            if existing is None:
                raise
            return CheckoutOutcome(order=existing, created=False)

        logger.info("cod order placed", extra={"order_id": order.id, "order_number": order.order_number,
                                               "total_minor": order.total_minor})
        if self.notifier is not None:
            notify_safely(self.notifier.order_confirmed, order.id, order.order_number, user.id)
        return CheckoutOutcome(order=order, created=True, warnings=list(quote.gift_warnings))

    def checkout_card_payment(self, user: CurrentUser, command: CheckoutCommand,
                              idempotency_key: Optional[str]) -> CheckoutOutcome:
        """Place a card order and open a hosted payment session.

        Raises:
            ValidationError: Cart, shipping, gift or idempotency-key problems.
            ConflictError: ``OUT_OF_STOCK``, ``COUPON_LIMIT_REACHED`` or
                ``IDEMPOTENCY_CONFLICT``.
            ExternalServiceError: ``PAYMENT_PROVIDER_ERROR`` when the session
                cannot be created.
        """
        key = self._require_key(idempotency_key)
        request_hash = canonical_hash(command.to_payload())
        existing = self._replay(user, key, PaymentMethod.CARD, request_hash)
        if existing is not None:
            return CheckoutOutcome(order=existing, created=False, checkout_url=self._session_url(existing))

        self._sweep_opportunistically()
        now = self.clock()
        quote = self.pricing.quote(self._cart_lines(user, command), command.shipping,
                                   command.coupon_code, now=now)
        self._block_on_gifts(quote)

        def _hold(uow: UnitOfWork) -> Order:
            order_id = str(uuid.uuid4())
            try:
                if quote.coupon_code:
                    result = self.coupons.reserve_atomic(quote.coupon_code, order_id, user.id,
                                                         self.settings.coupon_reservation_ttl_minutes, now)
                    if not result.success:
                        raise ConflictError(result.error or "COUPON_LIMIT_REACHED",
                                            "Coupon can no longer be applied")
                    uow.checkpoint()
                self.reservations.reserve(order_id, quote.stock_items(),
                                          self.settings.reservation_ttl_minutes, user.id, now)
                uow.checkpoint()
                order = build_order(
                    uow.session, quote=quote, user_id=user.id, payment_method=PaymentMethod.CARD,
                    shipping=command.shipping, checkout_key=key, request_hash=request_hash, now=now,
                    order_id=order_id,
                )
                uow.checkpoint()
                return order
            except Exception:
                if uow.fallback:
                    self._compensate(order_id, quote.coupon_code)
                raise

        try:
            order = with_transaction(self.session, _hold, enabled=self.settings.db_transactions).value
        except IntegrityError:
            existing = self._replay(user, key, PaymentMethod.CARD, request_hash)
            if existing is None:
                raise
            return CheckoutOutcome(order=existing, created=False, checkout_url=self._session_url(existing))

        try:
            session = self.gateway.create_checkout_session(
                order.id,
                session_line_items(order),
                order.currency,
                idempotency_key=f"checkout:{order.id}",
                success_url=self.settings.payment_success_url.format(order_id=order.id),
                cancel_url=self.settings.payment_cancel_url.format(order_id=order.id),
                metadata={"order_number": order.order_number, "user_id": user.id},
            )
        except Exception as exc:
            logger.warning("payment session creation failed", extra={"order_id": order.id}, exc_info=True)
            self._abandon(order)
            if isinstance(exc, PaymentProviderError):
                raise ExternalServiceError("PAYMENT_PROVIDER_ERROR",
                                           "Payment provider is unavailable") from exc
            raise

        order.payment_session_id = session.id
        order.payment_url = session.url
        order.payment_intent_id = session.payment_intent_id
        order.updated_at = self.clock()
        self.session.commit()
        logger.info("card order placed", extra={"order_id": order.id, "order_number": order.order_number,
                                                "payment_session_id": session.id})
        return CheckoutOutcome(order=order, created=True, checkout_url=session.url,
                               warnings=list(quote.gift_warnings))

    def cancel(self, user: CurrentUser, order_id: str, idempotency_key: Optional[str],
               reason: Optional[str] = None) -> Order:
        """Cancel an unpaid order and give back its stock and coupon.

        ``pending_payment`` orders release their stock and coupon holds and
        have their payment session expired; ``pending_cod`` orders return
        their confirmed stock and coupon use. Cancelling an already cancelled
        order returns it unchanged. Paid orders go through the refund flow.

        Raises:
            ValidationError: ``MISSING_IDEMPOTENCY_KEY``.
            NotFoundError: ``ORDER_NOT_FOUND`` (also for another user's order).
            ConflictError: ``ORDER_CANCEL_NOT_ALLOWED`` once the order is paid.
        """
        key = self._require_key(idempotency_key)
        order = self.session.get(Order, order_id)
        if order is None or (order.user_id != user.id and not user.is_admin):
            raise NotFoundError("ORDER_NOT_FOUND", "Order not found")
        if order.status == OrderStatus.CANCELLED.value:
            return order
        if order.status not in CANCELLABLE_STATUSES:
            raise ConflictError("ORDER_CANCEL_NOT_ALLOWED",
                                f"Orders in status {order.status} cannot be cancelled; request a refund")

        from_status = OrderStatus(order.status)
        now = self.clock()

        def _cancel(uow: UnitOfWork) -> bool:
            if not transition(uow.session, order.id, from_status, OrderStatus.CANCELLED,
                              cancelled_at=now, cancel_key=key, cancel_reason=(reason or None)):
                return False
            uow.checkpoint()
            if self.reservations.release(order.id) is None:
                self.reservations.restock(order.id)
            if order.coupon_code and from_status == OrderStatus.PENDING_COD:
                self.coupons.revert_consumption(order.coupon_code, order.id)
            elif order.coupon_code:
                self.coupons.release_reservation(order.coupon_code, order.id)
            return True

        cancelled = with_transaction(self.session, _cancel, enabled=self.settings.db_transactions).value
        self.session.refresh(order)
        if not cancelled:
            # a webhook or another request moved the order first
            if order.status == OrderStatus.CANCELLED.value:
                return order
            raise ConflictError("ORDER_CANCEL_NOT_ALLOWED",
                                f"Orders in status {order.status} cannot be cancelled; request a refund")

        logger.info("order cancelled", extra={"order_id": order.id, "from_status": from_status.value})
        if from_status == OrderStatus.PENDING_PAYMENT and order.payment_session_id:
            try:
                self.gateway.expire_session(order.payment_session_id)
            except PaymentProviderError:
                logger.warning("payment session expiry failed", extra={"order_id": order.id})
        return order

    def _session_url(self, order: Order) -> Optional[str]:
        if not order.payment_session_id:
            return None
        try:
            return self.gateway.retrieve_session(order.payment_session_id).url
        except PaymentProviderError:
            logger.warning("payment session lookup failed", extra={"order_id": order.id})
            return None

    def _abandon(self, order: Order) -> None:
        """Unwind a card order whose payment session could not be opened."""
        self.session.rollback()
        order_id = order.id
        coupon_code = order.coupon_code
        if order.payment_session_id:
            self.reservations.release(order_id)
            if coupon_code:
                self.coupons.release_reservation(coupon_code, order_id)
            transition(self.session, order_id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED,
                       cancelled_at=self.clock())
            self.session.commit()
            return
        self._compensate(order_id, coupon_code)
