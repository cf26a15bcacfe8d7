"""In-process stub adapters for the payment and notification ports.

``StubPaymentGateway`` implements ``PaymentGateway`` without network calls;
it keeps sessions and refunds in memory and honours idempotency keys the
way a real provider does (same key → same object). It is used for local
development and tests. ``LoggingNotifier`` stands in for the notification
service by writing a log line.
"""

import logging
import uuid
from typing import Dict, List, Optional, Set

from .domain import CheckoutSession, Notifier, PaymentGateway, ProviderRefund, SessionLineItem

logger = logging.getLogger("checkout.adapters")


class PaymentProviderError(Exception):
    """Raised by gateway adapters when the provider rejects or cannot serve a call."""


class StubPaymentGateway(PaymentGateway):
    """Deterministic in-memory payment provider.

    Attributes:
        fail_sessions: When True, ``create_checkout_session`` raises.
        fail_refunds: When True, ``create_refund`` raises.
        sessions: Created sessions by id.
        refunds: Created refunds in call order.
        expired: Ids of sessions closed through ``expire_session``.
    """

    def __init__(self, base_url: str = "https://pay.example.test"):
        self.base_url = base_url
        self.fail_sessions = False
        self.fail_refunds = False
        self.fail_retrieve = False
        self.sessions: Dict[str, CheckoutSession] = {}
        self.session_lines: Dict[str, List[SessionLineItem]] = {}
        self.refunds: List[ProviderRefund] = []
        self.expired: Set[str] = set()
        self._by_key: Dict[str, object] = {}

    def create_checkout_session(self, order_id, line_items, currency, idempotency_key,
                                success_url, cancel_url, metadata=None) -> CheckoutSession:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]  # type: ignore[return-value]
        if self.fail_sessions:
            raise PaymentProviderError("SESSION_CREATE_FAILED")
        sid = f"cs_{uuid.uuid4().hex[:24]}"
        total = sum(li.unit_amount_minor * li.quantity for li in line_items)
        sess = CheckoutSession(
            id=sid,
            url=f"{self.base_url}/pay/{sid}",
            payment_intent_id=f"pi_{uuid.uuid4().hex[:24]}",
            amount_total_minor=total,
        )
        self.sessions[sid] = sess
        self.session_lines[sid] = list(line_items)
        self._by_key[idempotency_key] = sess
        return sess

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        if self.fail_retrieve or session_id not in self.sessions:
            raise PaymentProviderError("SESSION_NOT_FOUND")
        return self.sessions[session_id]

    def expire_session(self, session_id: str) -> None:
        if session_id not in self.sessions:
            raise PaymentProviderError("SESSION_NOT_FOUND")
        self.expired.add(session_id)

    def create_refund(self, payment_intent_id: str, amount_minor: Optional[int],
                      idempotency_key: str, reason: Optional[str] = None) -> ProviderRefund:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]  # type: ignore[return-value]
        if self.fail_refunds:
            raise PaymentProviderError("REFUND_FAILED")
        refund = ProviderRefund(id=f"re_{uuid.uuid4().hex[:24]}", status="succeeded",
                                amount_minor=int(amount_minor or 0))
        self.refunds.append(refund)
        self._by_key[idempotency_key] = refund
        return refund


class LoggingNotifier(Notifier):
    """Notifier that only logs. Never raises."""

    def __init__(self):
        self.sent: List[tuple] = []

    def order_confirmed(self, order_id: str, order_number: str, user_id: str) -> None:
        self.sent.append(("order_confirmed", order_id))
        logger.info("notify order confirmed", extra={"order_id": order_id, "order_number": order_number})

    def refund_issued(self, order_id: str, amount_minor: int, user_id: str) -> None:
        self.sent.append(("refund_issued", order_id, amount_minor))
        logger.info("notify refund issued", extra={"order_id": order_id, "amount_minor": amount_minor})


def notify_safely(fn, *args) -> None:
    """Call a notifier method, logging instead of propagating any failure."""
    try:
        fn(*args)
    except Exception:
        logger.warning("notification failed", exc_info=True)
