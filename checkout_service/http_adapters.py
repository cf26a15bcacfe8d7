"""HTTP payment-provider adapter with retries, circuit breaker and context headers.

This module implements ``PaymentGateway`` over ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the request-id middleware.
- A circuit breaker per gateway instance to avoid hammering an unhealthy
    provider, with HALF_OPEN probing after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
- Idempotency: every mutating call forwards an ``Idempotency-Key`` header so
    a retried request returns the provider's original object.

Business rejections (4xx) are not retried and do not count as circuit
failures. Every failure surfaces as ``PaymentProviderError``.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

import httpx

from .adapters import PaymentProviderError
from .domain import CheckoutSession, PaymentGateway, ProviderRefund, SessionLineItem
from .gateway.middleware import REQUEST_ID_CTX
from .settings import Settings

logger = logging.getLogger("checkout.http")


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; back to OPEN on failure.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            PaymentProviderError: If the circuit is OPEN or a HALF_OPEN probe
                is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise PaymentProviderError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise PaymentProviderError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers with ``X-Request-ID`` (when set) plus any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


# ---------------- Payments Adapter ---------------- #

class HttpPaymentGateway(PaymentGateway):
    """HTTP client for the hosted-payment provider.

    Args:
        settings: Provides base URL, API key, timeout, retry and breaker
            configuration.
        breaker: Optional shared breaker; a private one is created otherwise.
    """

    def __init__(self, settings: Settings, breaker: Optional[CircuitBreaker] = None):
        self.base_url = settings.payment_base_url.rstrip("/")
        self.api_key = settings.payment_api_key
        self.timeout = settings.http_timeout_secs
        self.max_retries = max(1, settings.http_retry_max)
        self.backoff = settings.http_retry_backoff_base
        self.max_sleep = settings.http_retry_max_sleep
        self.breaker = breaker or CircuitBreaker(
            "payments", settings.http_circuit_fail_threshold, settings.http_circuit_reset_timeout
        )

    def _call(self, send: Callable[[httpx.Client, dict], httpx.Response],
              idempotency_key: Optional[str] = None) -> dict:
        """Run ``send`` under the breaker with retries.

        Returns:
            dict: Decoded JSON body of the 2xx response.

        Raises:
            PaymentProviderError: On 4xx, open circuit, or once retries are
                exhausted.
        """
        extras = {"X-Retry-Count": "0"}
        if self.api_key:
            extras["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            extras["Idempotency-Key"] = idempotency_key
        extras["X-Circuit-State"] = self.breaker.before_call()
        headers = _request_headers(extras)
        tries = 0

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = send(client, headers)
                        if 200 <= resp.status_code < 300:
                            self.breaker.on_success()
                            try:
                                return resp.json()
                            except ValueError as e:
                                raise PaymentProviderError("PROVIDER_BAD_RESPONSE") from e
                        if 400 <= resp.status_code < 500:
                            self.breaker.on_success()  # business outcome, not a circuit failure
                            raise PaymentProviderError(f"PROVIDER_REJECTED_{resp.status_code}")
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= self.max_retries or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        logger.warning(
                            "payment provider call failed",
                            extra={"tries": tries, "status_code": getattr(resp, "status_code", None)},
                        )
                        if exc is not None:
                            raise PaymentProviderError("PROVIDER_UNREACHABLE") from exc
                        raise PaymentProviderError(f"PROVIDER_ERROR_{resp.status_code}")

                    time.sleep(min(self.backoff * (2 ** (tries - 1)), self.max_sleep))
        finally:
            self.breaker.on_finish()

    def create_checkout_session(self, order_id: str, line_items: List[SessionLineItem], currency: str,
                                idempotency_key: str, success_url: str, cancel_url: str,
                                metadata: Optional[dict] = None) -> CheckoutSession:
        payload = {
            "client_reference_id": order_id,
            "currency": currency.lower(),
            "line_items": [
                {"name": li.name, "unit_amount": li.unit_amount_minor, "quantity": li.quantity}
                for li in line_items
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {"order_id": order_id, **(metadata or {})},
        }
        data = self._call(
            lambda c, h: c.post(f"{self.base_url}/v1/checkout/sessions", json=payload, headers=h),
            idempotency_key,
        )
        return _session_from(data)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        data = self._call(lambda c, h: c.get(f"{self.base_url}/v1/checkout/sessions/{session_id}", headers=h))
        return _session_from(data)

    def expire_session(self, session_id: str) -> None:
        self._call(lambda c, h: c.post(f"{self.base_url}/v1/checkout/sessions/{session_id}/expire",
                                       headers=h))

    def create_refund(self, payment_intent_id: str, amount_minor: Optional[int], idempotency_key: str,
                      reason: Optional[str] = None) -> ProviderRefund:
        payload = {"payment_intent": payment_intent_id}
        if amount_minor is not None:
            payload["amount"] = int(amount_minor)
        if reason:
            payload["metadata"] = {"reason": reason}
        data = self._call(
            lambda c, h: c.post(f"{self.base_url}/v1/refunds", json=payload, headers=h),
            idempotency_key,
        )
        return ProviderRefund(id=str(data.get("id") or ""), status=str(data.get("status") or "pending"),
                              amount_minor=int(data.get("amount") or amount_minor or 0))


def _session_from(data: dict) -> CheckoutSession:
    if not data.get("id"):
        raise PaymentProviderError("PROVIDER_BAD_RESPONSE")
    total = data.get("amount_total")
    return CheckoutSession(
        id=str(data["id"]),
        url=data.get("url"),
        payment_intent_id=data.get("payment_intent"),
        amount_total_minor=int(total) if total is not None else None,
    )
