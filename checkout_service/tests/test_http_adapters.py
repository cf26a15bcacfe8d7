"""Unit tests for the HTTP payment-provider adapter.

These tests monkeypatch ``httpx.Client.post``/``get`` and ``time.sleep`` and
assert retry, circuit-breaker and header behavior.
"""
import httpx
import pytest

from checkout_service.adapters import PaymentProviderError
from checkout_service.domain import SessionLineItem
from checkout_service.gateway.middleware import REQUEST_ID_CTX
from checkout_service.http_adapters import CircuitBreaker, HttpPaymentGateway


class DummyResp:
    """Minimal httpx-like response stub.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | None): JSON body to return from ``json()``.
    """
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}

    def json(self):
        return self._json


SESSION_BODY = {"id": "cs_1", "url": "https://pay.test/cs_1", "payment_intent": "pi_1", "amount_total": 1150}


@pytest.fixture
def http_settings(settings):
    return settings.model_copy(update={
        "payment_gateway": "http", "payment_base_url": "http://payments.test/", "payment_api_key": "sk_test",
        "http_retry_max": 3, "http_retry_backoff_base": 0.0, "http_circuit_fail_threshold": 2,
    })


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)


def open_session(gw):
    return gw.create_checkout_session("o1", [SessionLineItem("Lamp", 900, 1), SessionLineItem("Shipping", 250, 1)],
                                      "ILS", "checkout:o1", "https://shop/ok", "https://shop/cancel")


def test_create_session_sends_payload_and_headers(monkeypatch, http_settings):
    seen = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        seen.update(url=url, json=json, headers=dict(headers))
        return DummyResp(200, SESSION_BODY)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    token = REQUEST_ID_CTX.set("rid-123")
    try:
        session = open_session(HttpPaymentGateway(http_settings))
    finally:
        REQUEST_ID_CTX.reset(token)

    assert session.id == "cs_1"
    assert session.payment_intent_id == "pi_1"
    assert session.amount_total_minor == 1150
    assert seen["url"] == "http://payments.test/v1/checkout/sessions"
    assert seen["json"]["currency"] == "ils"
    assert seen["json"]["line_items"][0] == {"name": "Lamp", "unit_amount": 900, "quantity": 1}
    assert seen["json"]["metadata"]["order_id"] == "o1"
    assert seen["headers"]["Idempotency-Key"] == "checkout:o1"
    assert seen["headers"]["X-Request-ID"] == "rid-123"
    assert seen["headers"]["Authorization"] == "Bearer sk_test"


def test_retries_on_5xx_with_same_idempotency_key(monkeypatch, http_settings):
    calls = []

    def fake_post(self, url, json=None, headers=None, **kw):
        calls.append(dict(headers))
        if len(calls) == 1:
            return DummyResp(503)
        return DummyResp(200, {"id": "re_1", "status": "succeeded", "amount": 500})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    refund = HttpPaymentGateway(http_settings).create_refund("pi_1", 500, "refund:o1", "damaged")

    assert refund.id == "re_1" and refund.amount_minor == 500
    assert len(calls) == 2
    assert {c["Idempotency-Key"] for c in calls} == {"refund:o1"}
    assert [c["X-Retry-Count"] for c in calls] == ["0", "1"]


def test_no_retry_on_4xx(monkeypatch, http_settings):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kw):
        calls["n"] += 1
        return DummyResp(402)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    gw = HttpPaymentGateway(http_settings)

    with pytest.raises(PaymentProviderError, match="PROVIDER_REJECTED_402"):
        gw.create_refund("pi_1", 500, "refund:o1")
    assert calls["n"] == 1
    assert gw.breaker.state == "CLOSED"


def test_network_errors_exhaust_retries(monkeypatch, http_settings):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kw):
        calls["n"] += 1
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    with pytest.raises(PaymentProviderError, match="PROVIDER_UNREACHABLE"):
        open_session(HttpPaymentGateway(http_settings))
    assert calls["n"] == 3


def test_circuit_opens_after_repeated_failures(monkeypatch, http_settings):
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kw):
        calls["n"] += 1
        return DummyResp(500)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    gw = HttpPaymentGateway(http_settings.model_copy(update={"http_retry_max": 1}))

    for _ in range(2):
        with pytest.raises(PaymentProviderError, match="PROVIDER_ERROR_500"):
            gw.retrieve_session("cs_1")
    with pytest.raises(PaymentProviderError, match="CIRCUIT_OPEN"):
        gw.retrieve_session("cs_1")
    assert calls["n"] == 2


def test_bad_session_response(monkeypatch, http_settings):
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, headers=None, **kw: DummyResp(200, {}),
                        raising=True)

    with pytest.raises(PaymentProviderError, match="PROVIDER_BAD_RESPONSE"):
        HttpPaymentGateway(http_settings).retrieve_session("cs_1")


class HtmlResp(DummyResp):
    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_non_json_success_body_is_a_provider_error(monkeypatch, http_settings):
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, json=None, headers=None, **kw: HtmlResp(200),
                        raising=True)

    with pytest.raises(PaymentProviderError, match="PROVIDER_BAD_RESPONSE"):
        open_session(HttpPaymentGateway(http_settings))


def test_expire_session_posts_to_session(monkeypatch, http_settings):
    seen = []

    def fake_post(self, url, json=None, headers=None, **kw):
        seen.append(url)
        return DummyResp(200, {"id": "cs_1", "status": "expired"})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    HttpPaymentGateway(http_settings).expire_session("cs_1")

    assert seen == ["http://payments.test/v1/checkout/sessions/cs_1/expire"]


def test_breaker_half_open_allows_single_probe():
    cb = CircuitBreaker("payments", fail_threshold=1, reset_timeout=10)

    cb.on_failure()
    assert cb.state == "OPEN"
    cb._opened_at -= 10
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(PaymentProviderError, match="CIRCUIT_HALF_OPEN_BUSY"):
        cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"
