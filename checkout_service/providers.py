"""Factory helpers wiring the ports to concrete adapters.

``build_payment_gateway`` returns the HTTP adapter when
``settings.payment_gateway == "http"`` and the in-process stub otherwise.
The app factory builds one instance per app so the HTTP adapter's circuit
breaker state is shared between requests.
"""

from functools import lru_cache

from .adapters import LoggingNotifier, StubPaymentGateway
from .domain import Notifier, PaymentGateway
from .http_adapters import HttpPaymentGateway
from .settings import Settings


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    if settings.payment_gateway.lower() == "http":
        return HttpPaymentGateway(settings)
    return StubPaymentGateway()


@lru_cache
def get_notifier() -> Notifier:
    return LoggingNotifier()
