"""Runtime configuration for the checkout service.

Values are read from environment variables (or a local ``.env`` file) by
``pydantic-settings``. ``get_settings()`` is cached so the whole process
shares one instance; tests build their own ``Settings`` and inject it
through FastAPI dependency overrides.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings.

    Attributes:
        database_url: SQLAlchemy URL of the shared store.
        db_transactions: Whether the store supports multi-statement
            transactions. When False, checkout runs in fallback mode with
            per-step commits and compensating cleanup.
        vat_rate: Single VAT rate applied to VAT-inclusive totals.
        auto_refund_out_of_stock: Issue a compensating refund automatically
            when stock cannot be allocated after a successful payment.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./checkout.db"
    db_transactions: bool = True

    currency: str = Field(default="ILS", min_length=3, max_length=3)
    vat_rate: Decimal = Decimal("0.18")
    enable_vat: bool = True

    reservation_ttl_minutes: int = Field(default=15, ge=1)
    coupon_reservation_ttl_minutes: int = Field(default=15, ge=1)
    expire_sweep_batch: int = Field(default=200, ge=1)

    auto_refund_out_of_stock: bool = True
    allow_partial_refunds: bool = True

    return_window_days: int = Field(default=14, ge=0)
    return_include_shipping: bool = False
    return_allowed_statuses: str = "confirmed,paid,partially_refunded"

    payment_gateway: str = "stub"  # stub | http
    payment_base_url: str = "http://payments:9002"
    payment_api_key: str = ""
    payment_webhook_secret: str = "whsec_dev"
    webhook_tolerance_seconds: int = 300
    payment_success_url: str = "http://localhost:3000/checkout/success?order={order_id}"
    payment_cancel_url: str = "http://localhost:3000/checkout/cancel?order={order_id}"

    http_timeout_secs: float = 5.0
    http_retry_max: int = 3
    http_retry_backoff_base: float = 0.15
    http_retry_max_sleep: float = 0.5
    http_circuit_fail_threshold: int = 5
    http_circuit_reset_timeout: float = 30.0

    log_level: str = "INFO"

    @field_validator("vat_rate")
    @classmethod
    def validate_vat_rate(cls, v: Decimal) -> Decimal:
        """Reject rates outside [0, 1).

        Raises:
            ValueError: When the rate is negative or >= 1.
        """
        if v < 0 or v >= 1:
            raise ValueError("VAT_RATE must be in [0, 1)")
        return v

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def effective_vat_rate(self) -> Decimal:
        return self.vat_rate if self.enable_vat else Decimal(0)

    @property
    def return_statuses(self) -> set[str]:
        return {s.strip() for s in self.return_allowed_statuses.split(",") if s.strip()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
