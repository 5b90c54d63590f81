"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Every adapter receives its section at construction time; nothing reads these
values per request. Call ``infrastructure.external.payments.reset_adapter_registry``
after mutating ``payment_settings`` to rebuild adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    connect: float = 3.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    # transport-level retries for idempotent provider calls (token fetch)
    max: int = 2
    base_backoff: float = 0.2


class RefundSettings(BaseModel):
    # PayOS cancel attempts; other rails never retry
    max_attempts: int = 3
    # seconds; waits are base, base*2, base*4, ...
    base_backoff: float = 0.5
    max_backoff: float = 8.0
    deadline_seconds: float = 30.0
    # "mark_refunded": manual action still finalizes as refunded
    # "pending_manual": manual action ends in refund_pending_manual
    manual_policy: Literal["mark_refunded", "pending_manual"] = "mark_refunded"


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class CryptoSettings(BaseModel):
    api_key: Optional[str] = None
    merchant_id: Optional[str] = None
    base_url: str = "https://app.fpayment.net"
    network: str = "TRC20"
    expire_seconds: int = 3600
    min_amount_usdt: Decimal = Decimal("1")
    # fallback conversion rates into USDT
    vnd_per_usdt: Decimal = Decimal("24500")
    usd_per_usdt: Decimal = Decimal("1")


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    mode: Literal["sandbox", "live"] = "sandbox"
    currency: str = "USD"
    refund_note: str = "Refund from store"

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class PayOSSettings(BaseModel):
    client_id: Optional[str] = None
    api_key: Optional[str] = None
    checksum_key: Optional[str] = None
    base_url: str = "https://api-merchant.payos.vn"
    min_amount: int = 10_000
    max_amount: int = 1_000_000_000
    cancellation_reason: str = "Refund requested by admin"


class NotifierSettings(BaseModel):
    discord_webhook_url: Optional[str] = None
    timeout: float = 5.0


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    refund: RefundSettings = Field(default_factory=RefundSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    # public base URL used to build provider callback URLs
    callback_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    crypto: CryptoSettings = Field(default_factory=CryptoSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)
    payos: PayOSSettings = Field(default_factory=PayOSSettings)
    notifier: NotifierSettings = Field(default_factory=NotifierSettings)

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT__",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    def webhook_url(self, provider: str) -> str:
        return f"{self.callback_base_url.rstrip('/')}/api/v1/payments/webhooks/{provider}"


payment_settings = PaymentSettings()
