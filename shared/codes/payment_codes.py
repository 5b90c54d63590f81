"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_UNAVAILABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    PROVIDER_REJECTED = 60005
    PROVIDER_NOT_CONFIGURED = 60006

    # Settlement/ledger errors (61xxx)
    PAYMENT_NOT_FOUND = 61000
    ORDER_NOT_FOUND = 61001
    INVALID_PAYMENT_STATE = 61002
    AMOUNT_MISMATCH = 61003
    LEDGER_ERROR = 61004
    INSUFFICIENT_BALANCE = 61005
    UNSUPPORTED_PROVIDER = 61006


# Provider→internal outcome mapping ("completed" | "failed" | "pending")
PROVIDER_STATUS_TO_INTERNAL = {
    "crypto_usdt": {
        "completed": "completed",
        "success": "completed",
        "failed": "failed",
        "expired": "failed",
    },
    "paypal": {
        # Per webhook event_type
        "PAYMENT.CAPTURE.COMPLETED": "completed",
        # approval alone moves no money; the capture settles
        "CHECKOUT.ORDER.APPROVED": "pending",
        "PAYMENT.CAPTURE.DENIED": "failed",
        "CHECKOUT.ORDER.CANCELLED": "failed",
    },
    "payos": {
        # Per top-level `code`
        "00": "completed",
    },
}


def map_provider_status(provider: str, raw_status: str | None, default: str = "pending") -> str:
    """Map a provider-specific status string onto an internal outcome."""
    if raw_status is None:
        return default
    mapping = PROVIDER_STATUS_TO_INTERNAL.get(provider, {})
    return mapping.get(str(raw_status), mapping.get(str(raw_status).lower(), default))
