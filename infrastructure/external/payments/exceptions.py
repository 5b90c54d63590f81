"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "PaymentProviderError",
        message_key: str = "payments.provider.error",
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
            message_key=message_key,
            format_params={"provider": provider},
        )
        self.provider = provider


class ProviderRejectedError(PaymentProviderError):
    """Definitive business-level refusal (below minimum, invalid request)."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            provider=provider,
            provider_code=provider_code,
            details=details,
            code=PaymentCode.PROVIDER_REJECTED,
            error_type="ProviderRejected",
            message_key="payments.provider.rejected",
        )


class ProviderUnavailableError(PaymentProviderError):
    """Network, auth or 5xx failure talking to the provider."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            provider=provider,
            provider_code=provider_code,
            details=details,
            code=PaymentCode.PROVIDER_UNAVAILABLE,
            error_type="ProviderUnavailable",
            message_key="payments.provider.unavailable",
        )


class ProviderNotConfiguredError(ProviderUnavailableError):
    def __init__(self, provider: str, missing: list[str]):
        super().__init__(
            f"{provider} credentials are not configured",
            provider=provider,
            details={"missing": missing},
        )
        self.code = PaymentCode.PROVIDER_NOT_CONFIGURED
