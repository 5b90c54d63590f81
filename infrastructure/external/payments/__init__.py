"""
Adapter registry for payment gateway clients.

Adapters are built once from ``payment_settings`` and reused; call
``reset_adapter_registry()`` after changing settings to rebuild them.
"""
from __future__ import annotations

from typing import Callable, Mapping, Optional

import httpx

from application.ports.payment_gateway import PaymentGateway
from core.settings import PaymentSettings, payment_settings
from domain.payment.entity import ProviderKind
from domain.payment.exceptions import UnsupportedProviderException

from .balance_client import BalanceClient
from .crypto_client import CryptoUSDTClient
from .paypal_client import PayPalClient
from .payos_client import PayOSClient


class AdapterRegistry:
    def __init__(self, adapters: Mapping[ProviderKind, PaymentGateway]):
        self._adapters = dict(adapters)

    def get(self, provider: ProviderKind | str) -> PaymentGateway:
        try:
            kind = ProviderKind(provider)
            return self._adapters[kind]
        except (ValueError, KeyError):
            raise UnsupportedProviderException(str(getattr(provider, "value", provider)))

    @property
    def providers(self) -> list[ProviderKind]:
        return list(self._adapters)

    def __contains__(self, provider) -> bool:
        try:
            return ProviderKind(provider) in self._adapters
        except ValueError:
            return False

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_adapter_registry(
    settings: Optional[PaymentSettings] = None,
    *,
    uow_factory: Optional[Callable] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AdapterRegistry:
    settings = settings or payment_settings
    return AdapterRegistry(
        {
            ProviderKind.CRYPTO_USDT: CryptoUSDTClient(settings, transport=transport),
            ProviderKind.PAYPAL: PayPalClient(settings, transport=transport),
            ProviderKind.PAYOS: PayOSClient(settings, transport=transport),
            ProviderKind.BALANCE: BalanceClient(uow_factory),
        }
    )


_registry: Optional[AdapterRegistry] = None


def get_adapter_registry() -> AdapterRegistry:
    global _registry
    if _registry is None:
        _registry = build_adapter_registry()
    return _registry


def get_payment_gateway(provider: ProviderKind | str) -> PaymentGateway:
    return get_adapter_registry().get(provider)


async def reset_adapter_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.aclose()
    _registry = None


__all__ = [
    "AdapterRegistry",
    "BalanceClient",
    "CryptoUSDTClient",
    "PayPalClient",
    "PayOSClient",
    "build_adapter_registry",
    "get_adapter_registry",
    "get_payment_gateway",
    "reset_adapter_registry",
]
