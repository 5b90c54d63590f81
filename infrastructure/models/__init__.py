"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import BalanceLedgerEntryModel, OrderModel, PaymentModel, UserBalanceModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "OrderModel",
    "UserBalanceModel",
    "BalanceLedgerEntryModel",
]
