"""
支付领域异常
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentNotFoundException(BusinessException):
    """支付记录不存在"""
    def __init__(self, identifier: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="PaymentNotFound",
            details={"payment": identifier},
            message_key="payments.not_found",
            format_params={"payment": identifier},
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message=f"Order not found: {order_id}",
            error_type="OrderNotFound",
            details={"order_id": order_id},
            message_key="orders.not_found",
            format_params={"order_id": order_id},
        )


class InvalidPaymentStateException(BusinessException):
    """支付状态不允许当前操作（例如非 completed 的支付发起退款）"""
    def __init__(self, payment_id: str, status: str, expected: Optional[str] = None):
        details = {"payment_id": payment_id, "status": status}
        if expected:
            details["expected"] = expected
        super().__init__(
            code=PaymentCode.INVALID_PAYMENT_STATE,
            message=f"Payment {payment_id} is in status {status}",
            error_type="InvalidPaymentState",
            details=details,
            message_key="payments.status.invalid",
            format_params={"status": status},
        )


class AmountMismatchException(BusinessException):
    def __init__(self, payment_id: str, expected: Decimal, received: Decimal):
        super().__init__(
            code=PaymentCode.AMOUNT_MISMATCH,
            message="Amount mismatch",
            error_type="AmountMismatch",
            details={"payment_id": payment_id, "expected": str(expected), "received": str(received)},
            message_key="payments.amount.mismatch",
        )


class LedgerError(BusinessException):
    """余额账本操作失败（存储过程错误、并发冲突等）"""
    def __init__(self, message: str, *, details: Optional[dict] = None, code: int = PaymentCode.LEDGER_ERROR):
        super().__init__(
            code=code,
            message=message,
            error_type="LedgerError",
            details=details,
            message_key="ledger.error",
            format_params={"reason": message},
        )


class InsufficientBalanceException(LedgerError):
    def __init__(self, user_id: str, balance: Decimal, amount: Decimal):
        super().__init__(
            "Insufficient balance",
            details={"user_id": user_id, "balance": str(balance), "amount": str(amount)},
            code=PaymentCode.INSUFFICIENT_BALANCE,
        )
        self.message_key = "ledger.insufficient_balance"


class UnsupportedProviderException(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=PaymentCode.UNSUPPORTED_PROVIDER,
            message=f"Unsupported provider: {provider}",
            error_type="UnsupportedProvider",
            details={"provider": provider},
            message_key="payments.provider.unsupported",
            format_params={"provider": provider},
        )
