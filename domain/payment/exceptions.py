"""
支付领域异常
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException, ResourceNotFoundException
from shared.codes.payment_codes import PaymentCode


class PaymentNotFoundException(ResourceNotFoundException):
    """两个ID空间都无法解析到支付记录"""

    def __init__(self, identifier: Optional[str] = None):
        super().__init__("Payment", identifier, code=PaymentCode.PAYMENT_NOT_FOUND)
        self.error_type = "PaymentNotFound"


class DuplicatePaymentError(BusinessException):
    """唯一约束冲突（幂等键或支付渠道ID），由调用方重读后恢复"""

    def __init__(self, *, idempotency_key: Optional[str] = None, provider_reference: Optional[str] = None):
        self.idempotency_key = idempotency_key
        self.provider_reference = provider_reference
        super().__init__(
            code=PaymentCode.DUPLICATE_PAYMENT,
            message="Payment already exists",
            error_type="DuplicatePayment",
        )


class PaymentNotRefundableException(BusinessException):
    def __init__(self, status: str):
        super().__init__(
            code=PaymentCode.NOT_REFUNDABLE,
            message="Payment cannot be refunded in its current status",
            error_type="PaymentNotRefundable",
            details={"status": status},
        )


class CacheUnavailableError(BusinessException):
    """缓存不可用（区别于未命中）"""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            code=PaymentCode.CACHE_UNAVAILABLE,
            message="Cache unavailable",
            error_type="CacheUnavailable",
            details={"operation": operation},
        )


class DatabaseUnavailableError(BusinessException):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            code=PaymentCode.DATABASE_UNAVAILABLE,
            message="Database unavailable",
            error_type="DatabaseUnavailable",
            details={"operation": operation},
        )
