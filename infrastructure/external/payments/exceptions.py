"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


def _details(provider: str, provider_code: Optional[str], details: Optional[dict]) -> dict:
    full_details = {"provider": provider, "provider_code": provider_code}
    if details:
        full_details.update(details)
    return full_details


class PaymentProviderError(BusinessException):
    """Terminal provider failure (declined request, invalid parameters)."""

    def __init__(self, message: str, *, provider: str, provider_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=_details(provider, provider_code, details),
        )


class PaymentRecoverableError(BusinessException):
    """Transient failure after retries were exhausted; callers degrade to local state."""

    def __init__(self, message: str, *, provider: str, provider_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE,
            message=message,
            error_type="PaymentRecoverableError",
            details=_details(provider, provider_code, details),
        )


class ProviderNotFoundError(BusinessException):
    def __init__(self, reference_id: str, *, provider: str):
        self.reference_id = reference_id
        super().__init__(
            code=PaymentCode.PROVIDER_NOT_FOUND,
            message="Payment not found at provider",
            error_type="ProviderNotFound",
            details={"provider": provider, "reference_id": reference_id},
        )


class ProviderConfigurationError(BusinessException):
    """Authentication or configuration failure; never retried."""

    def __init__(self, message: str, *, provider: str):
        super().__init__(
            code=PaymentCode.PROVIDER_MISCONFIGURED,
            message=message,
            error_type="ProviderConfigurationError",
            details={"provider": provider},
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )
