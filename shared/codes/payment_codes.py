"""
Payment specific business codes.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Payment records (21xxx)
    PAYMENT_NOT_FOUND = 21000
    DUPLICATE_PAYMENT = 21001
    NOT_REFUNDABLE = 21002
    INVALID_IDENTIFIER = 21003

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    PROVIDER_NOT_FOUND = 60005
    PROVIDER_MISCONFIGURED = 60006

    # Local stores (61xxx)
    CACHE_UNAVAILABLE = 61000
    DATABASE_UNAVAILABLE = 61001
