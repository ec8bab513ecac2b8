"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator


# Currencies the pricing and provider setup supports (lower-case, Stripe style)
ALLOWED_CURRENCIES = {"hkd", "usd", "cny", "eur", "gbp", "jpy"}

MAX_USER_ID_LENGTH = 128
MAX_DESCRIPTION_LENGTH = 500
MAX_IDEMPOTENCY_KEY_LENGTH = 255
MIN_AMOUNT = 1
MAX_AMOUNT = 10_000_000

# Unicode letters/digits plus ._-
USER_ID_RE = re.compile(r"^[\w.\-]+$")
UNSAFE_TEXT_RE = re.compile(r"<\s*script|javascript:|on\w+\s*=|<\s*iframe", re.IGNORECASE)

PaymentMethod = Literal["card", "apple_pay", "wechat_pay", "alipay"]
StatusSource = Literal["cache", "database", "provider", "database+cache", "database+provider"]


def validate_user_id(v: str) -> str:
    value = (v or "").strip()
    if not value:
        raise ValueError("user_id is required")
    if len(value) > MAX_USER_ID_LENGTH:
        raise ValueError(f"user_id must be at most {MAX_USER_ID_LENGTH} characters")
    if not USER_ID_RE.match(value):
        raise ValueError("user_id may only contain letters, digits, '.', '_' and '-'")
    return value


class CreatePaymentRequest(BaseModel):
    user_id: str
    payment_method: PaymentMethod = "card"
    amount: Optional[int] = Field(default=None, ge=MIN_AMOUNT, le=MAX_AMOUNT)
    currency: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    client: Literal["web", "mobile"] = "web"
    return_url: Optional[str] = Field(default=None, max_length=2048)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=MAX_IDEMPOTENCY_KEY_LENGTH)
    metadata: Optional[dict[str, str]] = None

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, v: str) -> str:
        return validate_user_id(v)

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        c = v.strip().lower()
        if c not in ALLOWED_CURRENCIES:
            raise ValueError("unsupported currency")
        return c

    @field_validator("description")
    @classmethod
    def _validate_description(cls, v: Optional[str]) -> Optional[str]:
        if v and UNSAFE_TEXT_RE.search(v):
            raise ValueError("description contains unsafe content")
        return v

    @field_validator("return_url")
    @classmethod
    def _validate_return_url(cls, v: Optional[str]) -> Optional[str]:
        if v and not v.lower().startswith(("http://", "https://")):
            raise ValueError("return_url must be an http(s) URL")
        return v


class CreatePaymentResult(BaseModel):
    user_id: str
    payment_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    existing: bool = False
    already_paid: bool = False
    days_remaining: Optional[int] = None
    last_payment_at: Optional[datetime] = None


class RefundPaymentRequest(BaseModel):
    amount: Optional[int] = Field(default=None, ge=MIN_AMOUNT, le=MAX_AMOUNT)
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = None


# ---- Provider gateway boundary ----

class CreateIntent(BaseModel):
    amount: int
    currency: str
    payment_method: PaymentMethod = "card"
    client: Literal["web", "mobile"] = "web"
    return_url: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ProviderIntent(BaseModel):
    reference_id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None


class RefundCommand(BaseModel):
    reference_id: str
    amount: Optional[int] = None
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    status: str
    amount: int
    currency: str
    payment_intent_id: Optional[str] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    data: dict[str, Any]

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def payment_object(self) -> dict[str, Any]:
        obj = self.data.get("object") if isinstance(self.data, dict) else None
        return obj if isinstance(obj, dict) else {}


class WebhookAck(BaseModel):
    event_id: str
    event_type: str
    processed: bool = False
    duplicate: bool = False
    status_changed: bool = False
    payment_intent_id: Optional[str] = None
    status: Optional[str] = None


# ---- Read models ----

class PaymentStatusView(BaseModel):
    payment_id: Optional[str] = None
    payment_intent_id: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    source: StatusSource
    cached: bool = False
    stale: bool = False
    status_changed: Optional[bool] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    status_changed_at: Optional[datetime] = None


class StatusChangeView(BaseModel):
    payment_intent_id: str
    changed: bool
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    changed_at: Optional[datetime] = None
    source: Optional[str] = None


class UserPaymentInfo(BaseModel):
    user_id: str
    has_paid: bool
    total_payment_count: int
    total_payment_amount: int
    first_payment_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    is_valid: bool = False
    days_remaining: int = 0
    validity_days: int


class PaymentHistoryItem(BaseModel):
    payment_id: str
    payment_intent_id: str
    amount: int
    currency: str
    status: str
    payment_method: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PricingView(BaseModel):
    amount: int
    currency: str
    description: Optional[str] = None
    validity_days: int


class ServiceHealth(BaseModel):
    status: Literal["up", "down", "disabled"]
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class HealthReport(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    uptime_seconds: float
    services: dict[str, ServiceHealth]
