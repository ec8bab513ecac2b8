"""
支付领域实体 - 支付记录、状态快照与用户支付聚合
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.identifiers import InternalId, ProviderReference


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentRecord:
    """
    支付记录 - 持久化的权威状态

    业务规则：
    1. provider_reference 全局唯一
    2. idempotency_key 存在时全局唯一
    3. 金额（最小货币单位）必须大于0
    4. 只更新状态，不删除
    """

    internal_id: str
    provider_reference: str
    user_id: str
    amount: int
    currency: str
    status: str
    payment_method: str = "card"
    idempotency_key: Optional[str] = None
    description: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be positive: {self.amount}",
                field="amount",
            )
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(
                f"Invalid currency code: {self.currency}",
                field="currency",
            )
        self.currency = self.currency.lower()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def lookup_internal(self) -> InternalId:
        return InternalId(self.internal_id)

    @property
    def lookup_reference(self) -> ProviderReference:
        return ProviderReference(self.provider_reference)

    def to_snapshot(self) -> dict[str, Any]:
        """缓存快照（payment:/payment_ref: 两个键共用）"""
        return {
            "internal_id": self.internal_id,
            "provider_reference": self.provider_reference,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class PaymentSnapshot:
    """缓存中的支付快照（非权威）"""

    internal_id: str
    provider_reference: str
    user_id: str
    amount: int
    currency: str
    status: str
    payment_method: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentSnapshot":
        return cls(
            internal_id=str(data["internal_id"]),
            provider_reference=str(data["provider_reference"]),
            user_id=str(data.get("user_id") or ""),
            amount=int(data.get("amount") or 0),
            currency=str(data.get("currency") or ""),
            status=str(data.get("status") or ""),
            payment_method=data.get("payment_method"),
            description=data.get("description"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class ProviderStatusSnapshot:
    """provider_status:{ref} 缓存记录"""

    provider_reference: str
    status: str
    amount: int
    currency: str
    cached_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_reference": self.provider_reference,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderStatusSnapshot":
        cached_at = data.get("cached_at")
        return cls(
            provider_reference=str(data["provider_reference"]),
            status=str(data.get("status") or ""),
            amount=int(data.get("amount") or 0),
            currency=str(data.get("currency") or ""),
            cached_at=_ensure_utc(datetime.fromisoformat(cached_at)) if cached_at else utcnow(),
        )


@dataclass
class UserPaymentAggregate:
    """
    用户支付聚合 - 每次从成功的支付记录实时计算，不单独存储可变计数
    """

    user_id: str
    total_payment_count: int = 0
    total_payment_amount: int = 0
    first_payment_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None

    def __post_init__(self):
        self.first_payment_at = _ensure_utc(self.first_payment_at)
        self.last_payment_at = _ensure_utc(self.last_payment_at)

    @property
    def has_paid(self) -> bool:
        return self.total_payment_count > 0

    def days_since_last_payment(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.last_payment_at is None:
            return None
        delta = (now or utcnow()) - self.last_payment_at
        return delta.total_seconds() / 86400

    def is_within(self, validity_days: int, now: Optional[datetime] = None) -> bool:
        """最近一次成功支付是否仍在有效期内"""
        days = self.days_since_last_payment(now)
        return days is not None and days <= validity_days

    def days_remaining(self, validity_days: int, now: Optional[datetime] = None) -> int:
        days = self.days_since_last_payment(now)
        if days is None:
            return 0
        return max(0, int(validity_days - days))


@dataclass
class PricingConfig:
    currency: str
    amount: int
    description: Optional[str] = None
