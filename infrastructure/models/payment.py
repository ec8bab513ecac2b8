"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, JSON,
    Index, CheckConstraint, text,
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    状态写入规则在 domain.payment.status.decide_transition 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, autoincrement=True)

    # 双ID空间
    internal_id = Column(String(36), unique=True, nullable=False, comment="内部支付ID (UUID)")
    provider_reference = Column(String(255), unique=True, nullable=False, comment="支付渠道的支付ID")

    user_id = Column(String(128), nullable=False, index=True, comment="用户ID")

    # 金额信息（最小货币单位）
    amount = Column(BigInteger, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217 小写")

    status = Column(String(50), nullable=False, index=True, comment="支付状态（渠道状态词表）")
    payment_method = Column(String(32), nullable=False, default="card", comment="支付方式")

    idempotency_key = Column(String(255), nullable=True, comment="客户端幂等键")
    description = Column(Text, nullable=True, comment="描述")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间",
    )

    # 索引与约束
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index(
            "uq_payments_idempotency_key",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_status_updated_at", "status", "updated_at"),
        Index("ix_payments_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, internal_id='{self.internal_id}', "
            f"provider_reference='{self.provider_reference}', amount={self.amount}, status='{self.status}')>"
        )


class PaymentConfigModel(Base):
    """价格配置表（按币种，只读）"""
    __tablename__ = "payment_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    currency = Column(String(3), unique=True, nullable=False, comment="货币代码 ISO-4217 小写")
    amount = Column(BigInteger, nullable=False, comment="价格（最小货币单位）")
    description = Column(Text, nullable=True, comment="描述")
    is_active = Column(Integer, nullable=False, default=1, comment="是否启用")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_config_amount_positive"),
    )

    def __repr__(self):
        return f"<PaymentConfigModel(currency='{self.currency}', amount={self.amount})>"
