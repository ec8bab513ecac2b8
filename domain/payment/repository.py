"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List

from .entity import PaymentRecord, PricingConfig, UserPaymentAggregate
from .status import TransitionDecision


@dataclass
class StatusUpdateResult:
    """受保护状态更新的结果"""
    provider_reference: str
    previous_status: Optional[str]
    current_status: Optional[str]
    decision: TransitionDecision
    record: Optional[PaymentRecord] = None

    @property
    def found(self) -> bool:
        return self.record is not None

    @property
    def applied(self) -> bool:
        return self.decision.applied

    @property
    def changed(self) -> bool:
        return self.applied and self.previous_status != self.current_status


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: PaymentRecord) -> PaymentRecord:
        """创建支付记录；唯一约束冲突时抛出 DuplicatePaymentError"""
        pass

    @abstractmethod
    async def get_by_internal_id(self, internal_id: str) -> Optional[PaymentRecord]:
        """根据内部支付ID获取"""
        pass

    @abstractmethod
    async def get_by_provider_reference(self, provider_reference: str) -> Optional[PaymentRecord]:
        """根据支付渠道ID获取"""
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentRecord]:
        """根据幂等键获取"""
        pass

    @abstractmethod
    async def update_status(self, provider_reference: str, new_status: str) -> StatusUpdateResult:
        """受保护的状态更新：终态不可被覆盖"""
        pass

    @abstractmethod
    async def get_user_aggregate(self, user_id: str) -> UserPaymentAggregate:
        """从成功的支付记录实时计算用户聚合"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: int = 50) -> List[PaymentRecord]:
        """用户支付历史（按创建时间倒序）"""
        pass

    @abstractmethod
    async def list_stale_intermediate(self, older_than: datetime, limit: int = 100) -> List[PaymentRecord]:
        """长时间停留在中间状态的支付"""
        pass


class PaymentConfigRepository(ABC):
    """价格配置只读接口"""

    @abstractmethod
    async def get_pricing(self, currency: str) -> Optional[PricingConfig]:
        pass
