"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
import asyncio
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import PaymentRecord, PricingConfig, UserPaymentAggregate, utcnow
from domain.payment.exceptions import DatabaseUnavailableError, DuplicatePaymentError
from domain.payment.repository import PaymentConfigRepository, PaymentRepository, StatusUpdateResult
from domain.payment.status import (
    INTERMEDIATE_STATUSES,
    PaymentStatus,
    TransitionDecision,
    decide_transition,
)
from infrastructure.models.payment import PaymentConfigModel, PaymentModel


logger = get_logger(__name__)

# 连接层面的失败（区别于约束冲突等语义错误）
DB_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, OSError, asyncio.TimeoutError)

MAX_CAS_ATTEMPTS = 3


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> PaymentRecord:
        """将数据库模型转换为领域实体"""
        return PaymentRecord(
            internal_id=model.internal_id,
            provider_reference=model.provider_reference,
            user_id=model.user_id,
            amount=int(model.amount),
            currency=model.currency,
            status=model.status,
            payment_method=model.payment_method,
            idempotency_key=model.idempotency_key,
            description=model.description,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: PaymentRecord) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        now = utcnow()
        return PaymentModel(
            internal_id=entity.internal_id,
            provider_reference=entity.provider_reference,
            user_id=entity.user_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status,
            payment_method=entity.payment_method,
            idempotency_key=entity.idempotency_key,
            description=entity.description,
            extra_metadata=entity.metadata or None,
            created_at=entity.created_at or now,
            updated_at=entity.updated_at or now,
        )

    async def _execute(self, operation: str, stmt):
        try:
            return await self.session.execute(stmt)
        except DB_UNAVAILABLE_ERRORS as e:
            logger.warning("database_operation_failed", operation=operation, error=str(e))
            raise DatabaseUnavailableError(operation) from e

    async def _get_one(self, operation: str, *criteria) -> Optional[PaymentModel]:
        result = await self._execute(operation, select(PaymentModel).where(*criteria))
        return result.scalar_one_or_none()

    async def create(self, payment: PaymentRecord) -> PaymentRecord:
        """创建支付记录（SAVEPOINT 内插入，冲突不影响外层事务）"""
        db_payment = self._to_model(payment)
        try:
            async with self.session.begin_nested():
                self.session.add(db_payment)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "payment_create_conflict",
                idempotency_key=payment.idempotency_key,
                payment_intent_id=payment.provider_reference,
            )
            raise DuplicatePaymentError(
                idempotency_key=payment.idempotency_key,
                provider_reference=payment.provider_reference,
            ) from e
        except DB_UNAVAILABLE_ERRORS as e:
            logger.warning("database_operation_failed", operation="create", error=str(e))
            raise DatabaseUnavailableError("create") from e

        logger.info(
            "payment_created",
            payment_id=db_payment.internal_id,
            payment_intent_id=db_payment.provider_reference,
            user_id=db_payment.user_id,
            status=db_payment.status,
        )
        return self._to_entity(db_payment)

    async def get_by_internal_id(self, internal_id: str) -> Optional[PaymentRecord]:
        db_payment = await self._get_one("get_by_internal_id", PaymentModel.internal_id == internal_id)
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_provider_reference(self, provider_reference: str) -> Optional[PaymentRecord]:
        db_payment = await self._get_one(
            "get_by_provider_reference", PaymentModel.provider_reference == provider_reference
        )
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentRecord]:
        db_payment = await self._get_one(
            "get_by_idempotency_key", PaymentModel.idempotency_key == idempotency_key
        )
        return self._to_entity(db_payment) if db_payment else None

    async def update_status(self, provider_reference: str, new_status: str) -> StatusUpdateResult:
        """
        受保护的状态更新（compare-and-swap）

        UPDATE ... WHERE status = :current；期间被并发修改则重读后重新判定。
        """
        decision = TransitionDecision.NOOP
        current: Optional[str] = None
        for _ in range(MAX_CAS_ATTEMPTS):
            db_payment = await self._get_one(
                "update_status", PaymentModel.provider_reference == provider_reference
            )
            if db_payment is None:
                return StatusUpdateResult(
                    provider_reference=provider_reference,
                    previous_status=None,
                    current_status=None,
                    decision=TransitionDecision.NOOP,
                )

            current = db_payment.status
            decision = decide_transition(current, new_status)
            if not decision.applied:
                if decision.rejected:
                    logger.warning(
                        "payment_status_integrity_warning",
                        payment_intent_id=provider_reference,
                        current_status=current,
                        incoming_status=new_status,
                        decision=decision.value,
                    )
                return StatusUpdateResult(
                    provider_reference=provider_reference,
                    previous_status=current,
                    current_status=current,
                    decision=decision,
                    record=self._to_entity(db_payment),
                )

            result = await self._execute(
                "update_status",
                update(PaymentModel)
                .where(
                    PaymentModel.provider_reference == provider_reference,
                    PaymentModel.status == current,
                )
                .values(status=new_status, updated_at=utcnow())
                .execution_options(synchronize_session=False),
            )
            if result.rowcount == 1:
                # 同步 identity map 中的对象
                await self.session.refresh(db_payment)
                logger.info(
                    "payment_status_updated",
                    payment_intent_id=provider_reference,
                    old_status=current,
                    new_status=new_status,
                )
                return StatusUpdateResult(
                    provider_reference=provider_reference,
                    previous_status=current,
                    current_status=new_status,
                    decision=decision,
                    record=self._to_entity(db_payment),
                )

            logger.info("payment_status_cas_retry", payment_intent_id=provider_reference, expected=current)
            self.session.expire(db_payment)

        logger.warning(
            "payment_status_cas_exhausted",
            payment_intent_id=provider_reference,
            incoming_status=new_status,
        )
        return StatusUpdateResult(
            provider_reference=provider_reference,
            previous_status=current,
            current_status=current,
            decision=TransitionDecision.NOOP,
        )

    async def get_user_aggregate(self, user_id: str) -> UserPaymentAggregate:
        """从成功的支付记录实时计算用户聚合；终态不可变，updated_at 即成功时间"""
        result = await self._execute(
            "get_user_aggregate",
            select(
                func.count(PaymentModel.id),
                func.coalesce(func.sum(PaymentModel.amount), 0),
                func.min(PaymentModel.updated_at),
                func.max(PaymentModel.updated_at),
            ).where(
                PaymentModel.user_id == user_id,
                PaymentModel.status == PaymentStatus.SUCCEEDED.value,
            ),
        )
        count, total, first_at, last_at = result.one()
        return UserPaymentAggregate(
            user_id=user_id,
            total_payment_count=int(count or 0),
            total_payment_amount=int(total or 0),
            first_payment_at=first_at,
            last_payment_at=last_at,
        )

    async def list_by_user(self, user_id: str, limit: int = 50) -> List[PaymentRecord]:
        """获取用户的支付列表（按创建时间倒序）"""
        result = await self._execute(
            "list_by_user",
            select(PaymentModel)
            .where(PaymentModel.user_id == user_id)
            .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            .limit(limit),
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_stale_intermediate(self, older_than: datetime, limit: int = 100) -> List[PaymentRecord]:
        result = await self._execute(
            "list_stale_intermediate",
            select(PaymentModel)
            .where(
                PaymentModel.status.in_(sorted(INTERMEDIATE_STATUSES)),
                PaymentModel.updated_at < older_than,
            )
            .order_by(PaymentModel.updated_at.asc())
            .limit(limit),
        )
        return [self._to_entity(p) for p in result.scalars().all()]


class SQLAlchemyPaymentConfigRepository(PaymentConfigRepository):
    """价格配置仓储（只读）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_pricing(self, currency: str) -> Optional[PricingConfig]:
        try:
            result = await self.session.execute(
                select(PaymentConfigModel).where(
                    PaymentConfigModel.currency == currency.lower(),
                    PaymentConfigModel.is_active == 1,
                )
            )
        except DB_UNAVAILABLE_ERRORS as e:
            logger.warning("database_operation_failed", operation="get_pricing", error=str(e))
            raise DatabaseUnavailableError("get_pricing") from e
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return PricingConfig(currency=row.currency, amount=int(row.amount), description=row.description)
