"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.exceptions import DatabaseUnavailableError
from infrastructure.repositories.payment_repository import (
    DB_UNAVAILABLE_ERRORS,
    SQLAlchemyPaymentConfigRepository,
    SQLAlchemyPaymentRepository,
)


logger = get_logger(__name__)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.payment_repository = SQLAlchemyPaymentRepository(self.session)
        self.payment_config_repository = SQLAlchemyPaymentConfigRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self.payment_repository = None  # type: ignore[assignment]
            self.payment_config_repository = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            try:
                await self.session.commit()
            except DB_UNAVAILABLE_ERRORS as e:
                logger.warning("database_commit_failed", error=str(e))
                raise DatabaseUnavailableError("commit") from e
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            try:
                await self.session.rollback()
            except DB_UNAVAILABLE_ERRORS as e:
                # 连接已断开时事务随连接一起失效
                logger.warning("database_rollback_failed", error=str(e))
        self._committed = False
