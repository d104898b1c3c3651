"""用户额度账本"""
from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.user import User

logger = logging.getLogger(__name__)


class CreditLedgerError(Exception):
    pass


class CreditLedger(Protocol):
    async def increase(self, db: AsyncSession, user_id: int, amount: int) -> None:
        """在调用方事务内给用户增加额度，失败时抛异常"""
        ...


class DbCreditLedger:
    """基于 users.quota 的账本，原子自增"""

    async def increase(self, db: AsyncSession, user_id: int, amount: int) -> None:
        n = int(amount)
        if n < 0:
            raise CreditLedgerError(f"credit amount must not be negative: {n}")
        result = await db.execute(
            update(User)
            .where(User.id == int(user_id))
            .values(quota=User.quota + n)
            .execution_options(synchronize_session=False)
        )
        if getattr(result, "rowcount", 0) != 1:
            raise CreditLedgerError(f"user {user_id} not found")
        logger.info("credited %s quota to user %s", n, user_id)

