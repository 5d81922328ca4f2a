"""
折扣码业务服务层
校验折扣码并保证每个用户对同一折扣码最多使用一次
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.core.transaction import TransactionCoordinator, transaction_coordinator
from freshbox.models.order import to_money
from freshbox.models.discount import (
    Discount,
    DiscountCheckStatus,
    DiscountValidation,
    ReservationOutcome
)
from freshbox.repositories.discount_repository import DiscountRepository

logger = logging.getLogger(__name__)


class DiscountService:
    """折扣码业务服务"""

    def __init__(self, coordinator: Optional[TransactionCoordinator] = None):
        self.coordinator = coordinator or transaction_coordinator

    async def validate(
        self,
        code: str,
        at_time: Optional[datetime] = None,
        session: Optional[AsyncSession] = None
    ) -> DiscountValidation:
        """校验折扣码在给定时间是否可用"""
        at_time = at_time or datetime.now()

        if session is not None:
            return await self._validate(DiscountRepository(session), code, at_time)
        async with self.coordinator.read_session() as read_session:
            return await self._validate(DiscountRepository(read_session), code, at_time)

    async def _validate(self, repo: DiscountRepository, code: str, at_time: datetime) -> DiscountValidation:
        if not code or not code.strip():
            return DiscountValidation(status=DiscountCheckStatus.NOT_FOUND)

        db_discount = await repo.get_by_code(code)
        if not db_discount:
            return DiscountValidation(status=DiscountCheckStatus.NOT_FOUND)

        discount = repo.to_model(db_discount)
        if not discount.is_active:
            status = DiscountCheckStatus.INACTIVE
        elif at_time < discount.start_date:
            status = DiscountCheckStatus.NOT_STARTED
        elif at_time > discount.end_date:
            status = DiscountCheckStatus.EXPIRED
        else:
            status = DiscountCheckStatus.VALID

        if status != DiscountCheckStatus.VALID:
            logger.info(f"折扣码 {discount.code} 不可用: {status.value}")
        return DiscountValidation(status=status, discount=discount)

    async def has_user_used(self, user_id: str, discount_id: str, session: Optional[AsyncSession] = None) -> bool:
        """用户是否已使用过该折扣（仅作快速判断，最终以唯一约束为准）"""
        if session is not None:
            return await DiscountRepository(session).has_usage(user_id, discount_id)
        async with self.coordinator.read_session() as read_session:
            return await DiscountRepository(read_session).has_usage(user_id, discount_id)

    async def reserve_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        discount_id: str,
        order_id: Optional[str] = None
    ) -> ReservationOutcome:
        """在调用方事务中写入使用记录

        并发请求可能同时通过 has_user_used 检查，唯一约束保证只有一个成功
        """
        repo = DiscountRepository(session)

        if await repo.has_usage(user_id, discount_id):
            return ReservationOutcome.ALREADY_USED

        usage = await repo.insert_usage(user_id, discount_id, order_id)
        if usage is None:
            logger.info(f"用户 {user_id} 并发使用折扣 {discount_id}，唯一约束拒绝")
            return ReservationOutcome.ALREADY_USED

        logger.info(f"用户 {user_id} 已占用折扣 {discount_id}")
        return ReservationOutcome.RESERVED

    @staticmethod
    def compute_discount_amount(discount: Discount, subtotal: Decimal) -> Decimal:
        """计算折扣金额，不超过小计"""
        subtotal = Decimal(subtotal)
        if subtotal <= 0:
            return Decimal("0.00")

        if discount.is_percentage:
            amount = subtotal * discount.value / Decimal("100")
        else:
            amount = discount.value

        amount = min(max(amount, Decimal("0")), subtotal)
        return to_money(amount)
