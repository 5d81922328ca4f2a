"""
折扣码数据库操作层
"""

from typing import Optional
import uuid

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.models.discount import Discount
from freshbox.models.database.discount_db import DiscountDB, UserDiscountUsageDB


class DiscountRepository:
    """折扣码数据库操作层"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, code: str) -> Optional[DiscountDB]:
        """根据折扣码获取（大小写不敏感）"""
        result = await self.db.execute(
            select(DiscountDB).where(
                and_(
                    DiscountDB.code == code.strip().upper(),
                    DiscountDB.is_deleted.is_(False)
                )
            )
        )
        return result.scalar_one_or_none()

    async def has_usage(self, user_id: str, discount_id: str) -> bool:
        """用户是否已使用过该折扣"""
        result = await self.db.execute(
            select(UserDiscountUsageDB.usage_id).where(
                and_(
                    UserDiscountUsageDB.user_id == user_id,
                    UserDiscountUsageDB.discount_id == discount_id
                )
            )
        )
        return result.first() is not None

    async def insert_usage(
        self,
        user_id: str,
        discount_id: str,
        order_id: Optional[str] = None
    ) -> Optional[UserDiscountUsageDB]:
        """在保存点中写入使用记录

        唯一约束冲突时只回滚保存点并返回None，外层事务不受影响
        """
        usage = UserDiscountUsageDB(
            usage_id=str(uuid.uuid4()),
            user_id=user_id,
            discount_id=discount_id,
            order_id=order_id,
            created_by=user_id
        )
        try:
            async with self.db.begin_nested():
                self.db.add(usage)
                await self.db.flush()
        except IntegrityError:
            return None
        return usage

    def to_model(self, db_discount: DiscountDB) -> Discount:
        """数据库对象转换为业务模型"""
        return Discount(
            discount_id=db_discount.discount_id,
            code=db_discount.code,
            description=db_discount.description,
            value=db_discount.value,
            is_percentage=db_discount.is_percentage,
            start_date=db_discount.start_date,
            end_date=db_discount.end_date,
            is_active=db_discount.is_active
        )
