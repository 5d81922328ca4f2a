"""
折扣相关数据库模型
"""

from datetime import datetime

from sqlalchemy import Column, String, Numeric, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from freshbox.core.database import Base
from freshbox.models.database.audit import AuditMixin


class DiscountDB(AuditMixin, Base):
    """折扣码表"""

    __tablename__ = "discounts"

    discount_id = Column(String(50), primary_key=True, comment="折扣ID")
    code = Column(String(50), nullable=False, unique=True, index=True, comment="折扣码（大写）")
    description = Column(Text, comment="描述")

    # 折扣信息
    value = Column(Numeric(14, 2), nullable=False, comment="折扣值")
    is_percentage = Column(Boolean, default=True, nullable=False, comment="是否百分比折扣")

    # 有效期
    start_date = Column(DateTime, nullable=False, comment="生效时间")
    end_date = Column(DateTime, nullable=False, comment="失效时间")
    is_active = Column(Boolean, default=True, nullable=False, index=True, comment="是否启用")

    __table_args__ = (
        {'comment': '折扣码表'}
    )


class UserDiscountUsageDB(AuditMixin, Base):
    """用户折扣使用记录表，永不删除"""

    __tablename__ = "user_discount_usages"

    usage_id = Column(String(50), primary_key=True, comment="使用记录ID")
    user_id = Column(String(50), nullable=False, index=True, comment="用户ID")
    discount_id = Column(String(50), ForeignKey("discounts.discount_id"), nullable=False, index=True, comment="折扣ID")
    order_id = Column(String(50), comment="关联订单ID")
    used_at = Column(DateTime(timezone=True), default=datetime.now, server_default=func.now(), comment="使用时间")

    __table_args__ = (
        UniqueConstraint("user_id", "discount_id", name="uq_user_discount_usage"),
        {'comment': '用户折扣使用记录表'}
    )
