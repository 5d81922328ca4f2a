"""
仓库包初始化文件 - 数据库访问层
"""

from .box_type_repository import BoxTypeRepository
from .discount_repository import DiscountRepository
from .order_repository import OrderRepository
from .subscription_repository import SubscriptionRepository, ScheduleRepository

__all__ = [
    "BoxTypeRepository",
    "DiscountRepository",
    "OrderRepository",
    "SubscriptionRepository",
    "ScheduleRepository"
]
