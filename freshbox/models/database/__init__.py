"""
数据库模型包初始化文件
"""

from .catalog_db import BoxTypeDB
from .discount_db import DiscountDB, UserDiscountUsageDB
from .order_db import OrderDB, OrderLineDB
from .subscription_db import WeeklySubscriptionDB, WeeklyDeliveryScheduleDB

__all__ = [
    "BoxTypeDB",
    "DiscountDB",
    "UserDiscountUsageDB",
    "OrderDB",
    "OrderLineDB",
    "WeeklySubscriptionDB",
    "WeeklyDeliveryScheduleDB"
]
