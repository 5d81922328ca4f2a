"""
服务包初始化文件
"""

from .cart_service import CartService
from .discount_service import DiscountService
from .order_service import OrderService
from .order_tracking import OrderTracker, order_tracker
from .payment_service import PaymentService, decide_settlement
from .weekly_subscription_service import WeeklySubscriptionService

__all__ = [
    "CartService",
    "DiscountService",
    "OrderService",
    "OrderTracker",
    "order_tracker",
    "PaymentService",
    "decide_settlement",
    "WeeklySubscriptionService"
]
