"""
数据模型包初始化文件
"""

from .order import (
    Order,
    OrderLine,
    OrderCreate,
    CartLine,
    WeeklyPackageCreate,
    WeeklyPackage,
    PriceQuote,
    OrderStatus,
    PaymentStatus,
    DeliveryMethod,
    PaymentMethod
)
from .discount import Discount, DiscountValidation, DiscountCheckStatus, ReservationOutcome
from .result import ServiceResult

__all__ = [
    "Order",
    "OrderLine",
    "OrderCreate",
    "CartLine",
    "WeeklyPackageCreate",
    "WeeklyPackage",
    "PriceQuote",
    "OrderStatus",
    "PaymentStatus",
    "DeliveryMethod",
    "PaymentMethod",
    "Discount",
    "DiscountValidation",
    "DiscountCheckStatus",
    "ReservationOutcome",
    "ServiceResult"
]
