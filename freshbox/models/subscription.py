"""
周订阅与配送排期数据模型
"""

from decimal import Decimal
from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator
from enum import Enum

from freshbox.models.order import DeliveryInfo, Order


class SubscriptionStatus(str, Enum):
    """周订阅状态枚举"""
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class DeliveryMarkOutcome(str, Enum):
    """标记送达结果"""
    UPDATED = "updated"
    ALREADY_DELIVERED = "already_delivered"
    SLOT_INVALID = "slot_invalid"
    NOT_FOUND = "not_found"
    WEEK_PAUSED = "week_paused"


class PauseOutcome(str, Enum):
    """暂停结果"""
    PAUSED = "paused"
    NOT_FOUND = "not_found"


class ResumeOutcome(str, Enum):
    """恢复结果"""
    RESUMED = "resumed"
    NOT_FOUND = "not_found"
    NOT_PAUSED = "not_paused"


WEEKDAY_NAMES = ["周一", "周二", "周三", "周四", "周五", "周六", "周日"]


class WeeklySubscriptionCreate(DeliveryInfo):
    """周订阅创建请求"""

    box_type_id: str = Field(..., min_length=1, description="盒子类型ID")
    start_date: date = Field(..., description="开始日期，必须是第一个配送日")
    duration_weeks: int = Field(..., ge=1, le=52, description="订阅周数")
    first_delivery_day: Optional[int] = Field(None, ge=0, le=6, description="第一次配送星期（0=周一）")
    second_delivery_day: Optional[int] = Field(None, ge=0, le=6, description="第二次配送星期（0=周一）")

    @model_validator(mode="after")
    def validate_delivery_days(self):
        """两次配送必须在不同的星期几"""
        if (
            self.first_delivery_day is not None
            and self.second_delivery_day is not None
            and self.first_delivery_day == self.second_delivery_day
        ):
            raise ValueError("两次配送日不能相同")
        return self


class WeeklySubscription(BaseModel):
    """周订阅模型"""

    subscription_id: str
    user_id: str
    box_type_id: str
    box_type_name: Optional[str] = None
    start_date: date
    end_date: date
    duration_weeks: int = Field(..., ge=1)
    weekly_price: Decimal = Field(..., ge=0)
    total_price: Decimal = Field(..., ge=0)
    per_box_price: Decimal = Field(..., ge=0)
    first_delivery_day: int = Field(..., ge=0, le=6)
    second_delivery_day: int = Field(..., ge=0, le=6)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    payment_method: Optional[str] = None
    delivery_address: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    allergy_notes: Optional[str] = None
    preference_notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def delivery_days_text(self) -> str:
        return f"{WEEKDAY_NAMES[self.first_delivery_day]} & {WEEKDAY_NAMES[self.second_delivery_day]}"


class WeeklyDeliverySchedule(BaseModel):
    """单周配送排期"""

    schedule_id: str
    subscription_id: str
    week_start_date: date
    week_end_date: date
    first_delivery_date: date
    second_delivery_date: date
    is_first_delivered: bool = False
    first_delivered_at: Optional[datetime] = None
    is_second_delivered: bool = False
    second_delivered_at: Optional[datetime] = None
    is_paused: bool = False
    pause_reason: Optional[str] = None
    note: Optional[str] = None

    @property
    def delivered_count(self) -> int:
        return int(self.is_first_delivered) + int(self.is_second_delivered)

    @property
    def is_fully_delivered(self) -> bool:
        return self.is_first_delivered and self.is_second_delivered


class SubscriptionPurchase(BaseModel):
    """周订阅购买结果"""

    subscription: WeeklySubscription
    order: Order
    schedules: List[WeeklyDeliverySchedule]


class SubscriptionRenewal(BaseModel):
    """周订阅续订结果"""

    subscription: WeeklySubscription
    order: Order
    created_schedules: List[WeeklyDeliverySchedule]
