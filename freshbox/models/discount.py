"""
折扣码相关数据模型
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class DiscountCheckStatus(str, Enum):
    """折扣码校验结果"""
    VALID = "valid"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    NOT_STARTED = "not_started"  # 尚未到生效时间


class ReservationOutcome(str, Enum):
    """用户占用折扣码结果"""
    RESERVED = "reserved"
    ALREADY_USED = "already_used"


class Discount(BaseModel):
    """折扣码模型"""

    discount_id: str = Field(..., description="折扣ID")
    code: str = Field(..., min_length=1, max_length=50, description="折扣码（大写存储）")
    description: Optional[str] = Field(None, max_length=500, description="描述")
    value: Decimal = Field(..., ge=0, description="折扣值：百分比或固定金额")
    is_percentage: bool = Field(default=True, description="是否百分比折扣")
    start_date: datetime = Field(..., description="生效时间")
    end_date: datetime = Field(..., description="失效时间")
    is_active: bool = Field(default=True, description="是否启用")

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper()

    @model_validator(mode="after")
    def validate_window(self):
        """验证有效期与百分比范围"""
        if self.end_date < self.start_date:
            raise ValueError("结束时间必须晚于开始时间")
        if self.is_percentage and self.value > Decimal("100"):
            raise ValueError("百分比折扣值不能超过100")
        return self


class DiscountValidation(BaseModel):
    """折扣码校验结果"""

    status: DiscountCheckStatus
    discount: Optional[Discount] = None

    @property
    def is_valid(self) -> bool:
        return self.status == DiscountCheckStatus.VALID

