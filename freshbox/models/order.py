"""
订单相关数据模型
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class OrderStatus(str, Enum):
    """订单履约状态枚举"""
    PENDING = "pending"  # 待处理
    PROCESSING = "processing"  # 处理中
    COMPLETED = "completed"  # 已完成
    CANCELLED = "cancelled"  # 已取消


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"  # 待支付
    PAID = "paid"  # 已支付
    CANCELLED = "cancelled"  # 已取消
    EXPIRED = "expired"  # 已过期
    REFUNDED = "refunded"  # 已退款


class DeliveryMethod(str, Enum):
    """配送方式枚举"""
    STANDARD = "standard"
    EXPRESS = "express"


class PaymentMethod(str, Enum):
    """支付方式枚举"""
    PAYOS = "payos"
    CASH_ON_DELIVERY = "cash_on_delivery"


# 履约状态合法流转
ORDER_STATUS_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_ORDER_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
TERMINAL_PAYMENT_STATUSES = {
    PaymentStatus.PAID,
    PaymentStatus.CANCELLED,
    PaymentStatus.EXPIRED,
    PaymentStatus.REFUNDED,
}

MONEY_QUANT = Decimal("0.01")


def to_money(value) -> Decimal:
    """金额统一保留两位小数，四舍五入"""
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


class CartLine(BaseModel):
    """购物车行"""

    box_type_id: str = Field(..., min_length=1, description="盒子类型ID")
    quantity: int = Field(..., ge=1, description="数量")


class OrderLine(BaseModel):
    """订单行模型，单价在下单时捕获"""

    line_id: str = Field(..., description="订单行ID")
    box_type_id: str = Field(..., description="盒子类型ID")
    box_type_name: str = Field(..., description="盒子类型名称")
    quantity: int = Field(..., ge=1, description="数量")
    unit_price: Decimal = Field(..., ge=0, description="下单时单价")

    @property
    def subtotal(self) -> Decimal:
        """小计"""
        return self.unit_price * self.quantity


class DeliveryInfo(BaseModel):
    """配送信息"""

    delivery_method: DeliveryMethod = Field(default=DeliveryMethod.STANDARD, description="配送方式")
    payment_method: PaymentMethod = Field(default=PaymentMethod.PAYOS, description="支付方式")
    delivery_address: str = Field(..., min_length=1, max_length=500, description="配送地址")
    recipient_name: str = Field(..., min_length=1, max_length=100, description="收件人")
    recipient_phone: str = Field(..., min_length=1, max_length=20, description="联系电话")
    allergy_notes: Optional[str] = Field(None, max_length=1000, description="过敏备注")
    preference_notes: Optional[str] = Field(None, max_length=1000, description="口味偏好")


class OrderCreate(DeliveryInfo):
    """创建订单请求模型"""

    lines: List[CartLine] = Field(..., min_length=1, description="购物车行")
    discount_code: Optional[str] = Field(None, max_length=50, description="折扣码")

    @field_validator("discount_code")
    @classmethod
    def normalize_discount_code(cls, v):
        """折扣码去空格，空字符串视为未填写"""
        if v is None:
            return None
        v = v.strip()
        return v or None


class WeeklyPackageCreate(DeliveryInfo):
    """周套餐（两次配送）创建请求"""

    lines: List[CartLine] = Field(..., min_length=1, description="每次配送的购物车行")
    first_delivery_date: date = Field(..., description="第一次配送日期")
    package_price: Optional[Decimal] = Field(None, gt=0, description="套餐总价，默认取配置")
    discount_code: Optional[str] = Field(None, max_length=50, description="折扣码")

    @field_validator("discount_code")
    @classmethod
    def normalize_discount_code(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None


class Order(BaseModel):
    """订单基础模型"""

    order_id: str = Field(..., description="订单ID")
    user_id: str = Field(..., description="用户ID")
    lines: List[OrderLine] = Field(default_factory=list, description="订单行")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="履约状态")
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, description="支付状态")
    total_price: Decimal = Field(..., ge=0, description="折前总价")
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0, description="折扣金额")
    final_price: Decimal = Field(..., ge=0, description="最终价格")
    discount_code: Optional[str] = Field(None, description="使用的折扣码")
    discount_id: Optional[str] = Field(None, description="使用的折扣ID")
    delivery_method: DeliveryMethod = Field(default=DeliveryMethod.STANDARD)
    payment_method: PaymentMethod = Field(default=PaymentMethod.PAYOS)
    delivery_address: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    allergy_notes: Optional[str] = None
    preference_notes: Optional[str] = None
    is_weekly_package: bool = Field(default=False, description="是否周套餐订单")
    weekly_package_id: Optional[str] = Field(None, description="周套餐ID")
    scheduled_delivery_date: Optional[date] = Field(None, description="计划配送日期")
    subscription_id: Optional[str] = Field(None, description="关联的周订阅ID")
    payment_link_id: Optional[str] = Field(None, description="支付链接ID")
    payment_url: Optional[str] = Field(None, description="支付链接")
    payos_order_code: Optional[int] = Field(None, description="网关订单号")
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_prices(self):
        """最终价格 = max(0, 总价 - 折扣)"""
        expected = max(Decimal("0"), self.total_price - self.discount_amount)
        if abs(self.final_price - expected) > MONEY_QUANT:
            raise ValueError("最终价格计算错误")
        if self.is_weekly_package and not self.weekly_package_id:
            raise ValueError("周套餐订单必须关联周套餐ID")
        return self

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def is_paid(self) -> bool:
        """检查是否已支付"""
        return self.payment_status == PaymentStatus.PAID

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


class PriceQuote(BaseModel):
    """下单报价"""

    lines: List[OrderLine] = Field(default_factory=list)
    total_price: Decimal = Field(..., ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    final_price: Decimal = Field(..., ge=0)
    discount_code: Optional[str] = None
    discount_id: Optional[str] = None
    discount_status: Optional[str] = Field(None, description="折扣码校验状态")


class WeeklyPackage(BaseModel):
    """周套餐创建结果"""

    weekly_package_id: str
    orders: List[Order]
    package_price: Decimal
    normal_total: Decimal = Field(..., description="单独购买两次的总价")
    savings: Decimal = Field(..., description="相对单独购买节省的金额")
