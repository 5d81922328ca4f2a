"""
订单相关数据库模型
"""

from sqlalchemy import Column, String, Integer, BigInteger, Numeric, Text, Boolean, Date, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from freshbox.core.database import Base
from freshbox.models.database.audit import AuditMixin


class OrderDB(AuditMixin, Base):
    """订单数据库表"""

    __tablename__ = "orders"

    # 主键和用户信息
    order_id = Column(String(50), primary_key=True, comment="订单ID")
    user_id = Column(String(50), nullable=False, index=True, comment="用户ID")

    # 订单状态
    status = Column(String(20), default="pending", nullable=False, index=True, comment="履约状态")
    payment_status = Column(String(20), default="pending", nullable=False, index=True, comment="支付状态")

    # 金额信息
    total_price = Column(Numeric(14, 2), nullable=False, comment="折前总价")
    discount_amount = Column(Numeric(14, 2), default=0, nullable=False, comment="折扣金额")
    final_price = Column(Numeric(14, 2), nullable=False, comment="最终价格")

    # 应用的折扣信息
    discount_code = Column(String(50), comment="使用的折扣码")
    discount_id = Column(String(50), comment="使用的折扣ID")

    # 配送信息
    delivery_method = Column(String(20), comment="配送方式")
    payment_method = Column(String(30), comment="支付方式")
    delivery_address = Column(Text, comment="配送地址")
    recipient_name = Column(String(100), comment="收件人")
    recipient_phone = Column(String(20), comment="联系电话")
    allergy_notes = Column(Text, comment="过敏备注")
    preference_notes = Column(Text, comment="口味偏好")

    # 周套餐/周订阅关联
    is_weekly_package = Column(Boolean, default=False, nullable=False, comment="是否周套餐订单")
    weekly_package_id = Column(String(50), index=True, comment="周套餐ID")
    scheduled_delivery_date = Column(Date, comment="计划配送日期")
    subscription_id = Column(String(50), index=True, comment="关联的周订阅ID")

    # 支付链接
    payment_link_id = Column(String(100), comment="网关支付链接ID")
    payment_url = Column(Text, comment="网关支付链接")
    payos_order_code = Column(BigInteger, unique=True, index=True, comment="网关订单号")

    # 时间戳
    paid_at = Column(DateTime(timezone=True), comment="支付时间")
    cancelled_at = Column(DateTime(timezone=True), comment="取消时间")
    cancel_reason = Column(Text, comment="取消原因")

    # 关系映射
    lines = relationship(
        "OrderLineDB",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLineDB.line_no"
    )

    __table_args__ = (
        {'comment': '订单主表'}
    )


class OrderLineDB(AuditMixin, Base):
    """订单行数据库表"""

    __tablename__ = "order_lines"

    # 主键和关联信息
    line_id = Column(String(50), primary_key=True, comment="订单行ID")
    order_id = Column(String(50), ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False, index=True, comment="订单ID")
    line_no = Column(Integer, nullable=False, default=0, comment="行序号")

    # 商品信息（下单时捕获）
    box_type_id = Column(String(50), nullable=False, comment="盒子类型ID")
    box_type_name = Column(String(200), nullable=False, comment="盒子类型名称")
    quantity = Column(Integer, nullable=False, comment="数量")
    unit_price = Column(Numeric(14, 2), nullable=False, comment="下单时单价")

    # 关系映射
    order = relationship("OrderDB", back_populates="lines")

    __table_args__ = (
        {'comment': '订单行表'}
    )
