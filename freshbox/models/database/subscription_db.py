"""
周订阅相关数据库模型
"""

from sqlalchemy import Column, String, Integer, Numeric, Text, Boolean, Date, DateTime, ForeignKey, UniqueConstraint
from freshbox.core.database import Base
from freshbox.models.database.audit import AuditMixin


class WeeklySubscriptionDB(AuditMixin, Base):
    """周订阅表"""

    __tablename__ = "weekly_subscriptions"

    subscription_id = Column(String(50), primary_key=True, comment="订阅ID")
    user_id = Column(String(50), nullable=False, index=True, comment="用户ID")
    box_type_id = Column(String(50), nullable=False, comment="盒子类型ID")
    box_type_name = Column(String(200), comment="盒子类型名称")

    # 周期
    start_date = Column(Date, nullable=False, comment="开始日期")
    end_date = Column(Date, nullable=False, index=True, comment="结束日期")
    duration_weeks = Column(Integer, nullable=False, comment="订阅周数")

    # 价格
    weekly_price = Column(Numeric(14, 2), nullable=False, comment="每周价格")
    total_price = Column(Numeric(14, 2), nullable=False, comment="总价")
    per_box_price = Column(Numeric(14, 2), nullable=False, comment="每盒价格")

    # 配送日（0=周一）
    first_delivery_day = Column(Integer, nullable=False, default=0, comment="第一次配送星期")
    second_delivery_day = Column(Integer, nullable=False, default=3, comment="第二次配送星期")

    status = Column(String(20), default="active", nullable=False, index=True, comment="订阅状态")

    # 配送信息
    payment_method = Column(String(30), comment="支付方式")
    delivery_address = Column(Text, comment="配送地址")
    recipient_name = Column(String(100), comment="收件人")
    recipient_phone = Column(String(20), comment="联系电话")
    allergy_notes = Column(Text, comment="过敏备注")
    preference_notes = Column(Text, comment="口味偏好")

    cancelled_at = Column(DateTime(timezone=True), comment="取消时间")

    __table_args__ = (
        {'comment': '周订阅表'}
    )


class WeeklyDeliveryScheduleDB(AuditMixin, Base):
    """周配送排期表，每个订阅每周一行"""

    __tablename__ = "weekly_delivery_schedules"

    schedule_id = Column(String(50), primary_key=True, comment="排期ID")
    subscription_id = Column(
        String(50),
        ForeignKey("weekly_subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="订阅ID"
    )
    week_start_date = Column(Date, nullable=False, comment="周开始日期")
    week_end_date = Column(Date, nullable=False, comment="周结束日期")

    # 第一次配送
    first_delivery_date = Column(Date, nullable=False, comment="第一次计划配送日期")
    is_first_delivered = Column(Boolean, default=False, nullable=False, comment="第一次是否已送达")
    first_delivered_at = Column(DateTime(timezone=True), comment="第一次送达时间")

    # 第二次配送
    second_delivery_date = Column(Date, nullable=False, comment="第二次计划配送日期")
    is_second_delivered = Column(Boolean, default=False, nullable=False, comment="第二次是否已送达")
    second_delivered_at = Column(DateTime(timezone=True), comment="第二次送达时间")

    # 暂停
    is_paused = Column(Boolean, default=False, nullable=False, index=True, comment="本周是否暂停")
    pause_reason = Column(Text, comment="暂停原因")
    note = Column(Text, comment="备注")

    __table_args__ = (
        UniqueConstraint("subscription_id", "week_start_date", name="uq_subscription_week"),
        {'comment': '周配送排期表'}
    )
