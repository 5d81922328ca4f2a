"""
订单数据库操作层
"""

from typing import Iterable, List, Optional
from datetime import datetime

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from freshbox.models.order import Order, OrderLine, OrderStatus, PaymentStatus
from freshbox.models.database.order_db import OrderDB, OrderLineDB


class OrderRepository:
    """订单数据库操作层"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _select_orders(self):
        return (
            select(OrderDB)
            .options(selectinload(OrderDB.lines))
            .where(OrderDB.is_deleted.is_(False))
            .execution_options(populate_existing=True)
        )

    async def get_by_order_id(self, order_id: str) -> Optional[OrderDB]:
        """根据订单ID获取订单（包含订单行）"""
        result = await self.db.execute(
            self._select_orders().where(OrderDB.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def get_by_payos_order_code(self, order_code: int) -> Optional[OrderDB]:
        """根据网关订单号获取订单"""
        result = await self.db.execute(
            self._select_orders().where(OrderDB.payos_order_code == order_code)
        )
        return result.scalar_one_or_none()

    async def get_by_weekly_package_id(self, weekly_package_id: str) -> List[OrderDB]:
        """获取同一周套餐下的全部订单"""
        result = await self.db.execute(
            self._select_orders()
            .where(OrderDB.weekly_package_id == weekly_package_id)
            .order_by(OrderDB.scheduled_delivery_date)
        )
        return list(result.scalars().all())

    async def add_order(self, db_order: OrderDB, lines: Iterable[OrderLineDB]) -> OrderDB:
        """新增订单及订单行"""
        for line_no, line in enumerate(lines):
            line.line_no = line_no
            db_order.lines.append(line)
        self.db.add(db_order)
        await self.db.flush()
        return db_order

    async def update_status(
        self,
        order_id: str,
        from_statuses: Iterable[OrderStatus],
        new_status: OrderStatus,
        **values
    ) -> bool:
        """按当前状态条件更新履约状态"""
        result = await self.db.execute(
            update(OrderDB)
            .where(
                and_(
                    OrderDB.order_id == order_id,
                    OrderDB.status.in_([s.value for s in from_statuses])
                )
            )
            .values(status=new_status.value, updated_at=datetime.now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def update_payment_status(
        self,
        order_id: str,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        paid_at: Optional[datetime] = None
    ) -> bool:
        """条件更新支付状态，当前状态不符时不更新"""
        update_data = {"payment_status": new_status.value, "updated_at": datetime.now()}
        if paid_at:
            update_data["paid_at"] = paid_at

        result = await self.db.execute(
            update(OrderDB)
            .where(
                and_(
                    OrderDB.order_id == order_id,
                    OrderDB.payment_status == expected_status.value
                )
            )
            .values(**update_data)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def set_payment_link(
        self,
        order_id: str,
        payment_link_id: str,
        payment_url: str,
        order_code: int
    ) -> bool:
        """写入支付链接信息，仅对尚未生成链接的待支付订单生效"""
        result = await self.db.execute(
            update(OrderDB)
            .where(
                and_(
                    OrderDB.order_id == order_id,
                    OrderDB.payment_link_id.is_(None),
                    OrderDB.payment_status == PaymentStatus.PENDING.value
                )
            )
            .values(
                payment_link_id=payment_link_id,
                payment_url=payment_url,
                payos_order_code=order_code,
                updated_at=datetime.now()
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def to_model(self, db_order: OrderDB) -> Order:
        """数据库对象转换为业务模型"""
        return Order(
            order_id=db_order.order_id,
            user_id=db_order.user_id,
            lines=[
                OrderLine(
                    line_id=line.line_id,
                    box_type_id=line.box_type_id,
                    box_type_name=line.box_type_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price
                )
                for line in db_order.lines
            ],
            status=db_order.status,
            payment_status=db_order.payment_status,
            total_price=db_order.total_price,
            discount_amount=db_order.discount_amount or 0,
            final_price=db_order.final_price,
            discount_code=db_order.discount_code,
            discount_id=db_order.discount_id,
            delivery_method=db_order.delivery_method,
            payment_method=db_order.payment_method,
            delivery_address=db_order.delivery_address,
            recipient_name=db_order.recipient_name,
            recipient_phone=db_order.recipient_phone,
            allergy_notes=db_order.allergy_notes,
            preference_notes=db_order.preference_notes,
            is_weekly_package=bool(db_order.is_weekly_package),
            weekly_package_id=db_order.weekly_package_id,
            scheduled_delivery_date=db_order.scheduled_delivery_date,
            subscription_id=db_order.subscription_id,
            payment_link_id=db_order.payment_link_id,
            payment_url=db_order.payment_url,
            payos_order_code=db_order.payos_order_code,
            paid_at=db_order.paid_at,
            cancelled_at=db_order.cancelled_at,
            cancel_reason=db_order.cancel_reason,
            created_at=db_order.created_at,
            updated_at=db_order.updated_at
        )
