"""
外部协作方
Notifier（通知发送）与 Catalog（商品目录只读查询）
"""

import logging
from typing import Optional, Protocol

from freshbox.core.transaction import TransactionCoordinator, transaction_coordinator
from freshbox.models.catalog import BoxType
from freshbox.models.order import Order
from freshbox.repositories.box_type_repository import BoxTypeRepository

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """通知发送方，调用方不等待投递结果"""

    async def order_paid(self, order: Order) -> None: ...

    async def pending_order_alert(self, order_id: str, pending_hours: float) -> None: ...

    async def payment_failure_alert(self, order_id: str, failure_count: int) -> None: ...


class Catalog(Protocol):
    """商品目录只读查询"""

    async def get_box_type(self, box_type_id: str) -> Optional[BoxType]: ...


class LoggingNotifier:
    """只记录日志的通知实现"""

    async def order_paid(self, order: Order) -> None:
        logger.info(f"订单支付成功通知: {order.order_id} 用户 {order.user_id} 金额 {order.final_price}")

    async def pending_order_alert(self, order_id: str, pending_hours: float) -> None:
        logger.warning(f"订单 {order_id} 已待支付 {pending_hours:.1f} 小时")

    async def payment_failure_alert(self, order_id: str, failure_count: int) -> None:
        logger.warning(f"订单 {order_id} 支付失败 {failure_count} 次")


class DatabaseCatalog:
    """基于 box_types 表的目录实现

    当前上下文存在事务时复用该事务的会话，否则单独开启只读会话
    """

    def __init__(self, coordinator: Optional[TransactionCoordinator] = None):
        self.coordinator = coordinator or transaction_coordinator

    async def get_box_type(self, box_type_id: str) -> Optional[BoxType]:
        async with self.coordinator.read_session() as session:
            repo = BoxTypeRepository(session)
            db_box_type = await repo.get_by_id(box_type_id)
            if not db_box_type:
                return None
            return repo.to_model(db_box_type)
