"""
购物车结算服务
合并购物车行，在同一事务范围内完成折扣占用与下单
"""

import logging
from collections import OrderedDict
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.core.transaction import TransactionCoordinator, transaction_coordinator
from freshbox.models.order import CartLine, Order, OrderCreate, PriceQuote, to_money
from freshbox.models.result import ServiceResult
from freshbox.services.discount_service import DiscountService
from freshbox.services.order_service import OrderService

logger = logging.getLogger(__name__)


def merge_cart_lines(lines: Iterable[CartLine]) -> List[CartLine]:
    """同一盒子类型的多行合并为一行，保持首次出现的顺序"""
    merged = OrderedDict()
    for line in lines:
        merged[line.box_type_id] = merged.get(line.box_type_id, 0) + line.quantity
    return [CartLine(box_type_id=box_type_id, quantity=quantity) for box_type_id, quantity in merged.items()]


class CartService:
    """购物车结算入口"""

    def __init__(
        self,
        coordinator: Optional[TransactionCoordinator] = None,
        order_service: Optional[OrderService] = None,
        discount_service: Optional[DiscountService] = None
    ):
        self.coordinator = coordinator or transaction_coordinator
        self.discount_service = discount_service or DiscountService(self.coordinator)
        self.order_service = order_service or OrderService(
            self.coordinator, discount_service=self.discount_service
        )

    async def preview(self, request: OrderCreate) -> ServiceResult[PriceQuote]:
        """结算前预览价格，只校验折扣码不占用"""
        result = await self.order_service.quote(merge_cart_lines(request.lines))
        if not result.is_success or not request.discount_code:
            return result

        quote = result.data
        validation = await self.discount_service.validate(request.discount_code)
        quote.discount_status = validation.status.value
        if validation.is_valid:
            quote.discount_code = validation.discount.code
            quote.discount_id = validation.discount.discount_id
            quote.discount_amount = self.discount_service.compute_discount_amount(
                validation.discount, quote.total_price
            )
            quote.final_price = to_money(quote.total_price - quote.discount_amount)
        return result

    async def checkout(self, user_id: str, request: OrderCreate) -> ServiceResult[Order]:
        """结算购物车

        失败时返回具体原因，折扣已使用时 details 中带有未打折的价格
        """
        request = request.model_copy(update={"lines": merge_cart_lines(request.lines)})

        async def operation(session: AsyncSession) -> ServiceResult[Order]:
            return await self.order_service.create_order(user_id, request)

        result = await self.coordinator.run(operation)
        if result.is_success:
            logger.info(f"用户 {user_id} 结算成功: {result.data.order_id} 应付 {result.data.final_price}")
        else:
            logger.info(f"用户 {user_id} 结算失败: {result.error_code} {result.message}")
        return result
