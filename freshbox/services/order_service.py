"""
订单业务服务层
提供订单创建、定价、状态流转以及周套餐相关的业务逻辑处理
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.core.config import settings
from freshbox.core.exceptions import BusinessException, ConflictError, ValidationError
from freshbox.core.transaction import TransactionCoordinator, transaction_coordinator
from freshbox.models.discount import Discount, ReservationOutcome
from freshbox.models.order import (
    ORDER_STATUS_TRANSITIONS,
    TERMINAL_ORDER_STATUSES,
    CartLine,
    DeliveryInfo,
    Order,
    OrderCreate,
    OrderLine,
    OrderStatus,
    PaymentStatus,
    PriceQuote,
    WeeklyPackage,
    WeeklyPackageCreate,
    to_money
)
from freshbox.models.result import ServiceResult
from freshbox.models.database.order_db import OrderDB, OrderLineDB
from freshbox.repositories.order_repository import OrderRepository
from freshbox.services.collaborators import Catalog, DatabaseCatalog
from freshbox.services.common_cache import order_cache
from freshbox.services.discount_service import DiscountService
from freshbox.services.order_tracking import OrderTracker, order_tracker

logger = logging.getLogger(__name__)


def generate_order_id() -> str:
    return f"ORDER_{datetime.now().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8].upper()}"


class OrderService:
    """订单业务服务"""

    def __init__(
        self,
        coordinator: Optional[TransactionCoordinator] = None,
        catalog: Optional[Catalog] = None,
        discount_service: Optional[DiscountService] = None,
        tracker: Optional[OrderTracker] = None
    ):
        self.coordinator = coordinator or transaction_coordinator
        self.catalog = catalog or DatabaseCatalog(self.coordinator)
        self.discount_service = discount_service or DiscountService(self.coordinator)
        self.tracker = tracker or order_tracker
        self.cache = order_cache
        self.cache_prefix = "order"
        self.cache_ttl = 1800  # 30分钟缓存

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str, use_cache: bool = True) -> Optional[Order]:
        """获取订单详情"""
        cache_key = f"{self.cache_prefix}:detail:{order_id}"

        if use_cache:
            cached_order = await self.cache.get(cache_key)
            if cached_order:
                return Order(**cached_order)

        async with self.coordinator.read_session() as session:
            repo = OrderRepository(session)
            db_order = await repo.get_by_order_id(order_id)
            if not db_order:
                return None
            order = repo.to_model(db_order)

        if use_cache:
            await self.cache.set(cache_key, order.model_dump(mode="json"), ttl=self.cache_ttl)

        return order

    async def get_weekly_package_orders(self, weekly_package_id: str) -> List[Order]:
        """获取周套餐下的两张订单"""
        async with self.coordinator.read_session() as session:
            repo = OrderRepository(session)
            return [repo.to_model(o) for o in await repo.get_by_weekly_package_id(weekly_package_id)]

    async def invalidate_order_cache(self, order_id: str) -> None:
        await self.cache.delete(f"{self.cache_prefix}:detail:{order_id}")

    # ------------------------------------------------------------------
    # 定价
    # ------------------------------------------------------------------

    async def price_lines(self, cart_lines: Iterable[CartLine]) -> Tuple[List[OrderLine], Decimal]:
        """按目录当前价格捕获订单行单价，目录后续调价不影响已有订单"""
        lines = []
        for cart_line in cart_lines:
            if cart_line.quantity <= 0:
                raise ValidationError(
                    f"盒子类型 {cart_line.box_type_id} 的数量不合法: {cart_line.quantity}",
                    code="INVALID_QUANTITY"
                )
            box_type = await self.catalog.get_box_type(cart_line.box_type_id)
            if box_type is None or not box_type.is_active:
                raise ValidationError(
                    f"盒子类型 {cart_line.box_type_id} 不存在",
                    code="BOX_TYPE_NOT_FOUND",
                    details={"box_type_id": cart_line.box_type_id}
                )
            lines.append(
                OrderLine(
                    line_id=str(uuid.uuid4()),
                    box_type_id=box_type.box_type_id,
                    box_type_name=box_type.name,
                    quantity=cart_line.quantity,
                    unit_price=to_money(box_type.price)
                )
            )

        if not lines:
            raise ValidationError("订单必须包含至少一个商品", code="EMPTY_ORDER")

        total = to_money(sum((line.subtotal for line in lines), Decimal("0")))
        return lines, total

    async def quote(self, cart_lines: Iterable[CartLine]) -> ServiceResult[PriceQuote]:
        """不含折扣的报价"""
        try:
            lines, total = await self.price_lines(cart_lines)
        except BusinessException as e:
            return ServiceResult.failure(e)
        return ServiceResult.success(PriceQuote(lines=lines, total_price=total, final_price=total))

    async def _apply_discount_code(
        self,
        session: AsyncSession,
        user_id: str,
        code: str,
        order_id: str,
        subtotal: Decimal
    ) -> Tuple[Discount, Decimal]:
        """校验并占用折扣码，返回折扣与折扣金额

        与订单写入处于同一事务，占用失败时整个下单回滚
        """
        validation = await self.discount_service.validate(code, session=session)
        if not validation.is_valid:
            raise ValidationError(
                f"折扣码不可用: {code}",
                code=f"DISCOUNT_{validation.status.value.upper()}",
                details={"discount_code": code, "total_price": str(subtotal), "final_price": str(subtotal)}
            )

        discount = validation.discount
        outcome = await self.discount_service.reserve_for_user(session, user_id, discount.discount_id, order_id)
        if outcome == ReservationOutcome.ALREADY_USED:
            raise ConflictError(
                "discount already used",
                code="DISCOUNT_ALREADY_USED",
                details={"discount_code": discount.code, "total_price": str(subtotal), "final_price": str(subtotal)}
            )

        return discount, self.discount_service.compute_discount_amount(discount, subtotal)

    async def insert_order(
        self,
        session: AsyncSession,
        user_id: str,
        order_id: str,
        delivery: DeliveryInfo,
        lines: List[OrderLine],
        total_price: Decimal,
        discount_amount: Decimal = Decimal("0"),
        discount: Optional[Discount] = None,
        **linkage
    ) -> Order:
        """写入订单及订单行，返回业务模型"""
        total_price = to_money(total_price)
        discount_amount = to_money(min(max(discount_amount, Decimal("0")), total_price))
        final_price = to_money(max(Decimal("0"), total_price - discount_amount))

        db_order = OrderDB(
            order_id=order_id,
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            total_price=total_price,
            discount_amount=discount_amount,
            final_price=final_price,
            discount_code=discount.code if discount else None,
            discount_id=discount.discount_id if discount else None,
            delivery_method=delivery.delivery_method.value,
            payment_method=delivery.payment_method.value,
            delivery_address=delivery.delivery_address,
            recipient_name=delivery.recipient_name,
            recipient_phone=delivery.recipient_phone,
            allergy_notes=delivery.allergy_notes,
            preference_notes=delivery.preference_notes,
            created_by=user_id,
            updated_by=user_id,
            **linkage
        )
        db_lines = [
            OrderLineDB(
                line_id=str(uuid.uuid4()),
                box_type_id=line.box_type_id,
                box_type_name=line.box_type_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                created_by=user_id
            )
            for line in lines
        ]

        repo = OrderRepository(session)
        await repo.add_order(db_order, db_lines)
        logger.info(f"订单 {order_id} 已创建: 总价 {total_price} 折扣 {discount_amount} 最终 {final_price}")
        return repo.to_model(db_order)

    # ------------------------------------------------------------------
    # 下单
    # ------------------------------------------------------------------

    async def create_order(self, user_id: str, request: OrderCreate) -> ServiceResult[Order]:
        """创建订单

        折扣校验、折扣占用与订单写入在同一事务中完成
        """
        order_id = generate_order_id()

        async def operation(session: AsyncSession) -> ServiceResult[Order]:
            try:
                lines, total = await self.price_lines(request.lines)

                discount, discount_amount = None, Decimal("0")
                if request.discount_code:
                    discount, discount_amount = await self._apply_discount_code(
                        session, user_id, request.discount_code, order_id, total
                    )

                order = await self.insert_order(
                    session, user_id, order_id, request, lines, total, discount_amount, discount
                )
            except BusinessException as e:
                logger.warning(f"用户 {user_id} 下单失败: {e.message}")
                return ServiceResult.failure(e)
            return ServiceResult.success(order)

        result = await self.coordinator.run(operation)
        if result.is_success:
            await self.tracker.track_pending_order(order_id)
        return result

    async def create_weekly_package(
        self,
        user_id: str,
        request: WeeklyPackageCreate,
        today: Optional[date] = None
    ) -> ServiceResult[WeeklyPackage]:
        """创建周套餐：两张关联订单，第二次配送在第一次之后若干天，套餐价平分到两张订单"""
        today = today or date.today()
        if request.first_delivery_date < today:
            return ServiceResult.failure(
                ValidationError("开始配送日期不能早于今天", code="DELIVERY_DATE_IN_PAST")
            )

        package_price = to_money(request.package_price or settings.weekly_package_price)
        weekly_package_id = str(uuid.uuid4())
        first_date = request.first_delivery_date
        second_date = first_date + timedelta(days=settings.weekly_package_gap_days)
        order_ids = [generate_order_id(), generate_order_id()]

        async def operation(session: AsyncSession) -> ServiceResult[WeeklyPackage]:
            try:
                lines, normal_total = await self.price_lines(request.lines)
                if package_price > normal_total * 2:
                    raise ValidationError(
                        "套餐价格高于单独购买两次的价格",
                        code="PACKAGE_PRICE_TOO_HIGH",
                        details={"package_price": str(package_price), "normal_total": str(normal_total * 2)}
                    )

                shares = self._split(package_price)

                discount, code_discount = None, Decimal("0")
                if request.discount_code:
                    discount, code_discount = await self._apply_discount_code(
                        session, user_id, request.discount_code, order_ids[0], package_price
                    )
                code_shares = self._split(code_discount)

                orders = []
                for order_id, delivery_date, share, code_share in zip(order_ids, [first_date, second_date], shares, code_shares):
                    # 套餐优惠与折扣码优惠都计入折扣金额
                    discount_amount = (normal_total - share) + min(code_share, share)
                    orders.append(
                        await self.insert_order(
                            session,
                            user_id,
                            order_id,
                            request,
                            lines,
                            normal_total,
                            discount_amount,
                            discount,
                            is_weekly_package=True,
                            weekly_package_id=weekly_package_id,
                            scheduled_delivery_date=delivery_date
                        )
                    )
            except BusinessException as e:
                logger.warning(f"用户 {user_id} 创建周套餐失败: {e.message}")
                return ServiceResult.failure(e)

            return ServiceResult.success(
                WeeklyPackage(
                    weekly_package_id=weekly_package_id,
                    orders=orders,
                    package_price=package_price,
                    normal_total=to_money(normal_total * 2),
                    savings=to_money(normal_total * 2 - package_price)
                )
            )

        result = await self.coordinator.run(operation)
        if result.is_success:
            logger.info(f"周套餐 {weekly_package_id} 创建成功，节省 {result.data.savings}")
            for order_id in order_ids:
                await self.tracker.track_pending_order(order_id)
        return result

    @staticmethod
    def _split(amount: Decimal) -> Tuple[Decimal, Decimal]:
        """金额拆成两份，第一份四舍五入，第二份取剩余"""
        first = to_money(amount / 2)
        return first, to_money(amount - first)

    # ------------------------------------------------------------------
    # 状态流转
    # ------------------------------------------------------------------

    async def transition_status(self, order_id: str, new_status: OrderStatus) -> ServiceResult[Order]:
        """履约状态流转：待处理→处理中→已完成，待处理/处理中→已取消"""

        async def operation(session: AsyncSession) -> ServiceResult[Order]:
            repo = OrderRepository(session)
            db_order = await repo.get_by_order_id(order_id)
            if not db_order:
                return ServiceResult.failure(ValidationError(f"订单 {order_id} 不存在", code="ORDER_NOT_FOUND"))

            current = OrderStatus(db_order.status)
            if new_status not in ORDER_STATUS_TRANSITIONS[current]:
                return ServiceResult.failure(
                    ConflictError(
                        f"订单状态不能从 {current.value} 变更为 {new_status.value}",
                        code="INVALID_TRANSITION",
                        details={"from": current.value, "to": new_status.value}
                    )
                )

            extra = {}
            if new_status == OrderStatus.CANCELLED:
                extra["cancelled_at"] = datetime.now()
            if not await repo.update_status(order_id, [current], new_status, **extra):
                return ServiceResult.failure(
                    ConflictError("订单状态已被并发修改", code="INVALID_TRANSITION")
                )
            if new_status == OrderStatus.CANCELLED:
                await repo.update_payment_status(order_id, PaymentStatus.PENDING, PaymentStatus.CANCELLED)

            return ServiceResult.success(repo.to_model(await repo.get_by_order_id(order_id)))

        result = await self.coordinator.run(operation)
        if result.is_success:
            if new_status == OrderStatus.CANCELLED:
                await self.tracker.remove_pending_order(order_id)
            await self.invalidate_order_cache(order_id)
        return result

    async def cancel(self, order_id: str, reason: str = "") -> ServiceResult[Order]:
        """取消订单，已完成或已取消的订单返回 ALREADY_TERMINAL"""

        async def operation(session: AsyncSession) -> ServiceResult[Order]:
            repo = OrderRepository(session)
            db_order = await repo.get_by_order_id(order_id)
            if not db_order:
                return ServiceResult.failure(ValidationError(f"订单 {order_id} 不存在", code="ORDER_NOT_FOUND"))

            current = OrderStatus(db_order.status)
            if current in TERMINAL_ORDER_STATUSES:
                return ServiceResult.failure(
                    ConflictError(f"订单已处于终态: {current.value}", code="ALREADY_TERMINAL")
                )

            updated = await repo.update_status(
                order_id,
                [current],
                OrderStatus.CANCELLED,
                cancelled_at=datetime.now(),
                cancel_reason=reason
            )
            if not updated:
                return ServiceResult.failure(ConflictError("订单状态已被并发修改", code="ALREADY_TERMINAL"))

            # 未支付的订单同时关闭支付，之后到达的支付回调会被拒绝
            await repo.update_payment_status(order_id, PaymentStatus.PENDING, PaymentStatus.CANCELLED)

            return ServiceResult.success(repo.to_model(await repo.get_by_order_id(order_id)))

        result = await self.coordinator.run(operation)
        if result.is_success:
            logger.info(f"订单 {order_id} 已取消: {reason}")
            await self.tracker.remove_pending_order(order_id)
            await self.invalidate_order_cache(order_id)
        return result
