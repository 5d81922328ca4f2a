"""
周订阅业务服务层
订阅购买、每周两次配送排期的生成、暂停、恢复、续订与到期处理
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.core.config import settings
from freshbox.core.exceptions import BusinessException, ConflictError, ValidationError
from freshbox.core.transaction import TransactionCoordinator, transaction_coordinator
from freshbox.models.catalog import BoxType
from freshbox.models.order import DeliveryInfo, OrderLine, PaymentMethod, to_money
from freshbox.models.result import ServiceResult
from freshbox.models.subscription import (
    DeliveryMarkOutcome,
    PauseOutcome,
    ResumeOutcome,
    SubscriptionPurchase,
    SubscriptionRenewal,
    SubscriptionStatus,
    WeeklyDeliverySchedule,
    WeeklySubscription,
    WeeklySubscriptionCreate
)
from freshbox.models.database.subscription_db import WeeklyDeliveryScheduleDB, WeeklySubscriptionDB
from freshbox.repositories.subscription_repository import ScheduleRepository, SubscriptionRepository
from freshbox.services.collaborators import Catalog, DatabaseCatalog
from freshbox.services.order_service import OrderService, generate_order_id
from freshbox.services.order_tracking import OrderTracker, order_tracker

logger = logging.getLogger(__name__)

LIVE_SUBSCRIPTION_STATUSES = [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED]


def second_delivery_offset(first_day: int, second_day: int) -> int:
    """第二次配送相对周开始日（第一次配送日）的天数，取值1-6"""
    return (second_day - first_day) % 7


def build_week(subscription: WeeklySubscription, week_start: date) -> WeeklyDeliverySchedule:
    """按订阅的配送星期构造一周排期"""
    offset = second_delivery_offset(subscription.first_delivery_day, subscription.second_delivery_day)
    return WeeklyDeliverySchedule(
        schedule_id=str(uuid.uuid4()),
        subscription_id=subscription.subscription_id,
        week_start_date=week_start,
        week_end_date=week_start + timedelta(days=6),
        first_delivery_date=week_start,
        second_delivery_date=week_start + timedelta(days=offset)
    )


class WeeklySubscriptionService:
    """周订阅业务服务"""

    def __init__(
        self,
        coordinator: Optional[TransactionCoordinator] = None,
        catalog: Optional[Catalog] = None,
        order_service: Optional[OrderService] = None,
        tracker: Optional[OrderTracker] = None
    ):
        self.coordinator = coordinator or transaction_coordinator
        self.catalog = catalog or DatabaseCatalog(self.coordinator)
        self.tracker = tracker or order_tracker
        self.order_service = order_service or OrderService(
            self.coordinator, catalog=self.catalog, tracker=self.tracker
        )

    # ------------------------------------------------------------------
    # 价格
    # ------------------------------------------------------------------

    @staticmethod
    def weekly_price_for(box_price: Decimal) -> Decimal:
        """每周价格 = 单盒价格 × 每周盒数 × 订阅折扣率"""
        return to_money(Decimal(box_price) * settings.boxes_per_week * settings.weekly_subscription_rate)

    @staticmethod
    def per_box_price_for(weekly_price: Decimal) -> Decimal:
        return to_money(weekly_price / settings.boxes_per_week)

    # ------------------------------------------------------------------
    # 订阅购买
    # ------------------------------------------------------------------

    def _resolve_delivery_days(self, request: WeeklySubscriptionCreate):
        first_day = request.first_delivery_day
        if first_day is None:
            first_day = settings.default_first_delivery_day
        second_day = request.second_delivery_day
        if second_day is None:
            second_day = settings.default_second_delivery_day

        if first_day == second_day:
            raise ValidationError("两次配送日不能相同", code="INVALID_DELIVERY_DAYS")
        return first_day, second_day

    def validate_request(self, request: WeeklySubscriptionCreate, today: date):
        """事务开始前的入参校验，返回两次配送的星期"""
        first_day, second_day = self._resolve_delivery_days(request)

        if request.start_date < today:
            raise ValidationError("开始日期不能早于今天", code="DELIVERY_DATE_IN_PAST")
        if request.start_date.weekday() != first_day:
            raise ValidationError(
                "开始日期必须是第一个配送日",
                code="INVALID_START_DAY",
                details={"start_date": request.start_date.isoformat(), "first_delivery_day": first_day}
            )
        if request.duration_weeks > settings.max_subscription_weeks:
            raise ValidationError(
                f"订阅周数不能超过 {settings.max_subscription_weeks}",
                code="INVALID_DURATION"
            )
        return first_day, second_day

    async def _load_box_type(self, box_type_id: str) -> BoxType:
        box_type = await self.catalog.get_box_type(box_type_id)
        if box_type is None or not box_type.is_active:
            raise ValidationError(
                f"盒子类型 {box_type_id} 不存在",
                code="BOX_TYPE_NOT_FOUND",
                details={"box_type_id": box_type_id}
            )
        return box_type

    async def _insert_paying_order(
        self,
        session: AsyncSession,
        subscription: WeeklySubscription,
        box_type: BoxType,
        weeks: int,
        scheduled_date: date
    ):
        """订阅的付款订单：按目录价记总价，订阅优惠计入折扣金额"""
        quantity = settings.boxes_per_week * weeks
        line = OrderLine(
            line_id=str(uuid.uuid4()),
            box_type_id=box_type.box_type_id,
            box_type_name=box_type.name,
            quantity=quantity,
            unit_price=to_money(box_type.price)
        )
        total = to_money(line.subtotal)
        charged = to_money(subscription.weekly_price * weeks)
        delivery = DeliveryInfo(
            payment_method=PaymentMethod(subscription.payment_method or PaymentMethod.PAYOS.value),
            delivery_address=subscription.delivery_address,
            recipient_name=subscription.recipient_name,
            recipient_phone=subscription.recipient_phone,
            allergy_notes=subscription.allergy_notes,
            preference_notes=subscription.preference_notes
        )
        return await self.order_service.insert_order(
            session,
            subscription.user_id,
            generate_order_id(),
            delivery,
            [line],
            total,
            total - charged,
            subscription_id=subscription.subscription_id,
            scheduled_delivery_date=scheduled_date
        )

    async def create_subscription(
        self,
        user_id: str,
        request: WeeklySubscriptionCreate,
        today: Optional[date] = None
    ) -> ServiceResult[SubscriptionPurchase]:
        """购买周订阅：订阅、付款订单与全部周排期在同一事务中写入"""
        today = today or date.today()
        try:
            first_day, second_day = self.validate_request(request, today)
        except ValidationError as e:
            return ServiceResult.failure(e)

        subscription_id = str(uuid.uuid4())

        async def operation(session: AsyncSession) -> ServiceResult[SubscriptionPurchase]:
            try:
                box_type = await self._load_box_type(request.box_type_id)
            except BusinessException as e:
                return ServiceResult.failure(e)

            weekly_price = self.weekly_price_for(box_type.price)
            db_subscription = WeeklySubscriptionDB(
                subscription_id=subscription_id,
                user_id=user_id,
                box_type_id=box_type.box_type_id,
                box_type_name=box_type.name,
                start_date=request.start_date,
                end_date=request.start_date + timedelta(days=7 * request.duration_weeks - 1),
                duration_weeks=request.duration_weeks,
                weekly_price=weekly_price,
                total_price=to_money(weekly_price * request.duration_weeks),
                per_box_price=self.per_box_price_for(weekly_price),
                first_delivery_day=first_day,
                second_delivery_day=second_day,
                status=SubscriptionStatus.ACTIVE.value,
                payment_method=request.payment_method.value,
                delivery_address=request.delivery_address,
                recipient_name=request.recipient_name,
                recipient_phone=request.recipient_phone,
                allergy_notes=request.allergy_notes,
                preference_notes=request.preference_notes,
                created_by=user_id,
                updated_by=user_id
            )
            sub_repo = SubscriptionRepository(session)
            await sub_repo.add(db_subscription)
            subscription = sub_repo.to_model(db_subscription)

            order = await self._insert_paying_order(
                session, subscription, box_type, request.duration_weeks, request.start_date
            )
            week_starts = [request.start_date + timedelta(days=7 * i) for i in range(request.duration_weeks)]
            schedules = await self._generate_weeks(session, subscription, week_starts)

            return ServiceResult.success(
                SubscriptionPurchase(subscription=subscription, order=order, schedules=schedules)
            )

        result = await self.coordinator.run(operation)
        if result.is_success:
            logger.info(
                f"用户 {user_id} 订阅 {subscription_id} 创建成功: "
                f"{request.duration_weeks} 周，总价 {result.data.subscription.total_price}"
            )
            await self.tracker.track_pending_order(result.data.order.order_id)
        return result

    # ------------------------------------------------------------------
    # 排期生成
    # ------------------------------------------------------------------

    async def _generate_weeks(
        self,
        session: AsyncSession,
        subscription: WeeklySubscription,
        week_starts: Iterable[date]
    ) -> List[WeeklyDeliverySchedule]:
        """逐周插入排期，已存在的周跳过，返回新建的排期"""
        repo = ScheduleRepository(session)
        existing = await repo.existing_week_starts(subscription.subscription_id)
        created = []

        for week_start in week_starts:
            if week_start in existing:
                continue
            week = build_week(subscription, week_start)
            db_schedule = WeeklyDeliveryScheduleDB(
                created_by=subscription.user_id,
                **week.model_dump(exclude={
                    "is_first_delivered", "first_delivered_at",
                    "is_second_delivered", "second_delivered_at",
                    "is_paused", "pause_reason", "note"
                })
            )
            # 并发生成时唯一约束拒绝重复的周
            if await repo.insert_week(db_schedule):
                created.append(week)
                existing.add(week_start)

        return created

    async def generate_schedule(self, subscription_id: str) -> ServiceResult[List[WeeklyDeliverySchedule]]:
        """为订阅覆盖的每一周补齐排期，重复调用不会产生新行"""

        async def operation(session: AsyncSession) -> ServiceResult[List[WeeklyDeliverySchedule]]:
            sub_repo = SubscriptionRepository(session)
            db_subscription = await sub_repo.get_by_id(subscription_id)
            if not db_subscription:
                return ServiceResult.failure(
                    ValidationError(f"订阅 {subscription_id} 不存在", code="SUBSCRIPTION_NOT_FOUND")
                )
            subscription = sub_repo.to_model(db_subscription)
            weeks = ((subscription.end_date - subscription.start_date).days + 1) // 7
            week_starts = [subscription.start_date + timedelta(days=7 * i) for i in range(weeks)]
            created = await self._generate_weeks(session, subscription, week_starts)
            return ServiceResult.success(created)

        result = await self.coordinator.run(operation)
        if result.is_success and result.data:
            logger.info(f"订阅 {subscription_id} 新增 {len(result.data)} 周排期")
        return result

    # ------------------------------------------------------------------
    # 配送管理
    # ------------------------------------------------------------------

    async def mark_delivered(
        self,
        schedule_id: str,
        slot_number: int,
        delivered_at: Optional[datetime] = None
    ) -> ServiceResult[DeliveryMarkOutcome]:
        """标记某次配送已送达，已送达的配送不会被再次标记"""
        if slot_number not in (1, 2):
            return ServiceResult.success(DeliveryMarkOutcome.SLOT_INVALID)

        delivered_at = delivered_at or datetime.now()

        def classify(db_schedule: WeeklyDeliveryScheduleDB) -> Optional[DeliveryMarkOutcome]:
            delivered = db_schedule.is_first_delivered if slot_number == 1 else db_schedule.is_second_delivered
            if delivered:
                return DeliveryMarkOutcome.ALREADY_DELIVERED
            if db_schedule.is_paused:
                return DeliveryMarkOutcome.WEEK_PAUSED
            return None

        async def operation(session: AsyncSession) -> ServiceResult[DeliveryMarkOutcome]:
            repo = ScheduleRepository(session)
            db_schedule = await repo.get_by_id(schedule_id)
            if not db_schedule:
                return ServiceResult.success(DeliveryMarkOutcome.NOT_FOUND)

            outcome = classify(db_schedule)
            if outcome:
                return ServiceResult.success(outcome)

            if await repo.mark_slot_delivered(schedule_id, slot_number, delivered_at):
                return ServiceResult.success(DeliveryMarkOutcome.UPDATED)

            # 被并发请求抢先
            outcome = classify(await repo.get_by_id(schedule_id))
            return ServiceResult.success(outcome or DeliveryMarkOutcome.ALREADY_DELIVERED)

        result = await self.coordinator.run(operation)
        if result.is_success and result.data == DeliveryMarkOutcome.UPDATED:
            logger.info(f"排期 {schedule_id} 第 {slot_number} 次配送已送达")
        return result

    async def pause_week(
        self,
        subscription_id: str,
        week_start_date: date,
        reason: Optional[str] = None
    ) -> ServiceResult[PauseOutcome]:
        """暂停某一周，相邻的周不受影响"""

        async def operation(session: AsyncSession) -> ServiceResult[PauseOutcome]:
            sub_repo = SubscriptionRepository(session)
            schedule_repo = ScheduleRepository(session)

            db_subscription = await sub_repo.get_by_id(subscription_id)
            if not db_subscription:
                return ServiceResult.success(PauseOutcome.NOT_FOUND)
            if db_subscription.status not in [s.value for s in LIVE_SUBSCRIPTION_STATUSES]:
                return ServiceResult.failure(
                    ConflictError(f"订阅状态为 {db_subscription.status}，不能暂停", code="SUBSCRIPTION_NOT_ACTIVE")
                )

            db_schedule = await schedule_repo.get_week(subscription_id, week_start_date)
            if not db_schedule:
                return ServiceResult.success(PauseOutcome.NOT_FOUND)

            await schedule_repo.set_paused(db_schedule.schedule_id, reason)
            await sub_repo.update_status(subscription_id, [SubscriptionStatus.ACTIVE], SubscriptionStatus.PAUSED)
            return ServiceResult.success(PauseOutcome.PAUSED)

        result = await self.coordinator.run(operation)
        if result.is_success and result.data == PauseOutcome.PAUSED:
            logger.info(f"订阅 {subscription_id} 暂停 {week_start_date} 这一周: {reason or ''}")
        return result

    async def resume_week(
        self,
        schedule_id: str,
        new_first_date: Optional[date] = None,
        new_second_date: Optional[date] = None
    ) -> ServiceResult[ResumeOutcome]:
        """恢复暂停的一周，可替换计划配送日期，不会新增周排期"""

        async def operation(session: AsyncSession) -> ServiceResult[ResumeOutcome]:
            schedule_repo = ScheduleRepository(session)
            sub_repo = SubscriptionRepository(session)

            db_schedule = await schedule_repo.get_by_id(schedule_id)
            if not db_schedule:
                return ServiceResult.success(ResumeOutcome.NOT_FOUND)
            if not db_schedule.is_paused:
                return ServiceResult.success(ResumeOutcome.NOT_PAUSED)

            first = new_first_date or db_schedule.first_delivery_date
            second = new_second_date or db_schedule.second_delivery_date
            if first >= second:
                return ServiceResult.failure(
                    ValidationError("第一次配送日期必须早于第二次", code="INVALID_DELIVERY_DATES")
                )

            if not await schedule_repo.resume(schedule_id, new_first_date, new_second_date):
                return ServiceResult.success(ResumeOutcome.NOT_PAUSED)

            subscription_id = db_schedule.subscription_id
            if await schedule_repo.count_paused(subscription_id) == 0:
                await sub_repo.update_status(subscription_id, [SubscriptionStatus.PAUSED], SubscriptionStatus.ACTIVE)
            return ServiceResult.success(ResumeOutcome.RESUMED)

        result = await self.coordinator.run(operation)
        if result.is_success and result.data == ResumeOutcome.RESUMED:
            logger.info(f"排期 {schedule_id} 已恢复")
        return result

    # ------------------------------------------------------------------
    # 续订、取消与到期
    # ------------------------------------------------------------------

    async def renew(self, subscription_id: str, additional_weeks: int) -> ServiceResult[SubscriptionRenewal]:
        """续订：延长结束日期，新增付款订单，并从最后一周之后继续生成排期

        续订按订阅锁定的每周价格计费
        """
        if additional_weeks < 1 or additional_weeks > settings.max_subscription_weeks:
            return ServiceResult.failure(
                ValidationError(
                    f"续订周数必须在 1 到 {settings.max_subscription_weeks} 之间",
                    code="INVALID_DURATION"
                )
            )

        async def operation(session: AsyncSession) -> ServiceResult[SubscriptionRenewal]:
            sub_repo = SubscriptionRepository(session)
            schedule_repo = ScheduleRepository(session)

            db_subscription = await sub_repo.get_by_id(subscription_id)
            if not db_subscription:
                return ServiceResult.failure(
                    ValidationError(f"订阅 {subscription_id} 不存在", code="SUBSCRIPTION_NOT_FOUND")
                )
            subscription = sub_repo.to_model(db_subscription)
            if subscription.status not in LIVE_SUBSCRIPTION_STATUSES:
                return ServiceResult.failure(
                    ConflictError(
                        f"订阅状态为 {subscription.status.value}，不能续订",
                        code="SUBSCRIPTION_NOT_RENEWABLE"
                    )
                )

            try:
                box_type = await self._load_box_type(subscription.box_type_id)
            except BusinessException as e:
                return ServiceResult.failure(e)

            new_end_date = subscription.end_date + timedelta(days=7 * additional_weeks)
            new_duration = subscription.duration_weeks + additional_weeks
            new_total = to_money(subscription.total_price + subscription.weekly_price * additional_weeks)
            extended = await sub_repo.extend(
                subscription_id, subscription.end_date, new_end_date, new_duration, new_total
            )
            if not extended:
                return ServiceResult.failure(
                    ConflictError("订阅已被并发修改", code="SUBSCRIPTION_CHANGED")
                )

            last_week = await schedule_repo.get_last_week(subscription_id)
            next_start = (
                last_week.week_start_date + timedelta(days=7) if last_week else subscription.start_date
            )
            week_starts = [next_start + timedelta(days=7 * i) for i in range(additional_weeks)]
            created = await self._generate_weeks(session, subscription, week_starts)

            order = await self._insert_paying_order(
                session, subscription, box_type, additional_weeks, next_start
            )
            renewed = sub_repo.to_model(await sub_repo.get_by_id(subscription_id))
            return ServiceResult.success(
                SubscriptionRenewal(subscription=renewed, order=order, created_schedules=created)
            )

        result = await self.coordinator.run(operation)
        if result.is_success:
            logger.info(f"订阅 {subscription_id} 续订 {additional_weeks} 周，结束日期 {result.data.subscription.end_date}")
            await self.tracker.track_pending_order(result.data.order.order_id)
        return result

    async def cancel_subscription(self, subscription_id: str) -> ServiceResult[WeeklySubscription]:
        """取消订阅，取消为终态"""

        async def operation(session: AsyncSession) -> ServiceResult[WeeklySubscription]:
            repo = SubscriptionRepository(session)
            db_subscription = await repo.get_by_id(subscription_id)
            if not db_subscription:
                return ServiceResult.failure(
                    ValidationError(f"订阅 {subscription_id} 不存在", code="SUBSCRIPTION_NOT_FOUND")
                )

            cancellable = [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED, SubscriptionStatus.EXPIRED]
            if not await repo.update_status(
                subscription_id, cancellable, SubscriptionStatus.CANCELLED, cancelled_at=datetime.now()
            ):
                return ServiceResult.failure(ConflictError("订阅已取消", code="ALREADY_TERMINAL"))

            return ServiceResult.success(repo.to_model(await repo.get_by_id(subscription_id)))

        result = await self.coordinator.run(operation)
        if result.is_success:
            logger.info(f"订阅 {subscription_id} 已取消")
        return result

    async def expire_finished(self, today: Optional[date] = None) -> ServiceResult[List[str]]:
        """将结束日期已过且未续订的订阅标记为已到期"""
        today = today or date.today()

        async def operation(session: AsyncSession) -> ServiceResult[List[str]]:
            repo = SubscriptionRepository(session)
            expired = []
            for db_subscription in await repo.get_expirable(today):
                if await repo.update_status(
                    db_subscription.subscription_id, LIVE_SUBSCRIPTION_STATUSES, SubscriptionStatus.EXPIRED
                ):
                    expired.append(db_subscription.subscription_id)
            return ServiceResult.success(expired)

        result = await self.coordinator.run(operation)
        if result.is_success and result.data:
            logger.info(f"{len(result.data)} 个订阅已到期")
        return result

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> Optional[WeeklySubscription]:
        async with self.coordinator.read_session() as session:
            repo = SubscriptionRepository(session)
            db_subscription = await repo.get_by_id(subscription_id)
            return repo.to_model(db_subscription) if db_subscription else None

    async def get_user_subscriptions(self, user_id: str) -> List[WeeklySubscription]:
        async with self.coordinator.read_session() as session:
            repo = SubscriptionRepository(session)
            return [repo.to_model(s) for s in await repo.get_user_subscriptions(user_id)]

    async def get_schedules(self, subscription_id: str) -> List[WeeklyDeliverySchedule]:
        async with self.coordinator.read_session() as session:
            repo = ScheduleRepository(session)
            return [repo.to_model(s) for s in await repo.get_by_subscription(subscription_id)]

    async def get_due_deliveries(self, as_of: Optional[date] = None) -> List[WeeklyDeliverySchedule]:
        """截至某日（含）应送未送的排期，暂停的周不计入"""
        async with self.coordinator.read_session() as session:
            repo = ScheduleRepository(session)
            return [repo.to_model(s) for s in await repo.get_due(as_of or date.today())]

    async def get_overdue_deliveries(self, as_of: Optional[date] = None) -> List[WeeklyDeliverySchedule]:
        """计划日期早于某日仍未送达的排期"""
        async with self.coordinator.read_session() as session:
            repo = ScheduleRepository(session)
            return [repo.to_model(s) for s in await repo.get_due(as_of or date.today(), strictly_before=True)]

    async def get_paused_weeks(self) -> List[WeeklyDeliverySchedule]:
        async with self.coordinator.read_session() as session:
            repo = ScheduleRepository(session)
            return [repo.to_model(s) for s in await repo.get_paused()]
