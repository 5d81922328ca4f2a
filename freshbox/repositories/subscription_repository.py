"""
周订阅与配送排期数据库操作层
"""

from typing import Iterable, List, Optional, Set
from datetime import date, datetime

from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.models.subscription import (
    SubscriptionStatus,
    WeeklyDeliverySchedule,
    WeeklySubscription
)
from freshbox.models.database.subscription_db import WeeklySubscriptionDB, WeeklyDeliveryScheduleDB

# 仍需配送的订阅状态
LIVE_STATUSES = [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAUSED.value]


class SubscriptionRepository:
    """周订阅数据库操作层"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, subscription_id: str) -> Optional[WeeklySubscriptionDB]:
        result = await self.db.execute(
            select(WeeklySubscriptionDB)
            .where(
                and_(
                    WeeklySubscriptionDB.subscription_id == subscription_id,
                    WeeklySubscriptionDB.is_deleted.is_(False)
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, db_subscription: WeeklySubscriptionDB) -> WeeklySubscriptionDB:
        self.db.add(db_subscription)
        await self.db.flush()
        return db_subscription

    async def update_status(
        self,
        subscription_id: str,
        from_statuses: Iterable[SubscriptionStatus],
        new_status: SubscriptionStatus,
        **values
    ) -> bool:
        """按当前状态条件更新订阅状态"""
        result = await self.db.execute(
            update(WeeklySubscriptionDB)
            .where(
                and_(
                    WeeklySubscriptionDB.subscription_id == subscription_id,
                    WeeklySubscriptionDB.status.in_([s.value for s in from_statuses])
                )
            )
            .values(status=new_status.value, updated_at=datetime.now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def extend(
        self,
        subscription_id: str,
        expected_end_date: date,
        new_end_date: date,
        new_duration_weeks: int,
        new_total_price
    ) -> bool:
        """续订延长结束日期，结束日期已被并发修改时不更新"""
        result = await self.db.execute(
            update(WeeklySubscriptionDB)
            .where(
                and_(
                    WeeklySubscriptionDB.subscription_id == subscription_id,
                    WeeklySubscriptionDB.end_date == expected_end_date,
                    WeeklySubscriptionDB.status.in_(LIVE_STATUSES)
                )
            )
            .values(
                end_date=new_end_date,
                duration_weeks=new_duration_weeks,
                total_price=new_total_price,
                updated_at=datetime.now()
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def get_expirable(self, today: date) -> List[WeeklySubscriptionDB]:
        """结束日期已过但仍处于活跃/暂停状态的订阅"""
        result = await self.db.execute(
            select(WeeklySubscriptionDB).where(
                and_(
                    WeeklySubscriptionDB.status.in_(LIVE_STATUSES),
                    WeeklySubscriptionDB.end_date < today,
                    WeeklySubscriptionDB.is_deleted.is_(False)
                )
            )
        )
        return list(result.scalars().all())

    async def get_user_subscriptions(self, user_id: str) -> List[WeeklySubscriptionDB]:
        result = await self.db.execute(
            select(WeeklySubscriptionDB)
            .where(
                and_(
                    WeeklySubscriptionDB.user_id == user_id,
                    WeeklySubscriptionDB.is_deleted.is_(False)
                )
            )
            .order_by(WeeklySubscriptionDB.start_date.desc())
        )
        return list(result.scalars().all())

    def to_model(self, db_subscription: WeeklySubscriptionDB) -> WeeklySubscription:
        """数据库对象转换为业务模型"""
        return WeeklySubscription(
            subscription_id=db_subscription.subscription_id,
            user_id=db_subscription.user_id,
            box_type_id=db_subscription.box_type_id,
            box_type_name=db_subscription.box_type_name,
            start_date=db_subscription.start_date,
            end_date=db_subscription.end_date,
            duration_weeks=db_subscription.duration_weeks,
            weekly_price=db_subscription.weekly_price,
            total_price=db_subscription.total_price,
            per_box_price=db_subscription.per_box_price,
            first_delivery_day=db_subscription.first_delivery_day,
            second_delivery_day=db_subscription.second_delivery_day,
            status=db_subscription.status,
            payment_method=db_subscription.payment_method,
            delivery_address=db_subscription.delivery_address,
            recipient_name=db_subscription.recipient_name,
            recipient_phone=db_subscription.recipient_phone,
            allergy_notes=db_subscription.allergy_notes,
            preference_notes=db_subscription.preference_notes,
            cancelled_at=db_subscription.cancelled_at,
            created_at=db_subscription.created_at
        )


class ScheduleRepository:
    """周配送排期数据库操作层"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, schedule_id: str) -> Optional[WeeklyDeliveryScheduleDB]:
        result = await self.db.execute(
            select(WeeklyDeliveryScheduleDB)
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.schedule_id == schedule_id,
                    WeeklyDeliveryScheduleDB.is_deleted.is_(False)
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_subscription(self, subscription_id: str) -> List[WeeklyDeliveryScheduleDB]:
        """按周顺序获取订阅的全部排期"""
        result = await self.db.execute(
            select(WeeklyDeliveryScheduleDB)
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.subscription_id == subscription_id,
                    WeeklyDeliveryScheduleDB.is_deleted.is_(False)
                )
            )
            .order_by(WeeklyDeliveryScheduleDB.week_start_date)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_week(self, subscription_id: str, week_start_date: date) -> Optional[WeeklyDeliveryScheduleDB]:
        result = await self.db.execute(
            select(WeeklyDeliveryScheduleDB)
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.subscription_id == subscription_id,
                    WeeklyDeliveryScheduleDB.week_start_date == week_start_date,
                    WeeklyDeliveryScheduleDB.is_deleted.is_(False)
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def existing_week_starts(self, subscription_id: str) -> Set[date]:
        result = await self.db.execute(
            select(WeeklyDeliveryScheduleDB.week_start_date).where(
                WeeklyDeliveryScheduleDB.subscription_id == subscription_id
            )
        )
        return set(result.scalars().all())

    async def get_last_week(self, subscription_id: str) -> Optional[WeeklyDeliveryScheduleDB]:
        """订阅最后一周的排期"""
        result = await self.db.execute(
            select(WeeklyDeliveryScheduleDB)
            .where(WeeklyDeliveryScheduleDB.subscription_id == subscription_id)
            .order_by(WeeklyDeliveryScheduleDB.week_start_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def insert_week(self, db_schedule: WeeklyDeliveryScheduleDB) -> bool:
        """在保存点中插入一周排期，(订阅, 周开始日期) 已存在时返回False"""
        try:
            async with self.db.begin_nested():
                self.db.add(db_schedule)
                await self.db.flush()
        except IntegrityError:
            return False
        return True

    async def mark_slot_delivered(self, schedule_id: str, slot_number: int, delivered_at: datetime) -> bool:
        """单向标记送达：仅当该次配送未送达且本周未暂停时更新"""
        if slot_number == 1:
            flag, stamp = WeeklyDeliveryScheduleDB.is_first_delivered, "first_delivered_at"
            values = {"is_first_delivered": True}
        else:
            flag, stamp = WeeklyDeliveryScheduleDB.is_second_delivered, "second_delivered_at"
            values = {"is_second_delivered": True}
        values[stamp] = delivered_at

        result = await self.db.execute(
            update(WeeklyDeliveryScheduleDB)
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.schedule_id == schedule_id,
                    flag.is_(False),
                    WeeklyDeliveryScheduleDB.is_paused.is_(False)
                )
            )
            .values(updated_at=datetime.now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def set_paused(self, schedule_id: str, reason: Optional[str]) -> bool:
        result = await self.db.execute(
            update(WeeklyDeliveryScheduleDB)
            .where(WeeklyDeliveryScheduleDB.schedule_id == schedule_id)
            .values(is_paused=True, pause_reason=reason, updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def resume(
        self,
        schedule_id: str,
        first_delivery_date: Optional[date] = None,
        second_delivery_date: Optional[date] = None
    ) -> bool:
        """取消暂停，可替换计划配送日期；本周未暂停时不更新"""
        values = {"is_paused": False, "pause_reason": None, "updated_at": datetime.now()}
        if first_delivery_date:
            values["first_delivery_date"] = first_delivery_date
        if second_delivery_date:
            values["second_delivery_date"] = second_delivery_date

        result = await self.db.execute(
            update(WeeklyDeliveryScheduleDB)
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.schedule_id == schedule_id,
                    WeeklyDeliveryScheduleDB.is_paused.is_(True)
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def count_paused(self, subscription_id: str) -> int:
        result = await self.db.execute(
            select(func.count(WeeklyDeliveryScheduleDB.schedule_id)).where(
                and_(
                    WeeklyDeliveryScheduleDB.subscription_id == subscription_id,
                    WeeklyDeliveryScheduleDB.is_paused.is_(True)
                )
            )
        )
        return result.scalar_one()

    def _live_schedules(self):
        return (
            select(WeeklyDeliveryScheduleDB)
            .join(
                WeeklySubscriptionDB,
                WeeklySubscriptionDB.subscription_id == WeeklyDeliveryScheduleDB.subscription_id
            )
            .where(
                and_(
                    WeeklySubscriptionDB.status.in_(LIVE_STATUSES),
                    WeeklySubscriptionDB.is_deleted.is_(False),
                    WeeklyDeliveryScheduleDB.is_deleted.is_(False)
                )
            )
        )

    async def get_due(self, as_of: date, strictly_before: bool = False) -> List[WeeklyDeliveryScheduleDB]:
        """截至某日应送未送的排期，暂停的周不计入"""
        if strictly_before:
            first_due = WeeklyDeliveryScheduleDB.first_delivery_date < as_of
            second_due = WeeklyDeliveryScheduleDB.second_delivery_date < as_of
        else:
            first_due = WeeklyDeliveryScheduleDB.first_delivery_date <= as_of
            second_due = WeeklyDeliveryScheduleDB.second_delivery_date <= as_of

        result = await self.db.execute(
            self._live_schedules()
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.is_paused.is_(False),
                    or_(
                        and_(first_due, WeeklyDeliveryScheduleDB.is_first_delivered.is_(False)),
                        and_(second_due, WeeklyDeliveryScheduleDB.is_second_delivered.is_(False))
                    )
                )
            )
            .order_by(WeeklyDeliveryScheduleDB.week_start_date)
        )
        return list(result.scalars().all())

    async def get_paused(self) -> List[WeeklyDeliveryScheduleDB]:
        """暂停中且尚未全部送达的排期"""
        result = await self.db.execute(
            self._live_schedules()
            .where(
                and_(
                    WeeklyDeliveryScheduleDB.is_paused.is_(True),
                    or_(
                        WeeklyDeliveryScheduleDB.is_first_delivered.is_(False),
                        WeeklyDeliveryScheduleDB.is_second_delivered.is_(False)
                    )
                )
            )
            .order_by(WeeklyDeliveryScheduleDB.week_start_date)
        )
        return list(result.scalars().all())

    def to_model(self, db_schedule: WeeklyDeliveryScheduleDB) -> WeeklyDeliverySchedule:
        """数据库对象转换为业务模型"""
        return WeeklyDeliverySchedule(
            schedule_id=db_schedule.schedule_id,
            subscription_id=db_schedule.subscription_id,
            week_start_date=db_schedule.week_start_date,
            week_end_date=db_schedule.week_end_date,
            first_delivery_date=db_schedule.first_delivery_date,
            second_delivery_date=db_schedule.second_delivery_date,
            is_first_delivered=db_schedule.is_first_delivered,
            first_delivered_at=db_schedule.first_delivered_at,
            is_second_delivered=db_schedule.is_second_delivered,
            second_delivered_at=db_schedule.second_delivered_at,
            is_paused=db_schedule.is_paused,
            pause_reason=db_schedule.pause_reason,
            note=db_schedule.note
        )
