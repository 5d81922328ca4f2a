"""
周配送排期Repository测试 - 使用真实数据库
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta

from freshbox.repositories.subscription_repository import ScheduleRepository, SubscriptionRepository
from freshbox.models.database.subscription_db import WeeklySubscriptionDB, WeeklyDeliveryScheduleDB

MONDAY = date(2024, 6, 3)


def make_subscription(status: str = "active") -> WeeklySubscriptionDB:
    return WeeklySubscriptionDB(
        subscription_id="SUB_REPO_1",
        user_id="test_user_123",
        box_type_id="BOX_VEG",
        start_date=MONDAY,
        end_date=MONDAY + timedelta(days=13),
        duration_weeks=2,
        weekly_price=Decimal("255000.00"),
        total_price=Decimal("510000.00"),
        per_box_price=Decimal("127500.00"),
        status=status
    )


def make_week(week_start: date, schedule_id: str = None) -> WeeklyDeliveryScheduleDB:
    return WeeklyDeliveryScheduleDB(
        schedule_id=schedule_id or f"SCH_{week_start.isoformat()}",
        subscription_id="SUB_REPO_1",
        week_start_date=week_start,
        week_end_date=week_start + timedelta(days=6),
        first_delivery_date=week_start,
        second_delivery_date=week_start + timedelta(days=3)
    )


@pytest.mark.asyncio
class TestScheduleRepository:
    """周配送排期Repository测试类"""

    async def test_duplicate_week_rejected(self, db_session):
        """同一订阅同一周只能有一行，重复插入在保存点内回滚"""
        await SubscriptionRepository(db_session).add(make_subscription())
        repo = ScheduleRepository(db_session)

        assert await repo.insert_week(make_week(MONDAY))
        assert not await repo.insert_week(make_week(MONDAY, schedule_id="SCH_DUPLICATE"))
        assert await repo.insert_week(make_week(MONDAY + timedelta(days=7)))
        await db_session.commit()

        schedules = await repo.get_by_subscription("SUB_REPO_1")
        assert [s.week_start_date for s in schedules] == [MONDAY, MONDAY + timedelta(days=7)]
        assert await repo.existing_week_starts("SUB_REPO_1") == {MONDAY, MONDAY + timedelta(days=7)}
        assert (await repo.get_last_week("SUB_REPO_1")).week_start_date == MONDAY + timedelta(days=7)

    async def test_slot_delivered_once(self, db_session):
        await SubscriptionRepository(db_session).add(make_subscription())
        repo = ScheduleRepository(db_session)
        await repo.insert_week(make_week(MONDAY))
        await db_session.commit()

        delivered_at = datetime(2024, 6, 3, 9, 30)
        assert await repo.mark_slot_delivered("SCH_2024-06-03", 1, delivered_at)
        assert not await repo.mark_slot_delivered("SCH_2024-06-03", 1, delivered_at)
        await db_session.commit()

        schedule = await repo.get_by_id("SCH_2024-06-03")
        assert schedule.is_first_delivered is True
        assert schedule.is_second_delivered is False

    async def test_paused_week_not_due(self, db_session):
        """暂停的周不计入待配送，也不能标记送达"""
        await SubscriptionRepository(db_session).add(make_subscription())
        repo = ScheduleRepository(db_session)
        await repo.insert_week(make_week(MONDAY))
        await repo.insert_week(make_week(MONDAY + timedelta(days=7)))
        await repo.set_paused("SCH_2024-06-03", "出差")
        await db_session.commit()

        due = await repo.get_due(MONDAY + timedelta(days=7))
        assert [s.schedule_id for s in due] == ["SCH_2024-06-10"]
        assert not await repo.mark_slot_delivered("SCH_2024-06-03", 1, datetime(2024, 6, 3, 9, 0))
        assert await repo.count_paused("SUB_REPO_1") == 1
        assert [s.schedule_id for s in await repo.get_paused()] == ["SCH_2024-06-03"]

    async def test_resume_with_new_dates(self, db_session):
        await SubscriptionRepository(db_session).add(make_subscription())
        repo = ScheduleRepository(db_session)
        await repo.insert_week(make_week(MONDAY))
        await repo.set_paused("SCH_2024-06-03", None)
        await db_session.commit()

        assert await repo.resume("SCH_2024-06-03", date(2024, 6, 5), date(2024, 6, 8))
        assert not await repo.resume("SCH_2024-06-03")
        await db_session.commit()

        schedule = await repo.get_by_id("SCH_2024-06-03")
        assert schedule.is_paused is False
        assert schedule.first_delivery_date == date(2024, 6, 5)
        assert schedule.second_delivery_date == date(2024, 6, 8)
        assert await repo.count_paused("SUB_REPO_1") == 0

    async def test_cancelled_subscription_not_due(self, db_session):
        await SubscriptionRepository(db_session).add(make_subscription(status="cancelled"))
        repo = ScheduleRepository(db_session)
        await repo.insert_week(make_week(MONDAY))
        await db_session.commit()

        assert await repo.get_due(MONDAY + timedelta(days=7)) == []
