"""
WeeklySubscriptionService周订阅与配送排期测试
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select

from freshbox.models.database import OrderDB, WeeklyDeliveryScheduleDB, WeeklySubscriptionDB
from freshbox.models.subscription import (
    DeliveryMarkOutcome,
    PauseOutcome,
    ResumeOutcome,
    SubscriptionStatus,
    WeeklySubscriptionCreate
)
from freshbox.services.order_service import OrderService
from freshbox.services.weekly_subscription_service import (
    WeeklySubscriptionService,
    second_delivery_offset
)

TODAY = date(2024, 6, 1)  # 周六
MONDAY = date(2024, 6, 3)


async def count_rows(session_factory, column) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count(column)))
        return result.scalar_one()


@pytest.mark.parametrize("first,second,offset", [(0, 3, 3), (2, 5, 3), (3, 0, 4), (6, 0, 1)])
def test_second_delivery_offset(first, second, offset):
    assert second_delivery_offset(first, second) == offset


def test_same_delivery_days_rejected_by_request_model(delivery_info):
    with pytest.raises(PydanticValidationError):
        WeeklySubscriptionCreate(
            box_type_id="BOX_VEG",
            start_date=MONDAY,
            duration_weeks=4,
            first_delivery_day=1,
            second_delivery_day=1,
            **delivery_info
        )


def test_duration_bounds(delivery_info):
    with pytest.raises(PydanticValidationError):
        WeeklySubscriptionCreate(box_type_id="BOX_VEG", start_date=MONDAY, duration_weeks=0, **delivery_info)
    with pytest.raises(PydanticValidationError):
        WeeklySubscriptionCreate(box_type_id="BOX_VEG", start_date=MONDAY, duration_weeks=53, **delivery_info)


@pytest.mark.asyncio
class TestWeeklySubscriptionService:
    """周订阅服务测试类"""

    @pytest.fixture
    def service(self, coordinator, catalog, mock_tracker, mock_cache):
        order_service = OrderService(coordinator, catalog=catalog, tracker=mock_tracker)
        order_service.cache = mock_cache
        return WeeklySubscriptionService(
            coordinator, catalog=catalog, order_service=order_service, tracker=mock_tracker
        )

    @pytest.fixture
    def subscription_request(self, delivery_info):
        return WeeklySubscriptionCreate(
            box_type_id="BOX_VEG",
            start_date=MONDAY,
            duration_weeks=4,
            **delivery_info
        )

    @pytest.fixture
    def purchase(self, service, subscription_request, box_types):
        async def create():
            result = await service.create_subscription("user_001", subscription_request, today=TODAY)
            assert result.is_success, result.message
            return result.data

        return create

    async def test_create_subscription(self, purchase, mock_tracker):
        """4周订阅：4行排期，每周一和周四配送"""
        data = await purchase()
        subscription = data.subscription

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.weekly_price == Decimal("255000")
        assert subscription.per_box_price == Decimal("127500")
        assert subscription.total_price == Decimal("1020000")
        assert subscription.end_date == date(2024, 6, 30)
        assert subscription.delivery_days_text == "周一 & 周四"

        assert [s.week_start_date for s in data.schedules] == [
            date(2024, 6, 3), date(2024, 6, 10), date(2024, 6, 17), date(2024, 6, 24)
        ]
        first_week = data.schedules[0]
        assert first_week.first_delivery_date == date(2024, 6, 3)
        assert first_week.second_delivery_date == date(2024, 6, 6)
        assert first_week.week_end_date == date(2024, 6, 9)

        order = data.order
        assert order.subscription_id == subscription.subscription_id
        assert order.total_price == Decimal("1200000")
        assert order.final_price == Decimal("1020000")
        assert order.lines[0].quantity == 8
        mock_tracker.track_pending_order.assert_awaited_once_with(order.order_id)

    async def test_generate_schedule_is_idempotent(self, service, purchase, session_factory):
        """重复生成不产生新行"""
        data = await purchase()

        result = await service.generate_schedule(data.subscription.subscription_id)

        assert result.is_success
        assert result.data == []
        assert len(await service.get_schedules(data.subscription.subscription_id)) == 4
        assert await count_rows(session_factory, WeeklyDeliveryScheduleDB.schedule_id) == 4

    async def test_generate_schedule_fills_missing_weeks(self, service, purchase, session_factory):
        data = await purchase()
        async with session_factory() as session:
            week = await session.execute(
                select(WeeklyDeliveryScheduleDB).where(WeeklyDeliveryScheduleDB.week_start_date == date(2024, 6, 17))
            )
            await session.delete(week.scalar_one())
            await session.commit()

        result = await service.generate_schedule(data.subscription.subscription_id)

        assert [s.week_start_date for s in result.data] == [date(2024, 6, 17)]
        assert len(await service.get_schedules(data.subscription.subscription_id)) == 4

    async def test_generate_schedule_missing_subscription(self, service):
        result = await service.generate_schedule("missing")
        assert result.error_code == "SUBSCRIPTION_NOT_FOUND"

    async def test_custom_delivery_days(self, service, delivery_info, box_types):
        """周四开始，第二次配送在下周一"""
        request = WeeklySubscriptionCreate(
            box_type_id="BOX_VEG",
            start_date=date(2024, 6, 6),
            duration_weeks=2,
            first_delivery_day=3,
            second_delivery_day=0,
            **delivery_info
        )

        result = await service.create_subscription("user_001", request, today=TODAY)

        assert result.is_success
        first_week = result.data.schedules[0]
        assert first_week.first_delivery_date == date(2024, 6, 6)
        assert first_week.second_delivery_date == date(2024, 6, 10)

    async def test_start_date_must_be_first_delivery_day(self, service, subscription_request, box_types, session_factory):
        subscription_request.start_date = date(2024, 6, 4)

        result = await service.create_subscription("user_001", subscription_request, today=TODAY)

        assert result.error_code == "INVALID_START_DAY"
        assert await count_rows(session_factory, WeeklySubscriptionDB.subscription_id) == 0

    async def test_start_date_in_past(self, service, subscription_request, box_types):
        result = await service.create_subscription("user_001", subscription_request, today=date(2024, 6, 4))
        assert result.error_code == "DELIVERY_DATE_IN_PAST"

    async def test_same_day_with_default(self, service, subscription_request, box_types):
        """只指定第一次配送日且与默认的第二次配送日相同"""
        subscription_request.start_date = date(2024, 6, 6)
        subscription_request.first_delivery_day = 3

        result = await service.create_subscription("user_001", subscription_request, today=TODAY)

        assert result.error_code == "INVALID_DELIVERY_DAYS"

    async def test_unknown_box_type_persists_nothing(self, service, subscription_request, box_types, session_factory):
        subscription_request.box_type_id = "BOX_NONE"

        result = await service.create_subscription("user_001", subscription_request, today=TODAY)

        assert result.error_code == "BOX_TYPE_NOT_FOUND"
        assert await count_rows(session_factory, WeeklySubscriptionDB.subscription_id) == 0
        assert await count_rows(session_factory, OrderDB.order_id) == 0

    async def test_mark_delivered(self, service, purchase):
        """已送达的配送不能再次标记，送达时间保持不变"""
        data = await purchase()
        schedule_id = data.schedules[0].schedule_id
        delivered_at = datetime(2024, 6, 3, 10, 30)

        first = await service.mark_delivered(schedule_id, 1, delivered_at)
        second = await service.mark_delivered(schedule_id, 1, datetime(2024, 6, 3, 18, 0))

        assert first.data == DeliveryMarkOutcome.UPDATED
        assert second.data == DeliveryMarkOutcome.ALREADY_DELIVERED
        week = (await service.get_schedules(data.subscription.subscription_id))[0]
        assert week.is_first_delivered
        assert week.first_delivered_at == delivered_at
        assert not week.is_second_delivered
        assert week.delivered_count == 1

    async def test_mark_delivered_both_slots(self, service, purchase):
        data = await purchase()
        schedule_id = data.schedules[0].schedule_id

        await service.mark_delivered(schedule_id, 1)
        await service.mark_delivered(schedule_id, 2)

        week = (await service.get_schedules(data.subscription.subscription_id))[0]
        assert week.is_fully_delivered

    async def test_mark_delivered_invalid_slot(self, service, purchase):
        data = await purchase()
        result = await service.mark_delivered(data.schedules[0].schedule_id, 3)
        assert result.data == DeliveryMarkOutcome.SLOT_INVALID

    async def test_mark_delivered_missing_schedule(self, service):
        result = await service.mark_delivered("missing", 1)
        assert result.data == DeliveryMarkOutcome.NOT_FOUND

    async def test_mark_delivered_paused_week(self, service, purchase):
        data = await purchase()
        await service.pause_week(data.subscription.subscription_id, MONDAY)

        result = await service.mark_delivered(data.schedules[0].schedule_id, 1)

        assert result.data == DeliveryMarkOutcome.WEEK_PAUSED

    async def test_pause_week_only_affects_that_week(self, service, purchase):
        """暂停 2024-06-03 这一周，2024-06-10 这一周仍然应送"""
        data = await purchase()
        subscription_id = data.subscription.subscription_id

        result = await service.pause_week(subscription_id, MONDAY, "出差")

        assert result.data == PauseOutcome.PAUSED
        weeks = await service.get_schedules(subscription_id)
        assert weeks[0].is_paused and weeks[0].pause_reason == "出差"
        assert not any(w.is_paused for w in weeks[1:])

        due = await service.get_due_deliveries(as_of=date(2024, 6, 13))
        assert [w.week_start_date for w in due] == [date(2024, 6, 10)]
        assert (await service.get_subscription(subscription_id)).status == SubscriptionStatus.PAUSED
        assert [w.week_start_date for w in await service.get_paused_weeks()] == [MONDAY]

    async def test_pause_missing_week(self, service, purchase):
        data = await purchase()
        result = await service.pause_week(data.subscription.subscription_id, date(2024, 8, 5))
        assert result.data == PauseOutcome.NOT_FOUND

    async def test_pause_cancelled_subscription(self, service, purchase):
        data = await purchase()
        await service.cancel_subscription(data.subscription.subscription_id)

        result = await service.pause_week(data.subscription.subscription_id, MONDAY)

        assert result.error_code == "SUBSCRIPTION_NOT_ACTIVE"

    async def test_resume_week_with_new_dates(self, service, purchase, session_factory):
        """恢复时替换配送日期，不新增周排期"""
        data = await purchase()
        subscription_id = data.subscription.subscription_id
        schedule_id = data.schedules[0].schedule_id
        await service.pause_week(subscription_id, MONDAY)

        result = await service.resume_week(schedule_id, date(2024, 6, 7), date(2024, 6, 8))

        assert result.data == ResumeOutcome.RESUMED
        week = (await service.get_schedules(subscription_id))[0]
        assert not week.is_paused
        assert week.first_delivery_date == date(2024, 6, 7)
        assert week.second_delivery_date == date(2024, 6, 8)
        assert week.week_start_date == MONDAY
        assert await count_rows(session_factory, WeeklyDeliveryScheduleDB.schedule_id) == 4
        assert (await service.get_subscription(subscription_id)).status == SubscriptionStatus.ACTIVE

        again = await service.resume_week(schedule_id)
        assert again.data == ResumeOutcome.NOT_PAUSED

    async def test_subscription_stays_paused_while_other_week_paused(self, service, purchase):
        data = await purchase()
        subscription_id = data.subscription.subscription_id
        await service.pause_week(subscription_id, date(2024, 6, 3))
        await service.pause_week(subscription_id, date(2024, 6, 10))

        await service.resume_week(data.schedules[0].schedule_id)

        assert (await service.get_subscription(subscription_id)).status == SubscriptionStatus.PAUSED

    async def test_resume_invalid_dates(self, service, purchase):
        data = await purchase()
        await service.pause_week(data.subscription.subscription_id, MONDAY)

        result = await service.resume_week(data.schedules[0].schedule_id, date(2024, 6, 8), date(2024, 6, 7))

        assert result.error_code == "INVALID_DELIVERY_DATES"

    async def test_resume_missing_schedule(self, service):
        assert (await service.resume_week("missing")).data == ResumeOutcome.NOT_FOUND

    async def test_renew(self, service, purchase, mock_tracker):
        """续订2周：从最后一周之后继续生成排期并新增付款订单"""
        data = await purchase()
        subscription_id = data.subscription.subscription_id

        result = await service.renew(subscription_id, 2)

        assert result.is_success
        renewal = result.data
        assert renewal.subscription.end_date == date(2024, 7, 14)
        assert renewal.subscription.duration_weeks == 6
        assert renewal.subscription.total_price == Decimal("1530000")
        assert [s.week_start_date for s in renewal.created_schedules] == [date(2024, 7, 1), date(2024, 7, 8)]
        assert renewal.created_schedules[0].second_delivery_date == date(2024, 7, 4)
        assert renewal.order.final_price == Decimal("510000")
        assert renewal.order.subscription_id == subscription_id
        assert len(await service.get_schedules(subscription_id)) == 6
        assert mock_tracker.track_pending_order.await_count == 2

    async def test_renew_cancelled_subscription(self, service, purchase):
        data = await purchase()
        await service.cancel_subscription(data.subscription.subscription_id)

        result = await service.renew(data.subscription.subscription_id, 2)

        assert result.error_code == "SUBSCRIPTION_NOT_RENEWABLE"

    async def test_renew_invalid_weeks(self, service, purchase):
        data = await purchase()
        assert (await service.renew(data.subscription.subscription_id, 0)).error_code == "INVALID_DURATION"

    async def test_cancel_subscription(self, service, purchase):
        data = await purchase()
        subscription_id = data.subscription.subscription_id

        result = await service.cancel_subscription(subscription_id)

        assert result.data.status == SubscriptionStatus.CANCELLED
        assert result.data.cancelled_at is not None
        assert (await service.cancel_subscription(subscription_id)).error_code == "ALREADY_TERMINAL"
        assert await service.get_due_deliveries(as_of=date(2024, 6, 13)) == []

    async def test_expire_finished(self, service, purchase):
        data = await purchase()
        subscription_id = data.subscription.subscription_id

        not_yet = await service.expire_finished(today=date(2024, 6, 30))
        expired = await service.expire_finished(today=date(2024, 7, 1))

        assert not_yet.data == []
        assert expired.data == [subscription_id]
        assert (await service.get_subscription(subscription_id)).status == SubscriptionStatus.EXPIRED

    async def test_overdue_deliveries(self, service, purchase):
        """计划日期已过仍未送达的配送"""
        data = await purchase()
        schedule_id = data.schedules[0].schedule_id

        assert [w.schedule_id for w in await service.get_overdue_deliveries(as_of=date(2024, 6, 3))] == []
        assert [w.schedule_id for w in await service.get_due_deliveries(as_of=date(2024, 6, 3))] == [schedule_id]
        assert [w.schedule_id for w in await service.get_overdue_deliveries(as_of=date(2024, 6, 7))] == [schedule_id]

        await service.mark_delivered(schedule_id, 1)
        await service.mark_delivered(schedule_id, 2)

        assert await service.get_overdue_deliveries(as_of=date(2024, 6, 7)) == []

    async def test_user_subscriptions(self, service, purchase):
        data = await purchase()
        subscriptions = await service.get_user_subscriptions("user_001")
        assert [s.subscription_id for s in subscriptions] == [data.subscription.subscription_id]
