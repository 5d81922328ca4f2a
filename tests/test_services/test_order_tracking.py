"""
OrderTracker订单追踪测试
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from freshbox.services.order_tracking import OrderTracker


@pytest.mark.asyncio
class TestOrderTracker:
    """订单追踪测试类"""

    @pytest.fixture
    def mock_cache(self):
        cache = AsyncMock()
        cache.get = AsyncMock(return_value=None)
        cache.exists = AsyncMock(return_value=False)
        cache.scan_keys = AsyncMock(return_value=[])
        cache.incr = AsyncMock(return_value=1)
        return cache

    @pytest.fixture
    def notifier(self):
        return AsyncMock()

    @pytest.fixture
    def tracker(self, mock_cache, notifier):
        tracker = OrderTracker(cache=mock_cache, notifier=notifier)
        tracker.pending_threshold = timedelta(hours=24)
        tracker.failure_threshold = 3
        tracker.ttl = 3600
        return tracker

    async def test_track_pending_order_keeps_first_time(self, tracker, mock_cache):
        created_at = datetime(2024, 6, 3, 8, 0)

        await tracker.track_pending_order("ORDER_1", created_at)

        mock_cache.set_if_absent.assert_awaited_once_with("pending:ORDER_1", created_at.isoformat(), ttl=3600)

    async def test_remove_pending_order(self, tracker, mock_cache):
        await tracker.remove_pending_order("ORDER_1")

        deleted = [call.args[0] for call in mock_cache.delete.await_args_list]
        assert deleted == ["pending:ORDER_1", "alerted:ORDER_1"]

    async def test_get_pending_time(self, tracker, mock_cache):
        mock_cache.get.return_value = datetime(2024, 6, 3, 8, 0).isoformat()

        pending = await tracker.get_pending_time("ORDER_1", now=datetime(2024, 6, 3, 10, 0))

        assert pending == timedelta(hours=2)

    async def test_get_pending_time_untracked(self, tracker):
        assert await tracker.get_pending_time("ORDER_1") is None

    async def test_check_pending_alerts_once(self, tracker, mock_cache, notifier):
        """超过阈值的订单只告警一次"""
        now = datetime(2024, 6, 4, 12, 0)
        started = {
            "pending:OLD": datetime(2024, 6, 3, 8, 0).isoformat(),
            "pending:NEW": datetime(2024, 6, 4, 11, 0).isoformat(),
        }
        mock_cache.scan_keys.return_value = list(started)
        mock_cache.get.side_effect = lambda key: started.get(key)

        alerted = await tracker.check_pending_alerts(now)

        assert alerted == ["OLD"]
        notifier.pending_order_alert.assert_awaited_once()
        assert notifier.pending_order_alert.call_args.args[0] == "OLD"
        assert notifier.pending_order_alert.call_args.args[1] == pytest.approx(28.0)
        mock_cache.set.assert_awaited_once_with("alerted:OLD", now.isoformat(), ttl=3600)

    async def test_check_pending_alerts_skips_alerted(self, tracker, mock_cache, notifier):
        mock_cache.scan_keys.return_value = ["pending:OLD"]
        mock_cache.get.return_value = datetime(2024, 6, 1).isoformat()
        mock_cache.exists.return_value = True

        assert await tracker.check_pending_alerts(datetime(2024, 6, 4)) == []
        notifier.pending_order_alert.assert_not_awaited()

    async def test_notifier_failure_is_logged(self, tracker, mock_cache, notifier):
        mock_cache.scan_keys.return_value = ["pending:OLD"]
        mock_cache.get.return_value = datetime(2024, 6, 1).isoformat()
        notifier.pending_order_alert.side_effect = RuntimeError("smtp down")

        assert await tracker.check_pending_alerts(datetime(2024, 6, 4)) == []
        mock_cache.set.assert_not_awaited()

    async def test_record_payment_failure_alerts_at_threshold(self, tracker, mock_cache, notifier):
        mock_cache.incr.return_value = 2
        assert await tracker.record_payment_failure("ORDER_1") == 2
        notifier.payment_failure_alert.assert_not_awaited()

        mock_cache.incr.return_value = 3
        assert await tracker.record_payment_failure("ORDER_1") == 3
        notifier.payment_failure_alert.assert_awaited_once_with("ORDER_1", 3)
        mock_cache.incr.assert_awaited_with("failures:ORDER_1", ttl=3600)

    async def test_failure_count(self, tracker, mock_cache):
        mock_cache.get.return_value = 4
        assert await tracker.get_failure_count("ORDER_1") == 4

        await tracker.clear_failure_count("ORDER_1")
        mock_cache.delete.assert_awaited_once_with("failures:ORDER_1")
