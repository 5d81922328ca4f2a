"""
订单追踪服务
待支付订单超时告警与支付失败次数统计，数据保存在Redis中并带过期时间
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from freshbox.core.config import settings
from freshbox.services.collaborators import LoggingNotifier, Notifier
from freshbox.services.common_cache import SimpleCache, tracking_cache

logger = logging.getLogger(__name__)


class OrderTracker:
    """订单追踪服务"""

    def __init__(self, cache: Optional[SimpleCache] = None, notifier: Optional[Notifier] = None):
        self.cache = cache or tracking_cache
        self.notifier = notifier or LoggingNotifier()
        self.ttl = settings.tracker_ttl_seconds
        self.pending_threshold = timedelta(hours=settings.pending_order_alert_hours)
        self.failure_threshold = settings.payment_failure_alert_threshold

    async def track_pending_order(self, order_id: str, created_at: Optional[datetime] = None) -> None:
        """开始追踪待支付订单，重复调用保留首次时间"""
        created_at = created_at or datetime.now()
        await self.cache.set_if_absent(f"pending:{order_id}", created_at.isoformat(), ttl=self.ttl)

    async def remove_pending_order(self, order_id: str) -> None:
        """停止追踪，同时清除已告警标记"""
        await self.cache.delete(f"pending:{order_id}")
        await self.cache.delete(f"alerted:{order_id}")

    async def get_pending_time(self, order_id: str, now: Optional[datetime] = None) -> Optional[timedelta]:
        started = await self.cache.get(f"pending:{order_id}")
        if not started:
            return None
        return (now or datetime.now()) - datetime.fromisoformat(started)

    async def check_pending_alerts(self, now: Optional[datetime] = None) -> List[str]:
        """对超过阈值且尚未告警的订单发送一次告警，返回本次告警的订单ID"""
        now = now or datetime.now()
        alerted = []

        for key in await self.cache.scan_keys("pending:*"):
            order_id = key.split(":", 1)[1]
            pending_time = await self.get_pending_time(order_id, now)
            if pending_time is None or pending_time < self.pending_threshold:
                continue
            if await self.cache.exists(f"alerted:{order_id}"):
                continue

            try:
                await self.notifier.pending_order_alert(order_id, pending_time.total_seconds() / 3600)
            except Exception as e:
                logger.error(f"发送待支付告警失败 {order_id}: {e}")
                continue

            await self.cache.set(f"alerted:{order_id}", now.isoformat(), ttl=self.ttl)
            alerted.append(order_id)

        if alerted:
            logger.info(f"已发送 {len(alerted)} 个待支付订单告警")
        return alerted

    async def record_payment_failure(self, order_id: str) -> int:
        """记录一次支付失败，达到阈值时发送告警"""
        count = await self.cache.incr(f"failures:{order_id}", ttl=self.ttl)
        if count >= self.failure_threshold:
            try:
                await self.notifier.payment_failure_alert(order_id, count)
            except Exception as e:
                logger.error(f"发送支付失败告警失败 {order_id}: {e}")
        return count

    async def clear_failure_count(self, order_id: str) -> None:
        await self.cache.delete(f"failures:{order_id}")

    async def get_failure_count(self, order_id: str) -> int:
        count = await self.cache.get(f"failures:{order_id}")
        return int(count or 0)


# 全局订单追踪实例
order_tracker = OrderTracker()
