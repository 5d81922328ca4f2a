"""
支付结算服务层
创建网关支付链接，并以幂等方式将网关回调对账到订单支付状态
"""

import asyncio
import logging
import time
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Set, Union

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.core.config import settings
from freshbox.core.exceptions import (
    ConflictError,
    ExternalServiceError,
    SignatureError,
    ValidationError
)
from freshbox.core.payos import PayOSClient, build_description, generate_order_code, payos_client, verify_signature
from freshbox.core.transaction import TransactionCoordinator, transaction_coordinator
from freshbox.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus, TERMINAL_ORDER_STATUSES
from freshbox.models.payment import (
    GatewayPaymentStatus,
    PaymentItem,
    PaymentLinkHandle,
    PaymentLinkRequest,
    ReconcileOutcome,
    ReconcileResult,
    SettlementAction,
    SettlementDecision,
    WebhookPayload
)
from freshbox.models.result import ServiceResult
from freshbox.repositories.order_repository import OrderRepository
from freshbox.services.collaborators import LoggingNotifier, Notifier
from freshbox.services.order_service import OrderService
from freshbox.services.order_tracking import OrderTracker, order_tracker

logger = logging.getLogger(__name__)

GATEWAY_TO_PAYMENT_STATUS = {
    GatewayPaymentStatus.PAID: PaymentStatus.PAID,
    GatewayPaymentStatus.CANCELLED: PaymentStatus.CANCELLED,
    GatewayPaymentStatus.EXPIRED: PaymentStatus.EXPIRED,
    GatewayPaymentStatus.REFUNDED: PaymentStatus.REFUNDED,
}

# 支付状态单调流转；退款只能发生在已支付之后
ALLOWED_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
}


def decide_settlement(current_status: Union[PaymentStatus, str], payload_status: str) -> SettlementDecision:
    """根据订单当前支付状态与回调状态决定对账动作（纯函数）"""
    current = PaymentStatus(current_status)

    try:
        gateway_status = GatewayPaymentStatus(str(payload_status).upper())
    except ValueError:
        return SettlementDecision(action=SettlementAction.REJECT, reason=f"未知的网关状态: {payload_status}")

    if gateway_status in (GatewayPaymentStatus.PENDING, GatewayPaymentStatus.PROCESSING):
        return SettlementDecision(action=SettlementAction.IGNORE, reason="支付尚未完成")

    target = GATEWAY_TO_PAYMENT_STATUS[gateway_status]
    if target == current:
        return SettlementDecision(action=SettlementAction.NOOP_DUPLICATE, new_status=current, reason="重复回调")

    if target in ALLOWED_PAYMENT_TRANSITIONS.get(current, set()):
        return SettlementDecision(action=SettlementAction.APPLY, new_status=target)

    return SettlementDecision(
        action=SettlementAction.REJECT,
        reason=f"支付状态不能从 {current.value} 变更为 {target.value}"
    )


def gateway_amount(final_price: Decimal) -> int:
    """网关金额为整数（VND），按四舍五入取整，最少为1"""
    return max(1, int(Decimal(final_price).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


class PaymentService:
    """支付结算服务"""

    def __init__(
        self,
        coordinator: Optional[TransactionCoordinator] = None,
        gateway: Optional[PayOSClient] = None,
        notifier: Optional[Notifier] = None,
        tracker: Optional[OrderTracker] = None,
        order_service: Optional[OrderService] = None,
        checksum_key: Optional[str] = None
    ):
        self.coordinator = coordinator or transaction_coordinator
        self.gateway = gateway or payos_client
        self.notifier = notifier or LoggingNotifier()
        self.tracker = tracker or order_tracker
        self.order_service = order_service or OrderService(self.coordinator, tracker=self.tracker)
        self.checksum_key = checksum_key if checksum_key is not None else settings.payos_checksum_key
        # 已调度但尚未完成的通知任务
        self._notify_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # 支付链接
    # ------------------------------------------------------------------

    def build_link_request(self, order: Order, order_code: Optional[int] = None) -> PaymentLinkRequest:
        """根据订单行与最终价格构造网关请求"""
        order_code = order_code or generate_order_code()
        return PaymentLinkRequest(
            order_id=order.order_id,
            order_code=order_code,
            amount=gateway_amount(order.final_price),
            description=build_description(f"FreshBox {order_code}"),
            items=[
                PaymentItem(name=line.box_type_name, quantity=line.quantity, price=int(line.unit_price))
                for line in order.lines
            ],
            return_url=settings.payos_return_url,
            cancel_url=settings.payos_cancel_url,
            expired_at=int(time.time()) + settings.payos_link_expire_minutes * 60
        )

    async def create_link(self, order_id: str) -> ServiceResult[PaymentLinkHandle]:
        """创建支付链接

        网关调用不在事务中进行，成功后用一个短事务写回链接信息；此步骤不会把订单标记为已支付
        """
        order = await self.order_service.get_order(order_id, use_cache=False)
        if not order:
            return ServiceResult.failure(ValidationError(f"订单 {order_id} 不存在", code="ORDER_NOT_FOUND"))

        if order.payment_link_id and order.payment_url:
            return ServiceResult.success(self._existing_handle(order))

        if order.payment_method != PaymentMethod.PAYOS:
            return ServiceResult.failure(
                ValidationError("订单未使用PayOS支付", code="PAYMENT_METHOD_NOT_SUPPORTED")
            )

        if order.payment_status != PaymentStatus.PENDING or order.status in TERMINAL_ORDER_STATUSES:
            return ServiceResult.failure(
                ConflictError(
                    f"订单当前不可支付: {order.status.value}/{order.payment_status.value}",
                    code="ORDER_NOT_PAYABLE"
                )
            )

        request = self.build_link_request(order)
        try:
            handle = await self.gateway.create_payment_link(request)
        except ExternalServiceError as e:
            logger.error(f"订单 {order_id} 创建支付链接失败: {e.message}")
            return ServiceResult.failure(e)

        async def operation(session: AsyncSession) -> ServiceResult[PaymentLinkHandle]:
            repo = OrderRepository(session)
            if await repo.set_payment_link(order_id, handle.payment_link_id, handle.checkout_url, handle.order_code):
                return ServiceResult.success(handle)

            # 并发请求已经写入了链接
            db_order = await repo.get_by_order_id(order_id)
            if db_order and db_order.payment_link_id:
                return ServiceResult.success(self._existing_handle(repo.to_model(db_order)))
            return ServiceResult.failure(ConflictError("订单当前不可支付", code="ORDER_NOT_PAYABLE"))

        result = await self.coordinator.run(operation)
        if result.is_success:
            await self.order_service.invalidate_order_cache(order_id)
        return result

    @staticmethod
    def _existing_handle(order: Order) -> PaymentLinkHandle:
        return PaymentLinkHandle(
            order_id=order.order_id,
            payment_link_id=order.payment_link_id,
            checkout_url=order.payment_url,
            order_code=order.payos_order_code,
            amount=gateway_amount(order.final_price),
            status=order.payment_status.value
        )

    # ------------------------------------------------------------------
    # 回调对账
    # ------------------------------------------------------------------

    async def reconcile(self, payload: Union[WebhookPayload, Dict[str, Any]]) -> ReconcileResult:
        """对账网关回调

        1. 签名不符直接拒绝，不读写数据库
        2. 按网关订单号找不到订单时忽略
        3. 已处于相同终态视为重复投递
        4. 否则在事务中按当前支付状态条件更新，提交后发送通知
        """
        if not isinstance(payload, WebhookPayload):
            try:
                payload = WebhookPayload.model_validate(payload)
            except PayloadValidationError as e:
                logger.error(f"回调载荷格式错误: {e}")
                return ReconcileResult(outcome=ReconcileOutcome.REJECTED, reason="invalid payload")

        if not verify_signature(payload.signature_data(), payload.signature, self.checksum_key):
            error = SignatureError("回调签名校验失败", details={"order_code": payload.order_code})
            logger.error(f"{error.message}: orderCode={payload.order_code} status={payload.status}")
            return ReconcileResult(outcome=ReconcileOutcome.REJECTED, reason=error.code)

        async with self.coordinator.read_session() as session:
            repo = OrderRepository(session)
            db_order = await repo.get_by_payos_order_code(payload.order_code)
            order = repo.to_model(db_order) if db_order else None

        if order is None:
            logger.warning(f"回调对应的订单不存在: orderCode={payload.order_code}")
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, reason="order not found")

        decision = decide_settlement(order.payment_status, payload.status)
        early = self._early_result(order, decision)
        if early:
            return early

        if decision.new_status == PaymentStatus.PAID and order.status == OrderStatus.CANCELLED:
            logger.warning(f"订单 {order.order_id} 已取消，拒绝支付成功回调")
            return ReconcileResult(
                outcome=ReconcileOutcome.REJECTED,
                order_id=order.order_id,
                payment_status=order.payment_status,
                reason="order cancelled"
            )

        if decision.new_status == PaymentStatus.PAID and payload.amount != gateway_amount(order.final_price):
            logger.error(
                f"订单 {order.order_id} 回调金额不符: 期望 {gateway_amount(order.final_price)} 实际 {payload.amount}"
            )
            return ReconcileResult(
                outcome=ReconcileOutcome.REJECTED,
                order_id=order.order_id,
                payment_status=order.payment_status,
                reason="amount mismatch"
            )

        result = await self.coordinator.run(
            lambda s: self._apply_settlement(s, order, decision, payload.status)
        )
        if not result.is_success:
            logger.error(f"订单 {order.order_id} 对账失败: {result.message}")
            return ReconcileResult(
                outcome=ReconcileOutcome.REJECTED,
                order_id=order.order_id,
                payment_status=order.payment_status,
                reason=result.error_code or "settlement failed"
            )

        reconcile_result, updated_order = result.data
        if reconcile_result.outcome == ReconcileOutcome.APPLIED:
            await self._after_settlement(updated_order)
        return reconcile_result

    @staticmethod
    def _early_result(order: Order, decision: SettlementDecision) -> Optional[ReconcileResult]:
        if decision.action == SettlementAction.NOOP_DUPLICATE:
            logger.info(f"订单 {order.order_id} 重复回调，忽略: {order.payment_status.value}")
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE,
                order_id=order.order_id,
                payment_status=order.payment_status,
                reason=decision.reason
            )
        if decision.action == SettlementAction.IGNORE:
            return ReconcileResult(
                outcome=ReconcileOutcome.IGNORED,
                order_id=order.order_id,
                payment_status=order.payment_status,
                reason=decision.reason
            )
        if decision.action == SettlementAction.REJECT:
            logger.warning(f"订单 {order.order_id} 拒绝回调: {decision.reason}")
            return ReconcileResult(
                outcome=ReconcileOutcome.REJECTED,
                order_id=order.order_id,
                payment_status=order.payment_status,
                reason=decision.reason
            )
        return None

    async def _apply_settlement(
        self,
        session: AsyncSession,
        order: Order,
        decision: SettlementDecision,
        payload_status: str
    ) -> ServiceResult:
        repo = OrderRepository(session)
        now = datetime.now()
        new_status = decision.new_status

        applied = await repo.update_payment_status(
            order.order_id,
            order.payment_status,
            new_status,
            paid_at=now if new_status == PaymentStatus.PAID else None
        )
        if not applied:
            # 读取之后状态被并发修改，按最新状态重新判断
            db_order = await repo.get_by_order_id(order.order_id)
            latest = repo.to_model(db_order)
            early = self._early_result(latest, decide_settlement(latest.payment_status, payload_status))
            if early and early.outcome == ReconcileOutcome.DUPLICATE:
                return ServiceResult.success((early, latest))
            return ServiceResult.failure(
                ConflictError("支付状态已被并发修改", code="PAYMENT_STATUS_CHANGED")
            )

        if new_status == PaymentStatus.PAID:
            await repo.update_status(order.order_id, [OrderStatus.PENDING], OrderStatus.PROCESSING)
        elif new_status in (PaymentStatus.CANCELLED, PaymentStatus.EXPIRED):
            await repo.update_status(
                order.order_id,
                [OrderStatus.PENDING, OrderStatus.PROCESSING],
                OrderStatus.CANCELLED,
                cancelled_at=now,
                cancel_reason=f"payment {new_status.value}"
            )

        updated = repo.to_model(await repo.get_by_order_id(order.order_id))
        logger.info(f"订单 {order.order_id} 支付状态 {order.payment_status.value} -> {new_status.value}")
        return ServiceResult.success(
            (
                ReconcileResult(
                    outcome=ReconcileOutcome.APPLIED,
                    order_id=order.order_id,
                    payment_status=new_status
                ),
                updated
            )
        )

    async def _after_settlement(self, order: Order) -> None:
        """事务提交后的缓存、追踪与通知处理，失败只记录日志"""
        await self.order_service.invalidate_order_cache(order.order_id)

        if order.payment_status == PaymentStatus.PAID:
            await self.tracker.remove_pending_order(order.order_id)
            await self.tracker.clear_failure_count(order.order_id)
            self._notify_in_background(order)

        elif order.payment_status in (PaymentStatus.CANCELLED, PaymentStatus.EXPIRED):
            await self.tracker.remove_pending_order(order.order_id)
            await self.tracker.record_payment_failure(order.order_id)

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    def _notify_in_background(self, order: Order) -> None:
        """通知不阻塞回调应答，任务保存在集合中直到完成"""
        task = asyncio.create_task(self._send_paid_notification(order))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _send_paid_notification(self, order: Order) -> None:
        try:
            await self.notifier.order_paid(order)
        except Exception as e:
            logger.error(f"发送支付成功通知失败 {order.order_id}: {e}")

    async def wait_notifications(self) -> None:
        """等待已调度的通知发送完成"""
        if self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks))
